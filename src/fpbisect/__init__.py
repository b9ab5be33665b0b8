"""
fpbisect - Floating-point divergence bisection.

Find the files, then the functions, whose compilation flags change results.
"""

from fpbisect.engine import BisectionEngine
from fpbisect.orchestrator import AutoRunOrchestrator

__version__ = "0.1.0"
__all__ = ["AutoRunOrchestrator", "BisectionEngine", "__version__"]
