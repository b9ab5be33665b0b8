# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for fpbisect."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict


class FPBisectBaseModel(BaseModel):
    """Base model with shared config for fpbisect schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )
