# Copyright (c) Syntropy Systems
"""Tests for fpbisect CLI commands."""

import json

from typer.testing import CliRunner

from fpbisect.cli.main import app

runner = CliRunner()


class TestInitCommand:
    """Tests for fpbisect init command."""

    def test_init_creates_directory(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)

        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert (temp_dir / ".fpbisect").exists()
        assert (temp_dir / ".fpbisect" / "results.db").exists()
        assert (temp_dir / ".fpbisect" / "config.yaml").exists()
        assert (temp_dir / ".fpbisect" / "bisect").exists()

    def test_init_with_path(self, temp_dir):
        result = runner.invoke(app, ["init", str(temp_dir / "proj")])

        assert result.exit_code == 0
        assert (temp_dir / "proj" / ".fpbisect" / "config.yaml").exists()

    def test_init_already_initialized(self, fpbisect_project):
        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Already initialized" in result.stdout


class TestDoctorCommand:
    def test_doctor_without_project(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)

        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 0
        assert "No .fpbisect directory found" in result.stdout

    def test_doctor_in_project(self, fpbisect_project):
        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 0
        assert "WAL mode enabled" in result.stdout
        assert "0 results" in result.stdout


class TestBisectCommand:
    def test_requires_project(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)

        result = runner.invoke(app, ["bisect", "Example", "--compilation", "g++ -O3"])

        assert result.exit_code == 1
        assert "fpbisect init" in result.stdout

    def test_requires_compilation(self, fpbisect_project):
        result = runner.invoke(app, ["bisect", "Example"])

        assert result.exit_code != 0

    def test_empty_compilation(self, fpbisect_project):
        result = runner.invoke(app, ["bisect", "Example", "--compilation", ""])

        assert result.exit_code == 1
        assert "Error" in result.stdout


class TestAutoCommand:
    def test_empty_store(self, fpbisect_project):
        result = runner.invoke(app, ["auto"])

        assert result.exit_code == 0
        assert "No divergent results" in result.stdout
        report = json.loads((fpbisect_project / ".fpbisect" / "auto-bisect.json").read_text())
        assert report == {"entries": [], "skipped": 0}
        assert (fpbisect_project / ".fpbisect" / "auto-bisect.csv").exists()

    def test_custom_output(self, fpbisect_project):
        output = fpbisect_project / "out" / "combined.json"

        result = runner.invoke(app, ["auto", "--output", str(output)])

        assert result.exit_code == 0
        assert output.exists()
        assert output.with_suffix(".csv").exists()

    def test_requires_project(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)

        result = runner.invoke(app, ["auto"])

        assert result.exit_code == 1
