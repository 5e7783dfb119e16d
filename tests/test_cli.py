"""Tests for the actiongate CLI."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner
from fastapi import FastAPI

from actiongate import cli as cli_module
from actiongate.cli import cli

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "gateway.toml"
    path.write_text(
        '[gateway]\nname = "crm"\n\n[policy]\noverride_mode = "always_ask"\n'
        "user_approval_timeout_minutes = 30\n"
    )
    return path


@pytest.fixture
def setups(monkeypatch) -> list:
    """Replace process-wide logging/telemetry setup with a recorder."""
    calls: list = []
    monkeypatch.setattr(cli_module, "_setup", calls.append)
    return calls


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestCheckConfig:
    def test_valid_config(self, runner, config_file):
        result = runner.invoke(cli, ["check-config", str(config_file)])

        assert result.exit_code == 0
        assert "Gateway:        crm" in result.output
        assert "Store:          in-memory" in result.output
        assert "Override mode:  always_ask" in result.output
        assert "Approval TTL:   30 min" in result.output
        assert "Config OK" in result.output

    def test_invalid_config(self, runner, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text('[gateway]\nname = "crm"\n[policy]\nminimum_confidence = 2\n')

        result = runner.invoke(cli, ["check-config", str(path)])

        assert result.exit_code == 2
        assert "Invalid config" in result.output

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["check-config", str(tmp_path / "nope.toml")])

        assert result.exit_code == 2
        assert "not found" in result.output


class TestSweep:
    def test_sweep_in_memory(self, runner, config_file, setups):
        result = runner.invoke(cli, ["sweep", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "Expired 0 action(s)" in result.output
        assert [c.name for c in setups] == ["crm"]

    def test_sweep_requires_existing_config(self, runner, tmp_path):
        result = runner.invoke(cli, ["sweep", "--config", str(tmp_path / "nope.toml")])

        assert result.exit_code != 0


class TestServe:
    def test_serve_runs_uvicorn(self, runner, config_file, setups, monkeypatch):
        served: dict = {}

        def fake_run(app, **kwargs):
            served["app"] = app
            served.update(kwargs)

        monkeypatch.setattr("uvicorn.run", fake_run)

        result = runner.invoke(
            cli, ["serve", "--config", str(config_file), "--host", "0.0.0.0", "--port", "9100"]
        )

        assert result.exit_code == 0, result.output
        assert isinstance(served["app"], FastAPI)
        assert served["host"] == "0.0.0.0"
        assert served["port"] == 9100
        assert "http://0.0.0.0:9100" in result.output
