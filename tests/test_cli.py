"""
Tests for the command-line interface.
"""

import sys
from pathlib import Path

import pytest

from kai_alerts import cli

SHIPPED_CONFIG = Path(__file__).resolve().parent.parent / "config" / "default.yaml"


def run_cli(monkeypatch, *args):
    monkeypatch.setattr(sys, "argv", ["kai-alerts", *args])
    cli.main()


def test_validate_shipped_config(monkeypatch, capsys):
    run_cli(monkeypatch, "validate-config", "--config", str(SHIPPED_CONFIG))

    output = capsys.readouterr().out
    assert "Configuration valid" in output
    assert "Regions: 10" in output


def test_invalid_config_exits_with_errors(monkeypatch, capsys, tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("thresholds:\n  drought:\n    days_without_rain: 30\n")

    with pytest.raises(SystemExit) as exc:
        run_cli(monkeypatch, "validate-config", "-c", str(path))

    assert exc.value.code == 1
    assert "thresholds.drought.days_without_rain" in capsys.readouterr().out


def test_unknown_region_exits(monkeypatch, capsys):
    with pytest.raises(SystemExit) as exc:
        run_cli(monkeypatch, "check-weather", "--config", str(SHIPPED_CONFIG), "--region", "Atlantis")

    assert exc.value.code == 1
    assert "Unknown region: Atlantis" in capsys.readouterr().out


def test_no_command_prints_help(monkeypatch):
    with pytest.raises(SystemExit) as exc:
        run_cli(monkeypatch)
    assert exc.value.code == 1


def test_format_helper():
    assert cli._fmt(None, ".1f") == "-"
    assert cli._fmt(28.44, ".1f") == "28.4"
