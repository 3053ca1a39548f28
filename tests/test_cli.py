"""Tests for the click CLI."""

import json

from click.testing import CliRunner

from ipunblock.cli import cli


def test_version():
    result = CliRunner().invoke(cli, ["version"])
    assert result.exit_code == 0
    assert "ipunblock v0.1.0" in result.output


def test_initdb():
    result = CliRunner().invoke(cli, ["initdb"])
    assert result.exit_code == 0
    assert "[ok] Database ready" in result.output


def test_check_rejects_invalid_ip(operator, da_host):
    result = CliRunner().invoke(cli, ["check", "not-an-ip", "--user", operator.id, "--host", da_host.id])
    assert result.exit_code == 1
    assert "InvalidInput" in result.output


def test_simple_unblock_unknown_domain():
    from ipunblock.config import get_config

    get_config().notifications.enabled = False
    result = CliRunner().invoke(
        cli, ["simple-unblock", "10.0.0.1", "--domain", "nowhere.example.org", "--email", "me@home.net"]
    )
    assert result.exit_code == 0
    assert "nothing to check" in result.output


def test_sweep_with_nothing_expired():
    result = CliRunner().invoke(cli, ["sweep"])
    assert result.exit_code == 0
    assert "Removed 0, failed 0, skipped 0" in result.output


def test_health_reports_json(monkeypatch):
    from ipunblock.services.lock_service import LockService

    monkeypatch.setattr(LockService, "ping", lambda self: True)
    result = CliRunner().invoke(cli, ["health"])
    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["database"] is True
