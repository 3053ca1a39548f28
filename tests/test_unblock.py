"""Tests for the two-lane unblocker."""

from datetime import timedelta

import pytest

from conftest import FakeSession, mock_ssh_client, read_fixture
from ipunblock.config import SSHConfig
from ipunblock.core.exceptions import CommandExecutionFailed, ConnectionFailed
from ipunblock.kernel.analyzers import CpanelAnalyzer, DirectAdminAnalyzer
from ipunblock.services.ssh_service import SshConnectionManager
from ipunblock.services.unblock_service import UnblockService
from ipunblock.services.whitelist_service import WhitelistService


def _blocked_result(ip="2.2.2.2"):
    session = FakeSession({"csf -g": read_fixture("csf_temporary_block.txt")})
    return DirectAdminAnalyzer().analyze(ip, session)


def test_full_remediation_on_directadmin(da_host, db_session):
    ip = "192.0.2.123"
    session = FakeSession({"ip_blacklist | grep": read_fixture("da_bfm_blacklist.txt")})
    svc = UnblockService(db_session)
    outcome = svc.remediate(ip, da_host, _blocked_result(), session, ttl=7200)

    assert list(outcome.operations) == [
        "csf_deny_removal", "csf_tempblock_removal", "csf_whitelist",
        "bfm_check", "bfm_removal", "bfm_whitelist", "whitelist_entry",
    ]
    assert outcome.overall_success is True
    assert session.commands[:3] == [
        "csf -dr 192.0.2.123", "csf -tr 192.0.2.123", "csf -ta 192.0.2.123 7200",
    ]
    assert session.ran("sed -i -E")

    entries = WhitelistService(db_session).list_active(da_host.id)
    assert len(entries) == 1
    assert entries[0].ip_address == ip
    assert entries[0].expires_at - entries[0].added_at == timedelta(seconds=7200)


def test_blacklist_removal_skipped_when_not_listed(da_host, db_session):
    session = FakeSession()
    outcome = UnblockService(db_session).remediate("2.2.2.2", da_host, _blocked_result(), session, ttl=600)

    assert outcome.operations["bfm_removal"].skipped is True
    assert "bfm_removal" not in outcome.operations_performed
    assert not session.ran("sed -i -E")
    # still whitelisted so the monitor does not re-add it
    assert session.ran("grep -qxF '2.2.2.2'")


def test_blacklist_failure_leaves_csf_results_intact(da_host, db_session):
    session = FakeSession({"ip_whitelist": RuntimeError("disk full")})
    outcome = UnblockService(db_session).remediate("2.2.2.2", da_host, _blocked_result(), session, ttl=600)

    assert outcome.primary_success is True
    assert all(outcome.operations[n].success for n in ("csf_deny_removal", "csf_tempblock_removal", "csf_whitelist"))
    assert outcome.operations["bfm_whitelist"].success is False
    assert outcome.operations["bfm_whitelist"].error == "disk full"
    assert "whitelist_entry" not in outcome.operations
    assert outcome.blacklist_success is False
    assert outcome.overall_success is False


def test_csf_command_failure_is_recorded(da_host, db_session):
    session = FakeSession({"csf -tr": CommandExecutionFailed("exit 1")})
    outcome = UnblockService(db_session).remediate("2.2.2.2", da_host, _blocked_result(), session, ttl=600)

    assert outcome.operations["csf_tempblock_removal"].success is False
    assert outcome.operations["csf_whitelist"].success is True
    assert outcome.primary_success is False


def test_lost_connection_propagates(da_host, db_session):
    session = FakeSession({"csf -dr": ConnectionFailed("gone")})
    with pytest.raises(ConnectionFailed):
        UnblockService(db_session).remediate("2.2.2.2", da_host, _blocked_result(), session, ttl=600)


def test_cpanel_has_no_blacklist_lane(cpanel_host, db_session):
    result = CpanelAnalyzer().analyze("2.2.2.2", FakeSession({"csf -g": read_fixture("csf_temporary_block.txt")}))
    session = FakeSession()
    outcome = UnblockService(db_session).remediate("2.2.2.2", cpanel_host, result, session, ttl=600)

    assert outcome.blacklist_success is None
    assert outcome.overall_success is True
    assert len(session.commands) == 3
    assert outcome.to_dict()["bfm_success"] is None


def test_ttl_floor_and_flow_defaults():
    assert UnblockService.ttl_for(simple_mode=False) == 86400
    assert UnblockService.ttl_for(simple_mode=True) == 7200


def test_rejected_remote_commands_are_not_reported_as_done(tmp_path, da_host, db_session):
    client = mock_ssh_client(stdout=b"", stderr=b"command not allowed\n", exit_status=1)
    manager = SshConnectionManager(
        config=SSHConfig(control_dir=str(tmp_path / "cm-real")),
        cipher=None,
        client_factory=lambda: client,
    )

    with manager.session(da_host) as session:
        outcome = UnblockService(db_session).remediate("2.2.2.2", da_host, _blocked_result(), session, ttl=600)

    for name in ("csf_deny_removal", "csf_tempblock_removal", "csf_whitelist"):
        assert outcome.operations[name].success is False
        assert "command not allowed" in outcome.operations[name].error
    assert outcome.primary_success is False
    assert outcome.operations["bfm_whitelist"].success is False
    assert "whitelist_entry" not in outcome.operations
    assert outcome.overall_success is False
    assert WhitelistService(db_session).list_active(da_host.id) == []
