"""Tests for whitelist entries and the expiry sweep."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import FakeSession, FakeSshManager
from ipunblock.core.exceptions import ConnectionFailed
from ipunblock.models.whitelist_entry import WhitelistEntry, utcnow
from ipunblock.services.whitelist_service import WhitelistService


def _expired(host_id, ip, hours_ago=3):
    added = utcnow() - timedelta(hours=hours_ago)
    return WhitelistEntry.for_ttl(host_id, ip, 3600, added_at=added)


def test_entry_expiry_follows_ttl():
    added = datetime(2025, 1, 1, 12, 0, 0)
    entry = WhitelistEntry.for_ttl("h", "10.0.0.1", 7200, added_at=added)
    assert entry.expires_at == datetime(2025, 1, 1, 14, 0, 0)
    assert entry.removed is False
    assert entry.is_expired(datetime(2025, 1, 1, 14, 0, 0)) is True
    assert entry.is_active(datetime(2025, 1, 1, 13, 0, 0)) is True


def test_non_positive_ttl_rejected():
    with pytest.raises(ValueError):
        WhitelistEntry.for_ttl("h", "10.0.0.1", 0)


def test_mark_removed_only_once():
    entry = WhitelistEntry.for_ttl("h", "10.0.0.1", 60)
    entry.mark_removed()
    assert entry.removed is True
    assert entry.removed_at is not None
    with pytest.raises(ValueError):
        entry.mark_removed()


def test_check_constraint_rejects_inverted_window(da_host, db_session):
    now = utcnow()
    db_session.add(WhitelistEntry(host_id=da_host.id, ip_address="10.0.0.1", added_at=now, expires_at=now))
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_sweep_removes_expired_entries(da_host, db_session):
    svc = WhitelistService(db_session)
    db_session.add_all([_expired(da_host.id, "10.0.0.1"), _expired(da_host.id, "10.0.0.2")])
    db_session.commit()
    live = svc.create(da_host.id, "10.0.0.3", 3600)

    manager = FakeSshManager()
    result = svc.sweep(manager)

    assert (result.removed, result.failed, result.skipped) == (2, 0, 0)
    assert manager.opened == [da_host.fqdn]
    assert manager.closed == [da_host.fqdn]
    session = manager.sessions[da_host.fqdn]
    assert session.commands == [
        "sed -i '/^10\\.0\\.0\\.1$/d' /usr/local/directadmin/data/admin/ip_whitelist",
        "sed -i '/^10\\.0\\.0\\.2$/d' /usr/local/directadmin/data/admin/ip_whitelist",
    ]
    assert svc.list_expired() == []
    assert [e.id for e in svc.list_active(da_host.id)] == [live.id]


def test_sweep_skips_non_directadmin_hosts(cpanel_host, db_session):
    db_session.add(_expired(cpanel_host.id, "10.0.0.9"))
    db_session.commit()

    result = WhitelistService(db_session).sweep(FakeSshManager())
    assert (result.removed, result.failed, result.skipped) == (0, 0, 1)


def test_sweep_host_failure_keeps_entries(da_host, db_session):
    db_session.add(_expired(da_host.id, "10.0.0.1"))
    db_session.commit()

    svc = WhitelistService(db_session)
    result = svc.sweep(FakeSshManager(error=ConnectionFailed("refused")))
    assert result.failed == 1
    assert len(svc.list_expired()) == 1


def test_sweep_command_failure_keeps_entries(da_host, db_session):
    db_session.add(_expired(da_host.id, "10.0.0.1"))
    db_session.commit()

    manager = FakeSshManager({da_host.fqdn: FakeSession({"sed": ConnectionFailed("dropped")})})
    svc = WhitelistService(db_session)
    result = svc.sweep(manager)
    assert result.failed == 1
    assert manager.closed == [da_host.fqdn]
    assert svc.list_expired()[0].removed is False


def test_sweep_keeps_ip_that_has_a_newer_active_entry(da_host, db_session):
    svc = WhitelistService(db_session)
    old = _expired(da_host.id, "10.0.0.1")
    db_session.add(old)
    db_session.commit()
    renewed = svc.create(da_host.id, "10.0.0.1", 3600)

    manager = FakeSshManager()
    result = svc.sweep(manager)

    assert (result.removed, result.superseded, result.failed) == (0, 1, 0)
    assert manager.opened == []
    db_session.refresh(old)
    assert old.removed is True
    assert [e.id for e in svc.list_active(da_host.id)] == [renewed.id]


def test_sweep_removes_only_uncovered_ips(da_host, db_session):
    svc = WhitelistService(db_session)
    db_session.add_all([_expired(da_host.id, "10.0.0.1"), _expired(da_host.id, "10.0.0.2")])
    db_session.commit()
    svc.create(da_host.id, "10.0.0.2", 3600)

    manager = FakeSshManager()
    result = svc.sweep(manager)

    assert (result.removed, result.superseded) == (1, 1)
    assert manager.sessions[da_host.fqdn].commands == [
        "sed -i '/^10\\.0\\.0\\.1$/d' /usr/local/directadmin/data/admin/ip_whitelist",
    ]
