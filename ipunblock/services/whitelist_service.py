"""Whitelist service — records brute-force-monitor whitelist additions and expires them.

CSF expires its own temporary allows (`csf -ta` with a TTL). The DirectAdmin
monitor does not, so every addition is persisted here and a scheduled
sweep removes the IP from the remote whitelist once its TTL has passed.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List

from sqlalchemy.orm import Session

from ipunblock.core.enums import PanelType
from ipunblock.database import get_session
from ipunblock.kernel.commands import build_command
from ipunblock.models.host import Host
from ipunblock.models.whitelist_entry import WhitelistEntry, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    removed: int = 0
    failed: int = 0
    skipped: int = 0
    superseded: int = 0


class WhitelistService:
    def __init__(self, session: Session | None = None):
        self._session = session

    @property
    def session(self) -> Session:
        if self._session is None:
            self._session = get_session()
        return self._session

    def create(
        self, host_id: str, ip: str, ttl_seconds: int, notes: str | None = None
    ) -> WhitelistEntry:
        entry = WhitelistEntry.for_ttl(host_id, ip, ttl_seconds, notes=notes)
        self.session.add(entry)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            "Whitelist entry for %s on host %s expires at %s",
            ip, host_id, entry.expires_at.isoformat(),
        )
        return entry

    def list_active(
        self, host_id: str | None = None, now: datetime | None = None
    ) -> List[WhitelistEntry]:
        query = self.session.query(WhitelistEntry).filter(
            WhitelistEntry.removed.is_(False),
            WhitelistEntry.expires_at > (now or utcnow()),
        )
        if host_id:
            query = query.filter(WhitelistEntry.host_id == host_id)
        return query.order_by(WhitelistEntry.expires_at).all()

    def list_expired(self, now: datetime | None = None) -> List[WhitelistEntry]:
        """Entries past their expiry that have not been removed yet."""
        return (
            self.session.query(WhitelistEntry)
            .filter(
                WhitelistEntry.removed.is_(False),
                WhitelistEntry.expires_at <= (now or utcnow()),
            )
            .order_by(WhitelistEntry.host_id, WhitelistEntry.expires_at)
            .all()
        )

    def sweep(self, ssh_manager, now: datetime | None = None) -> SweepResult:
        """Remove expired IPs from each host's remote whitelist, one session per host."""
        result = SweepResult()
        expired = self.list_expired(now)
        if not expired:
            logger.info("No expired whitelist entries found")
            return result

        by_host: Dict[str, List[WhitelistEntry]] = defaultdict(list)
        for entry in expired:
            by_host[entry.host_id].append(entry)
        logger.info("Found %d expired whitelist entries on %d hosts", len(expired), len(by_host))

        for host_id, entries in by_host.items():
            host = self.session.get(Host, host_id)
            if host is None or host.panel != PanelType.DIRECTADMIN:
                logger.warning("Skipping %d entries for non-DirectAdmin host %s", len(entries), host_id)
                result.skipped += len(entries)
                continue
            try:
                superseded = self._sweep_host(ssh_manager, host, entries, now)
                result.removed += len(entries) - superseded
                result.superseded += superseded
            except Exception as e:
                self.session.rollback()
                logger.error(
                    "Failed to remove %d expired entries from %s: %s",
                    len(entries), host.fqdn, e,
                )
                result.failed += len(entries)

        logger.info(
            "Whitelist sweep finished: removed=%d failed=%d skipped=%d superseded=%d",
            result.removed, result.failed, result.skipped, result.superseded,
        )
        return result

    def _sweep_host(self, ssh_manager, host: Host, entries: List[WhitelistEntry], now) -> int:
        """Remove the host's expired IPs; returns how many were superseded instead.

        An IP that still has an active entry on the host stays on the remote
        whitelist. Its expired entry is closed without touching the host.
        """
        still_active = {e.ip_address for e in self.list_active(host.id, now)}
        to_remove = sorted({e.ip_address for e in entries} - still_active)
        if to_remove:
            with ssh_manager.session(host) as ssh:
                for ip in to_remove:
                    ssh.execute_checked(build_command("da_bfm_whitelist_remove", ip))
        for entry in entries:
            entry.mark_removed(now)
        self.session.commit()
        superseded = sum(1 for e in entries if e.ip_address in still_active)
        logger.info(
            "Removed expired whitelist IPs from %s: %s (kept %d still covered by a newer entry)",
            host.fqdn, to_remove, superseded,
        )
        return superseded
