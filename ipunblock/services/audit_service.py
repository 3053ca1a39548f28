"""Audit service — AuditEvent rows mirrored to the JSON Lines audit trail.

An event staged without `commit=True` reaches the trail only when the
caller publishes it after its own commit; a rolled-back event never does.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ipunblock.core.enums import AuditAction
from ipunblock.database import get_session
from ipunblock.logging_config import log_audit_event
from ipunblock.models.report import AuditEvent

logger = logging.getLogger(__name__)


class AuditService:
    def __init__(self, session: Session | None = None):
        self._session = session
        self._pending: List[Dict[str, Any]] = []

    @property
    def session(self) -> Session:
        if self._session is None:
            self._session = get_session()
        return self._session

    def record(
        self,
        action: AuditAction,
        actor: str = "system",
        host_id: str | None = None,
        ip: str | None = None,
        outcome: str = "",
        details: Dict[str, Any] | None = None,
        report_id: str | None = None,
        commit: bool = False,
    ) -> AuditEvent:
        event = AuditEvent(
            action=action,
            actor=actor,
            host_id=host_id,
            ip=ip,
            report_id=report_id,
            outcome=outcome,
            details=details or {},
        )
        self.session.add(event)
        entry = {
            "action": action.value,
            "actor": actor,
            "host_id": host_id,
            "ip": ip,
            "outcome": outcome,
            "details": details,
        }
        if not commit:
            self._pending.append(entry)
            return event
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        log_audit_event(entry)
        return event

    def publish(self) -> int:
        """Write staged events to the trail. Call after the caller's commit succeeded."""
        pending, self._pending = self._pending, []
        for entry in pending:
            log_audit_event(entry)
        return len(pending)

    def discard(self) -> None:
        """Forget staged events after a rollback."""
        if self._pending:
            logger.debug("Discarding %d unpublished audit events", len(self._pending))
        self._pending = []

    def log_firewall_check(
        self, actor: str, host_id: str, ip: str, report_id: str, details: Dict[str, Any]
    ) -> AuditEvent:
        """Staged with the report; committed by the caller."""
        return self.record(
            AuditAction.FIREWALL_CHECK,
            actor=actor,
            host_id=host_id,
            ip=ip,
            report_id=report_id,
            outcome="blocked" if details.get("was_blocked") else "clear",
            details=details,
        )

    def log_firewall_check_failure(
        self, actor: str, host_id: str | None, ip: str, error: Exception
    ) -> Optional[AuditEvent]:
        """Commit a failure event on its own transaction. Never raises."""
        try:
            self.session.rollback()
            self.discard()
            return self.record(
                AuditAction.FIREWALL_CHECK_FAILURE,
                actor=actor,
                host_id=host_id,
                ip=ip,
                outcome="error",
                details={"error_type": type(error).__name__, "error_message": str(error)},
                commit=True,
            )
        except Exception:
            logger.exception("Could not record failure audit for %s", ip)
            return None

    def log_simple_unblock(
        self,
        action: AuditAction,
        ip: str,
        domain: str,
        email: str,
        host_id: str | None = None,
        report_id: str | None = None,
        details: Dict[str, Any] | None = None,
        commit: bool = False,
    ) -> AuditEvent:
        payload = {"domain": domain, "email": email}
        payload.update(details or {})
        return self.record(
            action,
            actor=email,
            host_id=host_id,
            ip=ip,
            report_id=report_id,
            outcome=action.value.replace("simple_unblock_", ""),
            details=payload,
            commit=commit,
        )

    def list_events(self, ip: str | None = None, action: AuditAction | None = None) -> List[AuditEvent]:
        query = self.session.query(AuditEvent)
        if ip:
            query = query.filter(AuditEvent.ip == ip)
        if action:
            query = query.filter(AuditEvent.action == action)
        return query.order_by(AuditEvent.created_at).all()
