"""Report and AuditEvent ORM models. Both are written once and never updated."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Enum, ForeignKey, JSON, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ipunblock.core.enums import AuditAction, CheckFlow
from ipunblock.database import Base
from ipunblock.models.host import Host, User


class Report(Base):
    __tablename__ = "reports"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    ip: Mapped[str] = mapped_column(String(45), index=True)
    host_id: Mapped[str] = mapped_column(String(36), ForeignKey("hosts.id"), index=True)
    # NULL for anonymous requests
    user_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=True
    )
    flow: Mapped[CheckFlow] = mapped_column(Enum(CheckFlow), default=CheckFlow.AUTHENTICATED)
    logs: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    analysis: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    unblock_status: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )

    host: Mapped[Host] = relationship(Host)
    user: Mapped[Optional[User]] = relationship(User)

    @property
    def was_blocked(self) -> bool:
        return bool((self.analysis or {}).get("was_blocked", False))

    def __repr__(self) -> str:
        return f"<Report {self.id[:8]} {self.ip} blocked={self.was_blocked}>"


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), index=True)
    actor: Mapped[str] = mapped_column(String(255), default="system")
    host_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    ip: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    report_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    outcome: Mapped[str] = mapped_column(String(64), default="")
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} {self.ip} [{self.outcome}]>"
