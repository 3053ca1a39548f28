"""Messages exchanged between the orchestrator and its collaborators."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ipunblock.core.enums import NotificationKind


class NotificationRequest(BaseModel):
    """What the notification collaborator needs to render and route a message."""
    kind: NotificationKind
    recipients: List[str] = Field(default_factory=list)
    subject: str = ""
    report_id: Optional[str] = None
    reason: Optional[str] = None
    ip: Optional[str] = None
    host_fqdn: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class SimpleUnblockJob(BaseModel):
    """One anonymous-flow unit, dispatched once per candidate host."""
    ip: str
    domain: str
    email: str
    host_id: str


class CheckOutcome(BaseModel):
    """Summary returned by the orchestrator for one check."""
    ip: str
    host_id: Optional[str] = None
    report_id: Optional[str] = None
    blocked: bool = False
    unblocked: bool = False
    decision_reason: Optional[str] = None
    unblock_status: Optional[Dict[str, Any]] = None
    requester_notified: bool = False


class HealthStatus(BaseModel):
    healthy: bool
    database: bool = False
    lock_store: bool = False
    analyzers: Dict[str, str] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
