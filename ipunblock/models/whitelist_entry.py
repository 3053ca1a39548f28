"""Time-bounded brute-force-monitor whitelist record, cleaned up by the sweep."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ipunblock.database import Base
from ipunblock.models.host import Host


def utcnow() -> datetime:
    # SQLite drops tzinfo, so timestamps are stored naive UTC throughout
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WhitelistEntry(Base):
    __tablename__ = "whitelist_entries"
    __table_args__ = (
        CheckConstraint("expires_at > added_at", name="ck_whitelist_expiry_after_add"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    host_id: Mapped[str] = mapped_column(String(36), ForeignKey("hosts.id"), index=True)
    ip_address: Mapped[str] = mapped_column(String(45), index=True)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    removed: Mapped[bool] = mapped_column(Boolean, default=False)
    removed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    host: Mapped[Host] = relationship(Host)

    @classmethod
    def for_ttl(
        cls,
        host_id: str,
        ip_address: str,
        ttl_seconds: int,
        added_at: datetime | None = None,
        notes: str | None = None,
    ) -> "WhitelistEntry":
        """Build an entry expiring ttl_seconds after added_at."""
        if ttl_seconds <= 0:
            raise ValueError(f"Whitelist TTL must be positive, got {ttl_seconds}")
        added = added_at or utcnow()
        return cls(
            host_id=host_id,
            ip_address=ip_address,
            added_at=added,
            expires_at=added + timedelta(seconds=ttl_seconds),
            removed=False,
            notes=notes,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.removed and not self.is_expired(now)

    def mark_removed(self, now: datetime | None = None) -> None:
        """Flip removed false -> true. Only allowed once."""
        if self.removed:
            raise ValueError(f"Whitelist entry {self.id} already removed")
        self.removed = True
        self.removed_at = now or utcnow()

    def __repr__(self) -> str:
        state = "removed" if self.removed else f"until {self.expires_at:%Y-%m-%d %H:%M}"
        return f"<WhitelistEntry {self.ip_address} {state}>"
