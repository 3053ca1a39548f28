"""Hosting account and domain cache used to pre-validate anonymous requests."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ipunblock.database import Base
from ipunblock.models.host import Host


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    host_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("hosts.id"), index=True
    )
    username: Mapped[str] = mapped_column(String(64))
    suspended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )

    host: Mapped[Host] = relationship(Host)
    domains: Mapped[List["Domain"]] = relationship(
        "Domain", back_populates="account", cascade="all, delete-orphan"
    )

    @property
    def is_active(self) -> bool:
        return self.suspended_at is None and self.deleted_at is None

    def __repr__(self) -> str:
        return f"<Account {self.username}@{self.host_id[:8]}>"


class Domain(Base):
    __tablename__ = "domains"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("accounts.id"), index=True
    )
    domain_name: Mapped[str] = mapped_column(String(255), index=True)
    type: Mapped[str] = mapped_column(String(16), default="primary")

    account: Mapped[Account] = relationship(Account, back_populates="domains")

    def __repr__(self) -> str:
        return f"<Domain {self.domain_name}>"
