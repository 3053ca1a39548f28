"""Host, User and host-access ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, Table, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ipunblock.core.enums import PanelType
from ipunblock.database import Base


user_host_access = Table(
    "user_host_access",
    Base.metadata,
    Column("user_id", String(36), ForeignKey("users.id"), primary_key=True),
    Column("host_id", String(36), ForeignKey("hosts.id"), primary_key=True),
)


class Host(Base):
    __tablename__ = "hosts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    fqdn: Mapped[str] = mapped_column(String(255), unique=True)
    alias: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    port_ssh: Mapped[int] = mapped_column(Integer, default=22)
    panel: Mapped[PanelType] = mapped_column(
        Enum(PanelType), default=PanelType.DIRECTADMIN
    )
    admin_user: Mapped[str] = mapped_column(String(64), default="root")
    encrypted_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )

    users: Mapped[List["User"]] = relationship(
        "User", secondary=user_host_access, back_populates="hosts"
    )

    @property
    def ssh_address(self) -> str:
        return self.address or self.fqdn

    def set_private_key(self, key: str, cipher: Fernet) -> None:
        self.encrypted_key = cipher.encrypt(key.encode()).decode()

    def private_key(self, cipher: Fernet | None) -> str:
        """Decrypt the stored private key.

        Values stored before encryption was introduced are returned as-is
        when they look like a PEM/OpenSSH private key; anything else
        decrypts to an empty string.
        """
        if not self.encrypted_key:
            return ""
        if cipher is not None:
            try:
                return cipher.decrypt(self.encrypted_key.encode()).decode()
            except InvalidToken:
                pass
        legacy = self.encrypted_key.strip()
        if "PRIVATE KEY-----" in legacy:
            return legacy
        return ""

    def __repr__(self) -> str:
        return f"<Host {self.fqdn} [{self.panel}]>"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email: Mapped[str] = mapped_column(String(255), unique=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )

    hosts: Mapped[List[Host]] = relationship(
        Host, secondary=user_host_access, back_populates="users"
    )

    def has_access_to_host(self, host_id: str) -> bool:
        """Admins reach every host; others need an explicit grant."""
        if self.is_admin:
            return True
        return any(h.id == host_id for h in self.hosts)

    def __repr__(self) -> str:
        return f"<User {self.email}{' (admin)' if self.is_admin else ''}>"
