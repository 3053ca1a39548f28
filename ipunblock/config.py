"""YAML configuration loading with Pydantic validation."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field


def _default_data_dir() -> Path:
    """Return the default data directory: ~/.ipunblock"""
    return Path.home() / ".ipunblock"


class DatabaseConfig(BaseModel):
    path: str = str(_default_data_dir() / "ipunblock.db")


class LogConfig(BaseModel):
    dir: str = str(_default_data_dir() / "logs")
    level: str = "INFO"


class SSHConfig(BaseModel):
    """Connection settings shared by every remote session."""
    control_dir: str = "/tmp/cm"
    connect_timeout: float = 15.0   # seconds
    command_timeout: float = 30.0   # seconds
    keepalive: int = 20
    strict_host_keys: bool = False
    known_hosts: Optional[str] = None


class SecurityConfig(BaseModel):
    # Fernet key used to decrypt Host.encrypted_key
    key_encryption_key: str = ""


class UnblockConfig(BaseModel):
    whitelist_ttl: int = 86400          # authenticated flow
    simple_whitelist_ttl: int = 7200    # anonymous flow
    minimum_ttl: int = 60


class SimpleModeConfig(BaseModel):
    enabled: bool = False
    lock_ttl: int = 600


class LockConfig(BaseModel):
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "simple_unblock_processed"


class NotificationConfig(BaseModel):
    enabled: bool = True
    admin_email: Optional[str] = None
    from_address: str = "ipunblock@localhost"
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_starttls: bool = False
    webhook_url: Optional[str] = None
    notify_connection_failures: bool = True
    critical_hosts: List[str] = Field(default_factory=list)


class QueueConfig(BaseModel):
    max_concurrency: int = 8
    job_timeout: float = 300.0     # seconds
    max_retry_attempts: int = 3
    retry_delay: float = 5.0       # seconds


class AppConfig(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    unblock: UnblockConfig = Field(default_factory=UnblockConfig)
    simple_mode: SimpleModeConfig = Field(default_factory=SimpleModeConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)


_config: AppConfig | None = None


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load config from YAML file. Falls back to defaults if file not found."""
    global _config
    if _config is not None:
        return _config

    paths_to_try = []
    if config_path:
        paths_to_try.append(Path(config_path))
    paths_to_try.extend([
        Path("config.yaml"),
        Path("config.yml"),
        _default_data_dir() / "config.yaml",
        _default_data_dir() / "config.yml",
    ])

    for p in paths_to_try:
        if p.exists():
            with open(p) as f:
                data = yaml.safe_load(f) or {}
            _config = AppConfig(**data)
            return _config

    _config = AppConfig()
    return _config


def get_config() -> AppConfig:
    """Get the current config, loading defaults if needed."""
    if _config is None:
        return load_config()
    return _config


def reset_config() -> None:
    """Reset config (for testing)."""
    global _config
    _config = None
