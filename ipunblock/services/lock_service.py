"""First-writer-wins lock for anonymous unblock requests.

The same (ip, domain) pair may be dispatched to several hosts at once;
only the first unit to reach remediation claims the key, so the requester
gets one success message.
"""

from __future__ import annotations

import logging
from typing import Any

import redis

from ipunblock.config import get_config
from ipunblock.core.exceptions import LockUnavailable

logger = logging.getLogger(__name__)


class LockService:
    def __init__(self, client: Any = None, ttl: int | None = None, prefix: str | None = None):
        cfg = get_config()
        self._client = client
        self._ttl = ttl if ttl is not None else cfg.simple_mode.lock_ttl
        self._prefix = prefix or cfg.lock.key_prefix

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = redis.Redis.from_url(
                get_config().lock.redis_url, decode_responses=True
            )
        return self._client

    def key(self, ip: str, domain: str) -> str:
        return f"{self._prefix}:{ip}:{domain}"

    def acquire(self, ip: str, domain: str) -> bool:
        """Atomically claim the pair. True only for the first caller within the TTL."""
        key = self.key(ip, domain)
        try:
            claimed = bool(self.client.set(key, "1", nx=True, ex=self._ttl))
        except redis.RedisError as e:
            raise LockUnavailable(f"Cannot claim {key}: {e}") from e
        if claimed:
            logger.info("Lock acquired: %s (ttl=%ds)", key, self._ttl)
        else:
            logger.info("Lock already held: %s", key)
        return claimed

    def is_held(self, ip: str, domain: str) -> bool:
        key = self.key(ip, domain)
        try:
            return bool(self.client.exists(key))
        except redis.RedisError as e:
            raise LockUnavailable(f"Cannot read {key}: {e}") from e

    def release(self, ip: str, domain: str) -> bool:
        """Drop a claim taken by `acquire`. Returns whether a key was removed."""
        key = self.key(ip, domain)
        try:
            removed = bool(self.client.delete(key))
        except redis.RedisError as e:
            raise LockUnavailable(f"Cannot release {key}: {e}") from e
        logger.info("Lock released: %s", key)
        return removed

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning("Lock store unreachable: %s", e)
            return False
