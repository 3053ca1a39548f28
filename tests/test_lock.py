"""Tests for the first-writer-wins lock."""

from concurrent.futures import ThreadPoolExecutor

import pytest
import redis

from conftest import FakeRedis, UnreachableRedis
from ipunblock.core.exceptions import LockUnavailable
from ipunblock.services.lock_service import LockService


def test_first_caller_wins():
    redis = FakeRedis()
    lock = LockService(client=redis)

    assert lock.acquire("10.0.0.1", "shop.example.com") is True
    assert lock.acquire("10.0.0.1", "shop.example.com") is False
    assert lock.is_held("10.0.0.1", "shop.example.com") is True
    assert lock.is_held("10.0.0.2", "shop.example.com") is False


def test_key_and_ttl_come_from_config():
    redis = FakeRedis()
    lock = LockService(client=redis)
    lock.acquire("10.0.0.1", "shop.example.com")

    key = "simple_unblock_processed:10.0.0.1:shop.example.com"
    assert redis.store == {key: "1"}
    assert redis.expiry[key] == 600


def test_concurrent_acquire_has_one_winner():
    import threading

    class AtomicRedis(FakeRedis):
        def __init__(self):
            super().__init__()
            self._mutex = threading.Lock()

        def set(self, *args, **kwargs):
            with self._mutex:
                return super().set(*args, **kwargs)

    lock = LockService(client=AtomicRedis())
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: lock.acquire("10.0.0.1", "shop.example.com"), range(16)))
    assert results.count(True) == 1


def test_release_lets_the_pair_be_claimed_again():
    lock = LockService(client=FakeRedis())
    assert lock.acquire("10.0.0.1", "shop.example.com") is True
    assert lock.release("10.0.0.1", "shop.example.com") is True
    assert lock.is_held("10.0.0.1", "shop.example.com") is False
    assert lock.acquire("10.0.0.1", "shop.example.com") is True
    assert lock.release("10.0.0.2", "shop.example.com") is False


def test_unreachable_store_raises_lock_unavailable():
    lock = LockService(client=UnreachableRedis())
    for call in (lock.is_held, lock.acquire, lock.release):
        with pytest.raises(LockUnavailable) as exc_info:
            call("10.0.0.1", "shop.example.com")
        assert isinstance(exc_info.value.__cause__, redis.ConnectionError)
    assert lock.ping() is False
