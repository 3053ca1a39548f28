"""Tests for the asyncio task queue."""

import asyncio
import threading
import time

import pytest

from ipunblock.core.exceptions import ConnectionFailed, InvalidInput
from ipunblock.services.task_queue import TaskQueue


@pytest.mark.asyncio
async def test_run_returns_result_from_worker_thread():
    queue = TaskQueue(max_concurrency=2, job_timeout=5, max_retries=0, retry_delay=0)
    main_thread = threading.get_ident()
    result = await queue.run("job", lambda: threading.get_ident())
    assert result != main_thread


@pytest.mark.asyncio
async def test_connection_failures_are_retried():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionFailed("refused")
        return "ok"

    queue = TaskQueue(job_timeout=5, max_retries=3, retry_delay=0)
    assert await queue.run("flaky", flaky) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retries_are_bounded():
    calls = []

    def always_down():
        calls.append(1)
        raise ConnectionFailed("refused")

    queue = TaskQueue(job_timeout=5, max_retries=2, retry_delay=0)
    with pytest.raises(ConnectionFailed):
        await queue.run("down", always_down)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    calls = []

    def bad_input():
        calls.append(1)
        raise InvalidInput("bad ip")

    queue = TaskQueue(job_timeout=5, max_retries=3, retry_delay=0)
    with pytest.raises(InvalidInput):
        await queue.run("bad", bad_input)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_job_timeout():
    queue = TaskQueue(job_timeout=0.05, max_retries=0, retry_delay=0)
    with pytest.raises(asyncio.TimeoutError):
        await queue.run("slow", time.sleep, 0.5)


@pytest.mark.asyncio
async def test_submit_and_drain():
    queue = TaskQueue(max_concurrency=2, job_timeout=5, max_retries=0, retry_delay=0)
    queue.submit("a", lambda: 1)
    queue.submit("b", lambda: 2)
    queue.submit("c", lambda: (_ for _ in ()).throw(ValueError("boom")))
    results = await queue.drain()
    assert sorted(results, key=str) == [1, 2, None]
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_submit_threadsafe_from_worker():
    queue = TaskQueue(job_timeout=5, max_retries=0, retry_delay=0)

    def parent():
        queue.submit_threadsafe("child", lambda: "child-done").result(timeout=5)
        return "parent-done"

    queue.submit("parent", parent)
    results = await queue.drain()
    assert sorted(results) == ["child-done", "parent-done"]


def test_config_defaults():
    queue = TaskQueue()
    assert queue.max_concurrency == 8
    assert queue.retry_delay == 0
    assert queue.job_timeout == 5
