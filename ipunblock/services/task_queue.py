"""Task queue — runs blocking check units on worker threads under asyncio.

Each unit gets a per-job timeout and is retried when the SSH connection
could not be established. A timed-out unit is abandoned, not cancelled:
its thread finishes the remote command it is running and its session
cleans up on exit.

Notifications go through the same queue: `dispatcher` turns a sender
into a callable that schedules delivery and returns at once.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, List, Optional, Set

from ipunblock.config import QueueConfig, get_config
from ipunblock.core.exceptions import ConnectionFailed

logger = logging.getLogger(__name__)


class TaskQueue:
    def __init__(
        self,
        max_concurrency: int | None = None,
        job_timeout: float | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        config: QueueConfig | None = None,
    ):
        cfg = config or get_config().queue
        self.max_concurrency = max_concurrency or cfg.max_concurrency
        self.job_timeout = job_timeout if job_timeout is not None else cfg.job_timeout
        self.max_retries = max_retries if max_retries is not None else cfg.max_retry_attempts
        self.retry_delay = retry_delay if retry_delay is not None else cfg.retry_delay
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        self._handoffs: List[concurrent.futures.Future] = []
        self._handoff_lock = threading.Lock()

    def _bind(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._loop = asyncio.get_running_loop()
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
        return self._semaphore

    async def run(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run `fn` in a worker thread, retrying on ConnectionFailed.

        Raises asyncio.TimeoutError when an attempt exceeds job_timeout,
        and re-raises the last ConnectionFailed once retries run out.
        """
        semaphore = self._bind()
        attempt = 0
        async with semaphore:
            while True:
                attempt += 1
                try:
                    return await asyncio.wait_for(
                        asyncio.to_thread(fn, *args, **kwargs), timeout=self.job_timeout
                    )
                except ConnectionFailed as e:
                    if attempt > self.max_retries:
                        logger.error("Job %s failed after %d attempts: %s", name, attempt, e)
                        raise
                    logger.warning(
                        "Job %s connection failed (attempt %d/%d), retrying in %.1fs: %s",
                        name, attempt, self.max_retries + 1, self.retry_delay, e,
                    )
                    await asyncio.sleep(self.retry_delay)
                except asyncio.TimeoutError:
                    logger.error("Job %s timed out after %.0fs", name, self.job_timeout)
                    raise

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> asyncio.Task:
        """Schedule a unit in the background. Must be called from the loop."""
        self._bind()
        task = asyncio.create_task(self._guarded(name, fn, *args, **kwargs), name=name)
        self._tasks.add(task)
        return task

    def submit_threadsafe(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any):
        """Schedule a unit from a worker thread onto the queue's loop.

        Returns the concurrent future of the hand-off; `drain` waits for it.
        """
        if self._loop is None:
            raise RuntimeError("TaskQueue is not bound to an event loop yet")
        handoff = asyncio.run_coroutine_threadsafe(
            self._submit_async(name, fn, *args, **kwargs), self._loop
        )
        with self._handoff_lock:
            self._handoffs.append(handoff)
        return handoff

    def dispatcher(self, deliver: Callable[[Any], Any]) -> Callable[[Any], Any]:
        """Wrap a notification sender so each request becomes its own background unit.

        The returned callable only schedules; it never waits on `deliver`.
        """
        def dispatch(request: Any):
            return self.submit_threadsafe(f"notify:{request.kind.value}", deliver, request)

        return dispatch

    async def _submit_async(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any):
        return self.submit(name, fn, *args, **kwargs)

    async def _guarded(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await self.run(name, fn, *args, **kwargs)
        except Exception:
            logger.exception("Background job %s failed", name)
            return None

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def drain(self) -> List[Any]:
        """Wait until every submitted unit, including ones submitted meanwhile, is done."""
        results: List[Any] = []
        seen: Set[asyncio.Task] = set()
        while True:
            with self._handoff_lock:
                handoffs, self._handoffs = self._handoffs, []
            if handoffs:
                await asyncio.gather(
                    *(asyncio.wrap_future(h) for h in handoffs), return_exceptions=True
                )
            batch = [t for t in self._tasks if t not in seen]
            if not batch:
                with self._handoff_lock:
                    if self._handoffs:
                        continue
                self._tasks -= seen
                return results
            seen.update(batch)
            results.extend(await asyncio.gather(*batch))
