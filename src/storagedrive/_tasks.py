"""
Cooperative stop checks and per-child fan-out for recursive operations.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from .error import CancelledException, RecursiveOperationException


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def check_stop(stop: Optional[asyncio.Event], bucket: Optional[str] = None, path: Optional[str] = None) -> None:
    """Raise CancelledException if the caller asked to stop."""
    if stop is not None and stop.is_set():
        raise CancelledException(bucket=bucket, path=path)


class FanOut:
    """
    Runs one task per child object and waits for all of them on exit.

    ``submit`` waits for a free slot before it creates the task, so at most
    ``limit`` tasks exist at once and a long enumeration is paced by its slowest
    calls. Submitted tasks always run to completion, even when a sibling fails or
    the enclosing enumeration raises. A task that has not started when the stop
    signal is set does not issue its call. On a clean exit any child failures
    are raised together as RecursiveOperationException.

    Usage:
        async with FanOut("delete", bucket, limit=32, stop=stop) as fan:
            async for obj in listing:
                await fan.submit(obj.object_name, lambda name=obj.object_name: service.delete_object(bucket, name))
    """

    def __init__(
        self,
        action: str,
        bucket: str,
        limit: int = 32,
        stop: Optional[asyncio.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ):
        self.action = action
        self.bucket = bucket
        self._stop = stop
        self._progress = progress
        self._semaphore = asyncio.Semaphore(max(1, limit))
        self._pending: Set[asyncio.Task] = set()
        self._failures: List[Tuple[str, BaseException]] = []
        self.results: List = []
        self.submitted = 0
        self.completed = 0

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    async def submit(self, path: str, call: Callable[[], Awaitable]) -> None:
        check_stop(self._stop, self.bucket, path)
        await self._semaphore.acquire()
        task = asyncio.create_task(self._run(path, call))
        self._pending.add(task)
        self.submitted += 1

    async def _run(self, path: str, call: Callable[[], Awaitable]) -> None:
        try:
            check_stop(self._stop, self.bucket, path)
            result = await call()
        except Exception as e:
            self._failures.append((path, e))
        else:
            self.completed += 1
            if result is not None:
                self.results.append(result)
        finally:
            self._pending.discard(asyncio.current_task())
            self._semaphore.release()
        if self._progress is not None:
            self._progress(self.completed + len(self._failures), self.submitted)

    async def _wait_all(self) -> None:
        try:
            while self._pending:
                done, _ = await asyncio.wait(set(self._pending))
                self._pending.difference_update(done)
        except asyncio.CancelledError:
            for task in self._pending:
                task.cancel()
            raise

    async def __aenter__(self) -> "FanOut":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self._wait_all()
        failures = self._failures

        if exc_type is not None:
            if failures:
                logger.warning(
                    "[StorageDrive][FanOut] action=%s bucket=%s failed=%s (enumeration also failed)",
                    self.action,
                    self.bucket,
                    len(failures),
                )
            return False

        if not failures:
            return False
        if all(isinstance(error, CancelledException) for _, error in failures):
            raise CancelledException(bucket=self.bucket)

        failures = [(path, error) for path, error in failures if not isinstance(error, CancelledException)]
        logger.warning(
            "[StorageDrive][FanOut] action=%s bucket=%s failed=%s completed=%s",
            self.action,
            self.bucket,
            len(failures),
            self.completed,
        )
        raise RecursiveOperationException(self.action, self.bucket, failures, self.completed) from failures[0][1]
