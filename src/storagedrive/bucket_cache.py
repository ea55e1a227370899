"""
Time-bounded cache of every bucket visible to the caller.

Filling it means listing all projects and then, concurrently, the buckets of
each project, so it is refreshed wholesale and only when it is older than the
TTL. The mapping is replaced, never edited in place, so a reader holding the
previous mapping never sees a half-built one.
"""

import asyncio
import logging
import time
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from ._tasks import check_stop
from .error import PermissionDeniedException
from .models import Bucket, Project
from .service import StorageService


logger = logging.getLogger(__name__)

DEFAULT_BUCKET_CACHE_TTL = 60.0


class ProjectBucketCache:
    """Bucket name -> bucket metadata for all projects, refreshed every ``ttl`` seconds."""

    def __init__(
        self,
        service: StorageService,
        ttl: float = DEFAULT_BUCKET_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
        max_concurrency: int = 16,
    ):
        self.ttl = ttl
        self._service = service
        self._clock = clock
        self._max_concurrency = max(1, max_concurrency)
        self._buckets: Optional[Dict[str, Bucket]] = None
        self._last_populated: Optional[float] = None
        self._lock = asyncio.Lock()
        # Bumped by invalidate and reset.
        self._generation = 0
        # put/discard calls made while an enumeration is running, replayed onto its result.
        self._changes: Optional[List[Tuple[str, Optional[Bucket]]]] = None

    @property
    def is_populated(self) -> bool:
        return self._buckets is not None

    def is_stale(self) -> bool:
        if self._last_populated is None:
            return True
        return self._clock() - self._last_populated > self.ttl

    async def list_all_buckets(self, stop: Optional[asyncio.Event] = None) -> List[Bucket]:
        await self.refresh(stop=stop)
        return list(self._buckets.values())

    async def refresh(self, force: bool = False, stop: Optional[asyncio.Event] = None) -> bool:
        """
        Re-enumerate all projects and their buckets if the cache is stale (or
        ``force`` is set). Returns True if an enumeration ran.
        """
        if not force and not self.is_stale():
            return False
        async with self._lock:
            if not force and not self.is_stale():
                return False
            started = self._clock()
            generation = self._generation
            self._changes = []
            try:
                buckets = await self._enumerate(stop)
                for name, bucket in self._changes:
                    if bucket is None:
                        buckets.pop(name, None)
                    else:
                        buckets[name] = bucket
            finally:
                self._changes = None
            self._buckets = buckets
            if generation == self._generation:
                self._last_populated = self._clock()
            else:
                logger.info("[StorageDrive][BucketCache] invalidated during refresh; next listing re-enumerates")
            logger.info(
                "[StorageDrive][BucketCache] refreshed buckets=%s seconds=%.2f",
                len(buckets),
                self._clock() - started,
            )
            return True

    def invalidate(self) -> None:
        """Make the next listing re-enumerate. The last contents stay available to ``peek``."""
        self._generation += 1
        self._last_populated = None

    def reset(self) -> None:
        self._generation += 1
        self._buckets = None
        self._last_populated = None

    def peek(self) -> Optional[Mapping[str, Bucket]]:
        """The last contents without refreshing, or None if never populated."""
        if self._buckets is None:
            return None
        return MappingProxyType(self._buckets)

    def get(self, bucket_name: str) -> Optional[Bucket]:
        if self._buckets is None:
            return None
        return self._buckets.get(bucket_name)

    def put(self, bucket: Bucket) -> None:
        """Record a bucket if the cache is populated. Never triggers an enumeration."""
        if self._changes is not None:
            self._changes.append((bucket.name, bucket))
        if self._buckets is None:
            return
        updated = dict(self._buckets)
        updated[bucket.name] = bucket
        self._buckets = updated

    def discard(self, bucket_name: str) -> None:
        if self._changes is not None:
            self._changes.append((bucket_name, None))
        if self._buckets is None or bucket_name not in self._buckets:
            return
        updated = dict(self._buckets)
        del updated[bucket_name]
        self._buckets = updated

    async def _enumerate(self, stop: Optional[asyncio.Event]) -> Dict[str, Bucket]:
        projects = await self._list_active_projects(stop)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def list_project(project: Project) -> List[Bucket]:
            async with semaphore:
                return await self._list_project_buckets(project, stop)

        results = await asyncio.gather(
            *(list_project(project) for project in projects),
            return_exceptions=True,
        )

        buckets: Dict[str, Bucket] = {}
        for project, result in zip(projects, results):
            if isinstance(result, PermissionDeniedException):
                logger.warning(
                    "[StorageDrive][BucketCache] skipping project=%s: %s",
                    project.project_id,
                    result,
                )
                continue
            if isinstance(result, BaseException):
                raise result
            for bucket in result:
                buckets[bucket.name] = bucket
        return buckets

    async def _list_active_projects(self, stop: Optional[asyncio.Event]) -> List[Project]:
        projects: List[Project] = []
        page_token = None
        while True:
            check_stop(stop)
            page = await self._service.list_projects(page_token)
            # Buckets of inactive projects are not reachable.
            projects.extend(p for p in page.projects if p.lifecycle_state == "ACTIVE")
            page_token = page.next_page_token
            if not page_token:
                return projects

    async def _list_project_buckets(self, project: Project, stop: Optional[asyncio.Event]) -> List[Bucket]:
        buckets: List[Bucket] = []
        page_token = None
        while True:
            check_stop(stop)
            page = await self._service.list_buckets(project.project_id, page_token)
            buckets.extend(page.buckets)
            page_token = page.next_page_token
            if not page_token:
                return buckets
