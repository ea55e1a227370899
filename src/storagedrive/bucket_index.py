"""
A local description of the objects in a bucket.

The navigator uses it to answer "does this exist", "is this a folder" and
"does this have children" without listing the bucket on every call. It keeps
track of real objects, which act like files, and of name prefixes, which act
like folders. A folder is known by the key ``"<folder>/"``: either a real
marker object of that name, or a synthetic entry recorded for a listing prefix
or for the parent folders of a known object. A real object named
``"myFolder/"`` is therefore both a folder and an object.

Listings are remembered per listing prefix for ``ttl`` seconds. A recursive
listing also covers every folder below its prefix.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

from ._tasks import check_stop
from .error import ObjectNotFoundException
from .models import ListObjectsResult, ObjectMetadata
from .paths import SEPARATOR, folder_prefix, parent_prefix
from .service import StorageService


logger = logging.getLogger(__name__)

DEFAULT_INDEX_TTL = 60.0


@dataclass
class IndexedObject:
    name: str
    is_container_marker: bool
    metadata: ObjectMetadata
    is_real: bool = True


class BucketObjectIndex:
    """Index of the objects known to exist in one bucket."""

    def __init__(
        self,
        service: StorageService,
        bucket: str,
        ttl: float = DEFAULT_INDEX_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.bucket = bucket
        self.ttl = ttl
        self._service = service
        self._clock = clock
        self._entries: Dict[str, IndexedObject] = {}
        # listing prefix -> (was recursive, when it completed)
        self._populated: Dict[str, Tuple[bool, float]] = {}
        self._lock = asyncio.Lock()
        # Bumped by insert and invalidate; a listing that spans a bump is stale.
        self._generation = 0
        self.last_refresh: Optional[float] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    # Freshness

    def is_fresh(self, prefix: str, recursive: bool = False) -> bool:
        now = self._clock()
        for known, (was_recursive, at) in self._populated.items():
            if now - at > self.ttl:
                continue
            if known == prefix and (was_recursive or not recursive):
                return True
            if was_recursive and prefix.startswith(known):
                return True
        return False

    async def ensure_fresh(
        self,
        prefix: str = "",
        recursive: bool = False,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        """List ``prefix`` unless a recent listing already covers it."""
        if self.is_fresh(prefix, recursive):
            return
        async with self._lock:
            if self.is_fresh(prefix, recursive):
                return
            while True:
                generation = self._generation
                pages = [page async for page in self._list_pages(prefix, recursive, stop)]
                if generation == self._generation:
                    break
                logger.debug(
                    "[StorageDrive][Index] relisting bucket=%s prefix=%s: index changed during listing",
                    self.bucket,
                    prefix,
                )
            # Applied in one step so readers see the old or the new listing, never half of it.
            seen: Set[str] = set()
            for page in pages:
                self._apply(page, seen)
            self._finish(prefix, recursive, seen)
            logger.debug(
                "[StorageDrive][Index] refreshed bucket=%s prefix=%s recursive=%s pages=%s",
                self.bucket,
                prefix,
                recursive,
                len(pages),
            )

    def invalidate(self) -> None:
        """Forget everything; the next query lists from scratch."""
        self._generation += 1
        self._entries.clear()
        self._populated.clear()
        self.last_refresh = None

    # Queries

    async def exists(self, object_name: str, stop: Optional[asyncio.Event] = None) -> bool:
        await self.ensure_fresh(parent_prefix(object_name), stop=stop)
        return object_name in self._entries or folder_prefix(object_name) in self._entries

    async def is_container(self, object_name: Optional[str], stop: Optional[asyncio.Event] = None) -> bool:
        if not object_name:
            return True
        await self.ensure_fresh(parent_prefix(object_name), stop=stop)
        return folder_prefix(object_name) in self._entries

    async def has_children(self, object_name: Optional[str], stop: Optional[asyncio.Event] = None) -> bool:
        prefix = folder_prefix(object_name)
        await self.ensure_fresh(prefix, stop=stop)
        return any(name != prefix and name.startswith(prefix) for name in self._entries)

    async def is_real(self, object_name: str, stop: Optional[asyncio.Event] = None) -> bool:
        """
        True if a real object has exactly this name. A folder can exist without
        being real when it is only a prefix of other objects.
        """
        if object_name.endswith(SEPARATOR):
            # A marker only shows up as an item when its own prefix is listed.
            await self.ensure_fresh(object_name, stop=stop)
        else:
            await self.ensure_fresh(parent_prefix(object_name), stop=stop)
        entry = self._entries.get(object_name)
        return entry is not None and entry.is_real

    async def try_get(self, object_name: str, stop: Optional[asyncio.Event] = None) -> Optional[ObjectMetadata]:
        """
        Metadata of the object or folder at ``object_name``, or None if nothing is
        there. A folder resolves to its marker object when one exists and to a
        synthetic record otherwise.
        """
        await self.ensure_fresh(parent_prefix(object_name), stop=stop)
        entry = self._entries.get(object_name)
        if entry is not None and entry.is_real:
            return entry.metadata

        folder_name = folder_prefix(object_name)
        if folder_name not in self._entries:
            return None
        if await self.is_real(folder_name, stop=stop):
            return self._entries[folder_name].metadata
        folder = self._entries.get(folder_name)
        return folder.metadata if folder is not None else None

    async def get(self, object_name: str, stop: Optional[asyncio.Event] = None) -> ObjectMetadata:
        metadata = await self.try_get(object_name, stop=stop)
        if metadata is None:
            raise ObjectNotFoundException(self.bucket, object_name)
        return metadata

    # Listing

    async def list_children(
        self,
        prefix: str = "",
        recursive: bool = False,
        stop: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ObjectMetadata]:
        """
        Lazily yield the children of ``prefix`` page by page, recording each page
        in the index as it arrives. Shallow listings yield one synthetic folder
        per common prefix; the marker object of ``prefix`` itself is not yielded.
        Pages that arrive after an insert or invalidate are yielded but not recorded.
        """
        generation = self._generation
        seen: Set[str] = set()
        async for page in self._list_pages(prefix, recursive, stop):
            if generation == self._generation:
                self._apply(page, seen)
            for obj in page.objects:
                if obj.object_name != prefix:
                    yield obj
            for common_prefix in page.common_prefixes:
                yield ObjectMetadata.folder(self.bucket, common_prefix)
        if generation == self._generation:
            self._finish(prefix, recursive, seen)

    async def _list_pages(
        self,
        prefix: str,
        recursive: bool,
        stop: Optional[asyncio.Event],
    ) -> AsyncIterator[ListObjectsResult]:
        delimiter = "" if recursive else SEPARATOR
        page_token = None
        while True:
            check_stop(stop, self.bucket, prefix)
            page = await self._service.list_objects(self.bucket, prefix, delimiter, page_token)
            logger.debug(
                "[StorageDrive][Index] page bucket=%s prefix=%s objects=%s prefixes=%s",
                self.bucket,
                prefix,
                len(page.objects),
                len(page.common_prefixes),
            )
            yield page
            page_token = page.next_page_token
            if not page_token:
                break

    # Mutation

    def insert(self, metadata: ObjectMetadata) -> None:
        """Record an object the caller just created or copied."""
        self._generation += 1
        self._put_real(metadata, set())

    def _put_real(self, metadata: ObjectMetadata, seen: Set[str]) -> None:
        name = metadata.object_name
        self._entries[name] = IndexedObject(
            name=name,
            is_container_marker=name.endswith(SEPARATOR),
            metadata=metadata,
        )
        seen.add(name)
        self._put_ancestors(name, seen)

    def _put_synthetic(self, name: str, seen: Set[str]) -> None:
        if name not in self._entries:
            self._entries[name] = IndexedObject(
                name=name,
                is_container_marker=True,
                metadata=ObjectMetadata.folder(self.bucket, name),
                is_real=False,
            )
        seen.add(name)

    def _put_ancestors(self, name: str, seen: Set[str]) -> None:
        cut = name.find(SEPARATOR)
        while 0 <= cut < len(name) - 1:
            self._put_synthetic(name[:cut + 1], seen)
            cut = name.find(SEPARATOR, cut + 1)

    def _apply(self, page: ListObjectsResult, seen: Set[str]) -> None:
        for obj in page.objects:
            self._put_real(obj, seen)
        for common_prefix in page.common_prefixes:
            self._put_synthetic(common_prefix, seen)
            self._put_ancestors(common_prefix, seen)

    def _finish(self, prefix: str, recursive: bool, seen: Set[str]) -> None:
        """Drop entries the completed listing of ``prefix`` no longer reports."""
        stale: List[str] = []
        for name in self._entries:
            if name == prefix or not name.startswith(prefix) or name in seen:
                continue
            rest = name[len(prefix):].rstrip(SEPARATOR)
            if recursive or SEPARATOR not in rest:
                stale.append(name)
        for name in stale:
            del self._entries[name]

        if prefix:
            has_children = any(name != prefix and name.startswith(prefix) for name in seen)
            if has_children:
                self._put_synthetic(prefix, seen)
                self._put_ancestors(prefix, seen)
            elif prefix not in seen:
                self._entries.pop(prefix, None)

        now = self._clock()
        self._populated[prefix] = (recursive, now)
        self.last_refresh = now


class BucketIndexRegistry:
    """The per-bucket indexes owned by one navigator, created on first use."""

    def __init__(
        self,
        service: StorageService,
        ttl: float = DEFAULT_INDEX_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._service = service
        self._ttl = ttl
        self._clock = clock
        self._indexes: Dict[str, BucketObjectIndex] = {}

    def get(self, bucket: str) -> BucketObjectIndex:
        index = self._indexes.get(bucket)
        if index is None:
            index = BucketObjectIndex(self._service, bucket, ttl=self._ttl, clock=self._clock)
            self._indexes[bucket] = index
        return index

    def invalidate(self, bucket: str) -> None:
        index = self._indexes.get(bucket)
        if index is not None:
            index.invalidate()

    def discard(self, bucket: str) -> None:
        self._indexes.pop(bucket, None)

    def clear(self) -> None:
        self._indexes.clear()
