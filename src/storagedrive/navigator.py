"""
StorageNavigator - a bucket-and-folder view of the object store for a shell

Paths are ``""`` (the drive), ``"<bucket>"`` or ``"<bucket>/<object path>"``.
The store has no directories: a folder is either the prefix of some object
names or a real marker object whose name ends in ``/``, and both behave the
same here.
"""

import asyncio
import functools
import logging
import mimetypes
import time
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Union

from ._tasks import FanOut, ProgressCallback, check_stop
from .bucket_cache import ProjectBucketCache
from .bucket_index import DEFAULT_INDEX_TTL, BucketIndexRegistry, BucketObjectIndex
from .error import (
    ConflictException,
    InvalidOperationException,
    NotEmptyException,
    NotFoundException,
    PermissionDeniedException,
    StorageDriveException,
)
from .models import Bucket, ObjectMetadata
from .paths import SEPARATOR, ObjectPath, PathType, child_name, folder_prefix
from .service import StorageService
from .streams import UTF8_TEXT_MIME_TYPE, ContentReader, ContentStreamBridge, ContentWriter
from .telemetry import LoggingResultReporter, ResultReporter


COMPONENT = "StorageNavigator"
FILE_READ_CHUNK = 1024 * 1024
FOLDER_ITEM_TYPES = ("directory", "folder")


@dataclass
class DriveRoot:
    """The drive itself, returned for the empty path."""
    name: str


@dataclass
class DriveItem:
    """
    One entry as the shell sees it. ``name`` is relative to the folder that was
    listed (``"dir/"``, ``"dir/y.txt"``); ``path`` is the full drive path.
    """
    path: str
    name: str
    is_container: bool
    item: Union[DriveRoot, Bucket, ObjectMetadata]


def infer_content_type(file_name: str) -> str:
    content_type, _ = mimetypes.guess_type(file_name)
    return content_type or "application/octet-stream"


def _reported(operation: str):
    """Report the outcome of a top-level coroutine exactly once."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                result = await func(self, *args, **kwargs)
            except Exception as e:
                self._report_failure(operation, e)
                raise
            self._reporter.report_success(COMPONENT, operation)
            return result
        return wrapper
    return decorator


async def _file_chunks(file_name: str) -> AsyncIterator[bytes]:
    with open(file_name, "rb") as f:
        while True:
            chunk = await asyncio.to_thread(f.read, FILE_READ_CHUNK)
            if not chunk:
                return
            yield chunk


class StorageNavigator:
    """
    Answers existence, folder and listing questions about drive paths and turns
    create, copy, remove, read and write requests into object-store calls.

    Example:
        async with StorageClient(access_token=token) as client:
            drive = StorageNavigator(client, default_project="my-project")
            async for item in drive.get_child_items("my-bucket/logs"):
                print(item.name, item.is_container)
    """

    def __init__(
        self,
        service: StorageService,
        reporter: Optional[ResultReporter] = None,
        bucket_cache: Optional[ProjectBucketCache] = None,
        index_ttl: float = DEFAULT_INDEX_TTL,
        fan_out_limit: int = 32,
        stop: Optional[asyncio.Event] = None,
        default_project: Optional[str] = None,
        drive_name: str = "gs",
        clock=time.monotonic,
    ):
        """
        Initialize StorageNavigator.

        Args:
            service: The object-store client
            reporter: Receives one success or failure report per top-level call; logs them if omitted
            bucket_cache: Shared bucket cache; a private one is created if omitted
            index_ttl: Seconds a listing of a bucket folder is trusted
            fan_out_limit: Maximum concurrent requests in a recursive copy or remove
            stop: Default stop signal for calls that do not pass their own
            default_project: Project used when creating buckets without an explicit one
            drive_name: Name reported for the drive root
            clock: Monotonic clock used for cache ages
        """
        self._service = service
        self._reporter = reporter or LoggingResultReporter()
        self.bucket_cache = bucket_cache or ProjectBucketCache(service, clock=clock)
        self._indexes = BucketIndexRegistry(service, ttl=index_ttl, clock=clock)
        self._streams = ContentStreamBridge(service)
        self._fan_out_limit = fan_out_limit
        self._stop = stop
        self.default_project = default_project
        self.drive_name = drive_name
        self._logger = logging.getLogger(__name__)

    def _report_failure(self, operation: str, error: Exception) -> None:
        if isinstance(error, StorageDriveException) and error.operation is None:
            error.operation = operation
        self._reporter.report_failure(COMPONENT, operation, error)

    def _stop_signal(self, stop: Optional[asyncio.Event]) -> Optional[asyncio.Event]:
        return stop if stop is not None else self._stop

    def bucket_index(self, bucket: str) -> BucketObjectIndex:
        return self._indexes.get(bucket)

    def clear_cache(self) -> None:
        """Forget all cached buckets and bucket indexes."""
        self.bucket_cache.reset()
        self._indexes.clear()

    # Queries

    async def exists(self, path: str, stop: Optional[asyncio.Event] = None) -> bool:
        p = ObjectPath.parse(path)
        if p.type == PathType.DRIVE:
            return True
        if p.type == PathType.BUCKET:
            # Peek only; probing one bucket never enumerates projects.
            if self.bucket_cache.get(p.bucket) is not None:
                return True
            bucket = await self._service.try_get_bucket(p.bucket)
            if bucket is None:
                return False
            self.bucket_cache.put(bucket)
            return True
        try:
            return await self.bucket_index(p.bucket).exists(p.path, stop=self._stop_signal(stop))
        except NotFoundException:
            return False

    async def is_container(self, path: str, stop: Optional[asyncio.Event] = None) -> bool:
        p = ObjectPath.parse(path)
        if p.type != PathType.OBJECT:
            return True
        try:
            return await self.bucket_index(p.bucket).is_container(p.path, stop=self._stop_signal(stop))
        except NotFoundException:
            return False

    async def has_children(self, path: str, stop: Optional[asyncio.Event] = None) -> bool:
        p = ObjectPath.parse(path)
        if p.type == PathType.DRIVE:
            return True
        try:
            return await self.bucket_index(p.bucket).has_children(p.path, stop=self._stop_signal(stop))
        except NotFoundException:
            return False

    @_reported("GetItem")
    async def get_item(self, path: str, stop: Optional[asyncio.Event] = None) -> DriveItem:
        p = ObjectPath.parse(path)
        if p.type == PathType.DRIVE:
            return DriveItem("", self.drive_name, True, DriveRoot(self.drive_name))
        if p.type == PathType.BUCKET:
            bucket = await self._get_bucket(p.bucket)
            return DriveItem(bucket.name, bucket.name, True, bucket)
        stop = self._stop_signal(stop)
        index = self.bucket_index(p.bucket)
        metadata = await index.get(p.path, stop=stop)
        is_container = await index.is_container(p.path, stop=stop)
        return DriveItem(str(p), child_name(p.path), is_container, metadata)

    async def _get_bucket(self, bucket_name: str) -> Bucket:
        bucket = self.bucket_cache.get(bucket_name)
        if bucket is None:
            bucket = await self._service.get_bucket(bucket_name)
            self.bucket_cache.put(bucket)
        return bucket

    # Listing

    async def get_child_items(
        self,
        path: str,
        recursive: bool = False,
        stop: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[DriveItem]:
        """
        Lazily yield the children of a drive, bucket or folder. A path naming a
        plain object yields that object.
        """
        try:
            async for item in self._child_items(path, recursive, self._stop_signal(stop)):
                yield item
        except GeneratorExit:
            self._reporter.report_success(COMPONENT, "GetChildItems")
            raise
        except Exception as e:
            self._report_failure("GetChildItems", e)
            raise
        self._reporter.report_success(COMPONENT, "GetChildItems")

    async def get_child_names(self, path: str, stop: Optional[asyncio.Event] = None) -> AsyncIterator[DriveItem]:
        """Like a shallow ``get_child_items``, but names are bare segments without a trailing ``/``."""
        try:
            async for item in self._child_items(path, False, self._stop_signal(stop)):
                item.name = child_name(item.name)
                yield item
        except GeneratorExit:
            self._reporter.report_success(COMPONENT, "GetChildNames")
            raise
        except Exception as e:
            self._report_failure("GetChildNames", e)
            raise
        self._reporter.report_success(COMPONENT, "GetChildNames")

    async def _child_items(
        self,
        path: str,
        recursive: bool,
        stop: Optional[asyncio.Event],
    ) -> AsyncIterator[DriveItem]:
        p = ObjectPath.parse(path)
        if p.type == PathType.DRIVE:
            for bucket in await self.bucket_cache.list_all_buckets(stop=stop):
                yield DriveItem(bucket.name, bucket.name, True, bucket)
                if not recursive:
                    continue
                try:
                    async for item in self._object_children(bucket.name, None, True, stop):
                        yield item
                except PermissionDeniedException:
                    # Access to a bucket does not imply access to its objects.
                    self._logger.warning(
                        "[StorageDrive][Navigator] objects of bucket=%s are restricted; skipping",
                        bucket.name,
                    )
            return

        if p.type == PathType.OBJECT and not await self.is_container(path, stop=stop):
            index = self.bucket_index(p.bucket)
            metadata = await index.get(p.path, stop=stop)
            yield DriveItem(str(p), child_name(p.path), False, metadata)
            return

        async for item in self._object_children(p.bucket, p.path, recursive, stop):
            yield item

    async def _object_children(
        self,
        bucket: str,
        object_path: Optional[str],
        recursive: bool,
        stop: Optional[asyncio.Event],
    ) -> AsyncIterator[DriveItem]:
        prefix = folder_prefix(object_path)
        async for metadata in self.bucket_index(bucket).list_children(prefix, recursive, stop=stop):
            name = metadata.object_name
            yield DriveItem(
                path=str(ObjectPath.for_object(bucket, name)),
                name=name[len(prefix):],
                is_container=metadata.synthetic or name.endswith(SEPARATOR),
                item=metadata,
            )

    # Creation

    @_reported("NewItem")
    async def new_item(
        self,
        path: str,
        item_type: Optional[str] = None,
        value: Union[str, bytes, None] = None,
        file: Optional[str] = None,
        content_type: Optional[str] = None,
        predefined_acl: Optional[str] = None,
        project: Optional[str] = None,
        location: Optional[str] = None,
        storage_class: Optional[str] = None,
        default_bucket_acl: Optional[str] = None,
        default_object_acl: Optional[str] = None,
    ) -> DriveItem:
        """
        Create a bucket, a folder or an object.

        ``item_type`` of ``"Directory"`` (or ``"folder"``) creates a marker object
        by forcing a trailing ``/``. Object content comes from ``file`` or from
        ``value``; the content type defaults from the file extension or to UTF-8
        text.
        """
        new_folder = (item_type or "").lower() in FOLDER_ITEM_TYPES
        if new_folder and not path.endswith(("/", "\\")):
            path += SEPARATOR
        p = ObjectPath.parse(path)

        if p.type == PathType.DRIVE:
            raise InvalidOperationException("Cannot create a drive; add a new drive instead.")

        if p.type == PathType.BUCKET:
            bucket = await self._new_bucket(
                p.bucket,
                project or self.default_project,
                location,
                storage_class,
                default_bucket_acl,
                default_object_acl,
            )
            return DriveItem(bucket.name, bucket.name, True, bucket)

        if file is not None:
            data = _file_chunks(file)
            content_type = content_type or infer_content_type(file)
        else:
            if isinstance(value, bytes):
                data = value
            else:
                data = ("" if value is None else str(value)).encode("utf-8")
            content_type = content_type or UTF8_TEXT_MIME_TYPE

        metadata = await self._service.insert_object(
            p.bucket, p.path, data, content_type, predefined_acl=predefined_acl
        )
        self.bucket_index(p.bucket).insert(metadata)
        self._logger.info(
            "[StorageDrive][NewItem] bucket=%s object=%s size=%s contentType=%s",
            p.bucket,
            p.path,
            metadata.size,
            content_type,
        )
        return DriveItem(str(p), child_name(p.path), new_folder, metadata)

    async def _new_bucket(
        self,
        bucket_name: str,
        project: Optional[str],
        location: Optional[str],
        storage_class: Optional[str],
        default_bucket_acl: Optional[str],
        default_object_acl: Optional[str],
    ) -> Bucket:
        if not project:
            raise InvalidOperationException(
                f"A project is required to create bucket '{bucket_name}'.", bucket=bucket_name
            )
        bucket = await self._service.insert_bucket(
            project,
            bucket_name,
            location=location,
            storage_class=storage_class,
            predefined_acl=default_bucket_acl,
            predefined_default_object_acl=default_object_acl,
        )
        self.bucket_cache.put(bucket)
        self.bucket_cache.invalidate()
        self._indexes.discard(bucket.name)
        self._logger.info("[StorageDrive][NewItem] bucket=%s project=%s", bucket.name, project)
        return bucket

    # Copy

    @_reported("CopyItem")
    async def copy_item(
        self,
        path: str,
        copy_path: str,
        recurse: bool = False,
        source_generation: Optional[int] = None,
        destination_acl: Optional[str] = None,
        stop: Optional[asyncio.Event] = None,
    ) -> List[DriveItem]:
        """
        Copy an object, or with ``recurse`` a folder and everything below it.

        A recursive copy issues one copy per descendant, then copies the folder's
        marker object if it has one. Copies that succeeded before a failure are
        kept.
        """
        stop = self._stop_signal(stop)
        src = ObjectPath.parse(path)
        dst = ObjectPath.parse(copy_path)
        if src.type != PathType.OBJECT:
            raise InvalidOperationException(f"Cannot copy a {src.type.value}; copy its objects instead.")
        if dst.type == PathType.DRIVE:
            raise InvalidOperationException("Copy destination must name a bucket.")

        index = self.bucket_index(src.bucket)
        if recurse and await index.is_container(src.path, stop=stop):
            return await self._copy_folder(src, dst, destination_acl, stop)

        destination = dst.path or ""
        if not destination or destination.endswith(SEPARATOR):
            destination += child_name(src.path)
        metadata = await self._service.copy_object(
            src.bucket,
            src.path,
            dst.bucket,
            destination,
            source_generation=source_generation,
            destination_acl=destination_acl,
        )
        self.bucket_index(dst.bucket).insert(metadata)
        self._logger.info(
            "[StorageDrive][CopyItem] from=%s to=%s/%s", src, dst.bucket, destination
        )
        return [self._copied_item(metadata)]

    async def _copy_folder(
        self,
        src: ObjectPath,
        dst: ObjectPath,
        destination_acl: Optional[str],
        stop: Optional[asyncio.Event],
    ) -> List[DriveItem]:
        src_folder = src.as_folder()
        dst_prefix = folder_prefix(dst.path)
        index = self.bucket_index(src.bucket)
        marker_is_real = await index.is_real(src_folder.path, stop=stop)

        def copy_to(source_name: str, destination_name: str):
            return lambda: self._service.copy_object(
                src.bucket,
                source_name,
                dst.bucket,
                destination_name,
                destination_acl=destination_acl,
            )

        try:
            async with FanOut("copy", src.bucket, self._fan_out_limit, stop) as fan:
                async for child in index.list_children(src_folder.path, recursive=True, stop=stop):
                    relative = src_folder.relative_path_to_child(child.object_name)
                    await fan.submit(child.object_name, copy_to(child.object_name, dst_prefix + relative))
            copied = list(fan.results)

            # A prefix-only folder has no marker to copy.
            if marker_is_real and dst_prefix:
                check_stop(stop, src.bucket, src_folder.path)
                copied.append(await copy_to(src_folder.path, dst_prefix)())
        finally:
            self._indexes.invalidate(dst.bucket)

        self._logger.info(
            "[StorageDrive][CopyItem] from=%s to=%s/%s objects=%s", src_folder, dst.bucket, dst_prefix, len(copied)
        )
        return [self._copied_item(metadata) for metadata in copied]

    @staticmethod
    def _copied_item(metadata: ObjectMetadata) -> DriveItem:
        name = metadata.object_name
        return DriveItem(
            str(ObjectPath.for_object(metadata.bucket_name, name)),
            child_name(name),
            name.endswith(SEPARATOR),
            metadata,
        )

    # Removal

    @_reported("RemoveItem")
    async def remove_item(
        self,
        path: str,
        recurse: bool = False,
        stop: Optional[asyncio.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        """
        Remove a bucket, folder or object. A populated folder or bucket is only
        removed with ``recurse``; its descendants are deleted concurrently and are
        not restored if one of them fails.
        """
        stop = self._stop_signal(stop)
        p = ObjectPath.parse(path)
        if p.type == PathType.DRIVE:
            raise InvalidOperationException("Cannot remove a drive; remove the drive itself instead.")
        if p.type == PathType.BUCKET:
            await self._remove_bucket(p.bucket, recurse, stop, progress)
            return

        index = self.bucket_index(p.bucket)
        try:
            if await index.is_container(p.path, stop=stop):
                await self._remove_folder(index, p, recurse, stop, progress)
            else:
                await self._service.delete_object(p.bucket, p.path)
                self._logger.info("[StorageDrive][RemoveItem] bucket=%s object=%s", p.bucket, p.path)
        finally:
            index.invalidate()

    async def _remove_folder(
        self,
        index: BucketObjectIndex,
        p: ObjectPath,
        recurse: bool,
        stop: Optional[asyncio.Event],
        progress: Optional[ProgressCallback],
    ) -> None:
        prefix = folder_prefix(p.path)
        if not recurse and await index.has_children(p.path, stop=stop):
            raise NotEmptyException(p.bucket, p.path)
        marker_is_real = await index.is_real(prefix, stop=stop)

        if recurse:
            await self._delete_descendants(index, prefix, stop, progress)
        if marker_is_real:
            check_stop(stop, p.bucket, prefix)
            await self._service.delete_object(p.bucket, prefix)
        self._logger.info(
            "[StorageDrive][RemoveItem] bucket=%s folder=%s recurse=%s marker=%s",
            p.bucket,
            prefix,
            recurse,
            marker_is_real,
        )

    async def _delete_descendants(
        self,
        index: BucketObjectIndex,
        prefix: str,
        stop: Optional[asyncio.Event],
        progress: Optional[ProgressCallback],
    ) -> int:
        bucket = index.bucket

        def delete(name: str):
            return lambda: self._service.delete_object(bucket, name)

        async with FanOut("delete", bucket, self._fan_out_limit, stop, progress) as fan:
            async for child in index.list_children(prefix, recursive=True, stop=stop):
                await fan.submit(child.object_name, delete(child.object_name))
        return fan.completed

    async def _remove_bucket(
        self,
        bucket: str,
        recurse: bool,
        stop: Optional[asyncio.Event],
        progress: Optional[ProgressCallback],
    ) -> None:
        index = self.bucket_index(bucket)
        try:
            if recurse:
                deleted = await self._delete_descendants(index, "", stop, progress)
                self._logger.info("[StorageDrive][RemoveItem] bucket=%s objectsDeleted=%s", bucket, deleted)
            elif await index.has_children(None, stop=stop):
                raise NotEmptyException(bucket)

            check_stop(stop, bucket)
            try:
                await self._service.delete_bucket(bucket)
            except ConflictException as e:
                if not recurse:
                    raise NotEmptyException(bucket) from e
                # One retry after emptying it.
                await self._service.delete_bucket(bucket)
        finally:
            self._indexes.discard(bucket)

        self.bucket_cache.discard(bucket)
        self.bucket_cache.invalidate()
        self._logger.info("[StorageDrive][RemoveItem] bucket=%s removed", bucket)

    # Content

    @_reported("GetContentReader")
    async def get_content_reader(self, path: str) -> ContentReader:
        p = self._object_path_for_content(path)
        return await self._streams.open_reader(p.bucket, p.path)

    @_reported("GetContentWriter")
    async def get_content_writer(self, path: str, content_type: Optional[str] = None) -> ContentWriter:
        """
        Start an upload to ``path`` and return the writer that feeds it. The
        object exists once the writer is closed; ``close`` raises if the upload
        failed.
        """
        p = self._object_path_for_content(path)
        index = self.bucket_index(p.bucket)
        return self._streams.open_writer(p.bucket, p.path, content_type, on_complete=index.insert)

    @_reported("ClearContent")
    async def clear_content(self, path: str) -> ObjectMetadata:
        p = self._object_path_for_content(path)
        index = self.bucket_index(p.bucket)
        return await self._streams.clear(p.bucket, p.path, on_complete=index.insert)

    @staticmethod
    def _object_path_for_content(path: str) -> ObjectPath:
        p = ObjectPath.parse(path)
        if p.type != PathType.OBJECT:
            raise InvalidOperationException(f"Cannot get the contents of a {p.type.value}.", bucket=p.bucket)
        return p
