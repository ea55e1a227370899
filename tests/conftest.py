from collections import Counter
from datetime import datetime, UTC
from typing import Dict, List, Optional

import pytest

from storagedrive.error import (
    BucketNotFoundException,
    ConflictException,
    ObjectNotFoundException,
    PermissionDeniedException,
    ServerException,
)
from storagedrive.models import (
    Bucket,
    ListBucketsResult,
    ListObjectsResult,
    ListProjectsResult,
    ObjectMetadata,
    Project,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStorageService:
    """In-memory object store with the same listing semantics as the real one."""

    def __init__(self, page_size: int = 1000):
        self.page_size = page_size
        self.projects: List[Project] = []
        self.bucket_projects: Dict[str, str] = {}
        self.objects: Dict[str, Dict[str, bytes]] = {}
        self.content_types: Dict[tuple, str] = {}
        self.calls: Counter = Counter()
        self.denied_projects: set = set()
        self.denied_buckets: set = set()
        self.failing_deletes: set = set()
        self.failing_uploads: set = set()
        self.conflicts_on_bucket_delete = 0
        self.generation = 0

    # setup helpers

    def add_project(self, project_id: str, lifecycle_state: str = "ACTIVE") -> None:
        self.projects.append(Project(project_id=project_id, lifecycle_state=lifecycle_state))

    def add_bucket(self, name: str, project_id: str = "proj") -> None:
        self.bucket_projects[name] = project_id
        self.objects.setdefault(name, {})

    def put(self, bucket: str, name: str, data: bytes = b"data") -> None:
        self.objects.setdefault(bucket, {})[name] = data

    def _metadata(self, bucket: str, name: str) -> ObjectMetadata:
        self.generation += 1
        return ObjectMetadata(
            object_name=name,
            bucket_name=bucket,
            size=len(self.objects[bucket][name]),
            generation=self.generation,
            last_modified=datetime.now(UTC),
            content_type=self.content_types.get((bucket, name), "application/octet-stream"),
        )

    def _bucket(self, bucket: str) -> Dict[str, bytes]:
        if bucket in self.denied_buckets:
            raise PermissionDeniedException("denied", bucket=bucket)
        if bucket not in self.objects:
            raise BucketNotFoundException(bucket)
        return self.objects[bucket]

    # StorageService

    async def list_objects(self, bucket_name, prefix="", delimiter="", page_token=None):
        self.calls["list_objects"] += 1
        objects = self._bucket(bucket_name)
        entries = []
        seen_prefixes = set()
        for name in sorted(objects):
            if not name.startswith(prefix):
                continue
            rest = name[len(prefix):]
            if delimiter and delimiter in rest:
                common = prefix + rest[:rest.index(delimiter) + 1]
                if common not in seen_prefixes:
                    seen_prefixes.add(common)
                    entries.append(("prefix", common))
            else:
                entries.append(("object", name))
        start = int(page_token or 0)
        page = entries[start:start + self.page_size]
        next_token = str(start + self.page_size) if start + self.page_size < len(entries) else None
        return ListObjectsResult(
            objects=[self._metadata(bucket_name, name) for kind, name in page if kind == "object"],
            common_prefixes=[name for kind, name in page if kind == "prefix"],
            next_page_token=next_token,
        )

    async def get_object(self, bucket_name, object_name):
        self.calls["get_object"] += 1
        objects = self._bucket(bucket_name)
        if object_name not in objects:
            raise ObjectNotFoundException(bucket_name, object_name)
        return self._metadata(bucket_name, object_name)

    async def try_get_object(self, bucket_name, object_name):
        try:
            return await self.get_object(bucket_name, object_name)
        except ObjectNotFoundException:
            return None

    async def insert_object(self, bucket_name, object_name, data, content_type, predefined_acl=None):
        self.calls["insert_object"] += 1
        objects = self._bucket(bucket_name)
        if isinstance(data, (bytes, bytearray)):
            body = bytes(data)
        else:
            chunks = []
            async for chunk in data:
                chunks.append(chunk)
                if object_name in self.failing_uploads:
                    raise ServerException("upload rejected", 503)
            body = b"".join(chunks)
        if object_name in self.failing_uploads:
            raise ServerException("upload rejected", 503)
        objects[object_name] = body
        self.content_types[(bucket_name, object_name)] = content_type
        return self._metadata(bucket_name, object_name)

    async def copy_object(self, source_bucket, source_object, destination_bucket, destination_object,
                          source_generation=None, destination_acl=None):
        self.calls["copy_object"] += 1
        source = self._bucket(source_bucket)
        if source_object not in source:
            raise ObjectNotFoundException(source_bucket, source_object)
        self._bucket(destination_bucket)[destination_object] = source[source_object]
        return self._metadata(destination_bucket, destination_object)

    async def delete_object(self, bucket_name, object_name):
        self.calls["delete_object"] += 1
        objects = self._bucket(bucket_name)
        if object_name in self.failing_deletes:
            raise ServerException("delete failed", 500)
        if object_name not in objects:
            raise ObjectNotFoundException(bucket_name, object_name)
        del objects[object_name]

    async def download_object(self, metadata):
        data = self._bucket(metadata.bucket_name)[metadata.object_name]
        for start in range(0, len(data), 4):
            yield data[start:start + 4]

    async def list_buckets(self, project_id, page_token=None):
        self.calls["list_buckets"] += 1
        if project_id in self.denied_projects:
            raise PermissionDeniedException(f"no access to {project_id}")
        names = sorted(b for b, p in self.bucket_projects.items() if p == project_id)
        start = int(page_token or 0)
        page = names[start:start + self.page_size]
        next_token = str(start + self.page_size) if start + self.page_size < len(names) else None
        return ListBucketsResult(
            buckets=[Bucket(name=name) for name in page],
            next_page_token=next_token,
        )

    async def get_bucket(self, bucket_name):
        self.calls["get_bucket"] += 1
        if bucket_name not in self.bucket_projects:
            raise BucketNotFoundException(bucket_name)
        return Bucket(name=bucket_name)

    async def try_get_bucket(self, bucket_name):
        try:
            return await self.get_bucket(bucket_name)
        except BucketNotFoundException:
            return None

    async def insert_bucket(self, project_id, bucket_name, location=None, storage_class=None,
                            predefined_acl=None, predefined_default_object_acl=None):
        self.calls["insert_bucket"] += 1
        if bucket_name in self.bucket_projects:
            raise ConflictException("exists", bucket=bucket_name)
        self.add_bucket(bucket_name, project_id)
        return Bucket(name=bucket_name, location=location, storage_class=storage_class)

    async def delete_bucket(self, bucket_name):
        self.calls["delete_bucket"] += 1
        if bucket_name not in self.bucket_projects:
            raise BucketNotFoundException(bucket_name)
        if self.conflicts_on_bucket_delete:
            self.conflicts_on_bucket_delete -= 1
            raise ConflictException("not empty", bucket=bucket_name)
        if self.objects.get(bucket_name):
            raise ConflictException("not empty", bucket=bucket_name)
        del self.bucket_projects[bucket_name]
        del self.objects[bucket_name]

    async def list_projects(self, page_token=None):
        self.calls["list_projects"] += 1
        start = int(page_token or 0)
        page = self.projects[start:start + self.page_size]
        next_token = str(start + self.page_size) if start + self.page_size < len(self.projects) else None
        return ListProjectsResult(projects=page, next_page_token=next_token)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service():
    svc = FakeStorageService()
    svc.add_project("proj")
    svc.add_bucket("b")
    svc.put("b", "x.txt", b"hello")
    svc.put("b", "dir/y.txt", b"world")
    return svc
