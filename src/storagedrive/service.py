"""
The object-store operations the navigator relies on.

``StorageClient`` implements this over HTTP; tests supply an in-memory fake.
Absence is reported with ``NotFoundException`` except by ``try_get_*``, which
return ``None`` instead.
"""

from typing import AsyncIterable, AsyncIterator, Optional, Protocol, Union

from .models import (
    Bucket,
    ListBucketsResult,
    ListObjectsResult,
    ListProjectsResult,
    ObjectMetadata,
)


UploadBody = Union[bytes, AsyncIterable[bytes]]


class StorageService(Protocol):

    async def list_objects(
        self,
        bucket_name: str,
        prefix: str = "",
        delimiter: str = "",
        page_token: Optional[str] = None,
    ) -> ListObjectsResult: ...

    async def get_object(self, bucket_name: str, object_name: str) -> ObjectMetadata: ...

    async def try_get_object(self, bucket_name: str, object_name: str) -> Optional[ObjectMetadata]: ...

    async def insert_object(
        self,
        bucket_name: str,
        object_name: str,
        data: UploadBody,
        content_type: str,
        predefined_acl: Optional[str] = None,
    ) -> ObjectMetadata: ...

    async def copy_object(
        self,
        source_bucket: str,
        source_object: str,
        destination_bucket: str,
        destination_object: str,
        source_generation: Optional[int] = None,
        destination_acl: Optional[str] = None,
    ) -> ObjectMetadata: ...

    async def delete_object(self, bucket_name: str, object_name: str) -> None: ...

    def download_object(self, metadata: ObjectMetadata) -> AsyncIterator[bytes]:
        """Stream the object's bytes; the iterator must be closed (``aclose``) if abandoned."""
        ...

    async def list_buckets(self, project_id: str, page_token: Optional[str] = None) -> ListBucketsResult: ...

    async def get_bucket(self, bucket_name: str) -> Bucket: ...

    async def try_get_bucket(self, bucket_name: str) -> Optional[Bucket]: ...

    async def insert_bucket(
        self,
        project_id: str,
        bucket_name: str,
        location: Optional[str] = None,
        storage_class: Optional[str] = None,
        predefined_acl: Optional[str] = None,
        predefined_default_object_acl: Optional[str] = None,
    ) -> Bucket: ...

    async def delete_bucket(self, bucket_name: str) -> None: ...

    async def list_projects(self, page_token: Optional[str] = None) -> ListProjectsResult: ...
