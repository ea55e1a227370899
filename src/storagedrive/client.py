"""
StorageClient - JSON API client for the object store and project listing
"""

import logging
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from ._http import HttpClient
from .models import (
    Bucket,
    ListBucketsResult,
    ListObjectsResult,
    ListProjectsResult,
    ObjectMetadata,
    Project,
)
from .error import (
    AuthenticationException,
    BucketNotFoundException,
    ConflictException,
    NotFoundException,
    ObjectNotFoundException,
    PermissionDeniedException,
    ServerException,
)
from .service import UploadBody


DEFAULT_STORAGE_URL = "https://storage.googleapis.com"
DEFAULT_RESOURCE_MANAGER_URL = "https://cloudresourcemanager.googleapis.com"
# Non-final resumable upload chunks must be a multiple of 256 KiB.
UPLOAD_CHUNK_QUANTUM = 256 * 1024


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _object_from_json(data: Dict) -> ObjectMetadata:
    generation = data.get("generation")
    return ObjectMetadata(
        object_name=data["name"],
        bucket_name=data["bucket"],
        size=int(data.get("size", 0)),
        etag=data.get("etag"),
        generation=int(generation) if generation is not None else None,
        last_modified=_parse_time(data.get("updated")),
        content_type=data.get("contentType"),
        media_link=data.get("mediaLink"),
        metadata=dict(data.get("metadata") or {}),
    )


def _bucket_from_json(data: Dict) -> Bucket:
    return Bucket(
        name=data["name"],
        project_number=data.get("projectNumber"),
        creation_date=_parse_time(data.get("timeCreated")),
        location=data.get("location"),
        storage_class=data.get("storageClass"),
    )


async def _iter_body(data: UploadBody) -> AsyncIterator[bytes]:
    if isinstance(data, (bytes, bytearray)):
        if data:
            yield bytes(data)
        return
    async for chunk in data:
        if chunk:
            yield chunk


class StorageClient:
    """
    Object-store client speaking the storage JSON API.

    Credentials are supplied ready-made: either a fixed ``access_token`` or a
    ``token_provider`` coroutine that returns a current token.

    Example:
        async with StorageClient(access_token=token) as client:
            page = await client.list_objects("my-bucket", prefix="logs/", delimiter="/")
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        token_provider: Optional[Callable[[], Awaitable[str]]] = None,
        storage_url: str = DEFAULT_STORAGE_URL,
        resource_manager_url: str = DEFAULT_RESOURCE_MANAGER_URL,
        request_timeout: int = 30,
        max_retries: int = 3,
        upload_chunk_size: int = UPLOAD_CHUNK_QUANTUM,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize StorageClient.

        Args:
            access_token: Bearer token sent with every request
            token_provider: Coroutine function returning a bearer token; used when access_token is unset
            storage_url: Base URL of the storage JSON API
            resource_manager_url: Base URL of the project listing API
            request_timeout: Request timeout in seconds
            max_retries: Maximum number of attempts for requests that fail to connect
            upload_chunk_size: Bytes per resumable upload request, rounded up to a multiple of 256 KiB
            transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in tests
        """
        if upload_chunk_size <= 0:
            raise ValueError("upload_chunk_size must be positive.")
        self.access_token = access_token
        self.token_provider = token_provider
        self.storage_url = storage_url.rstrip("/")
        self.resource_manager_url = resource_manager_url.rstrip("/")
        quanta = -(-upload_chunk_size // UPLOAD_CHUNK_QUANTUM)
        self.upload_chunk_size = quanta * UPLOAD_CHUNK_QUANTUM

        self._http = HttpClient(timeout=request_timeout, max_retries=max_retries, transport=transport)
        self._logger = logging.getLogger(__name__)

    async def _auth_headers(self, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = dict(headers or {})
        token = self.access_token
        if token is None and self.token_provider is not None:
            token = await self.token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _raise_for_status(
        self,
        response: httpx.Response,
        bucket_name: Optional[str] = None,
        object_name: Optional[str] = None,
    ) -> None:
        status = response.status_code
        if status < 400:
            return

        message = f"Request failed with status {status}"
        try:
            error = response.json().get("error") or {}
            if isinstance(error, dict) and error.get("message"):
                message = error["message"]
        except ValueError:
            pass

        if status == 401:
            raise AuthenticationException(message)
        if status == 403:
            raise PermissionDeniedException(message, bucket=bucket_name, path=object_name)
        if status == 404:
            if object_name is not None:
                raise ObjectNotFoundException(bucket_name, object_name)
            if bucket_name is not None:
                raise BucketNotFoundException(bucket_name)
            raise NotFoundException("Resource not found")
        if status == 409:
            raise ConflictException(message, bucket=bucket_name, path=object_name)
        raise ServerException(message, status)

    async def _make_request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        json_data: Optional[Dict] = None,
        bucket_name: Optional[str] = None,
        object_name: Optional[str] = None,
    ) -> httpx.Response:
        """Make authenticated HTTP request."""
        headers = await self._auth_headers()
        params = {k: v for k, v in (params or {}).items() if v is not None}
        response = await self._http.request(method, url, headers=headers, params=params, json=json_data)
        self._raise_for_status(response, bucket_name, object_name)
        return response

    def _bucket_url(self, bucket_name: str) -> str:
        return f"{self.storage_url}/storage/v1/b/{quote(bucket_name, safe='')}"

    def _object_url(self, bucket_name: str, object_name: str) -> str:
        return f"{self._bucket_url(bucket_name)}/o/{quote(object_name, safe='')}"

    # Object operations

    async def list_objects(
        self,
        bucket_name: str,
        prefix: str = "",
        delimiter: str = "",
        page_token: Optional[str] = None,
    ) -> ListObjectsResult:
        """List one page of objects in a bucket."""
        params = {
            "projection": "full",
            "prefix": prefix or None,
            "delimiter": delimiter or None,
            "pageToken": page_token,
        }
        response = await self._make_request(
            "GET", f"{self._bucket_url(bucket_name)}/o", params=params, bucket_name=bucket_name
        )
        data = response.json()
        return ListObjectsResult(
            objects=[_object_from_json(item) for item in data.get("items", [])],
            common_prefixes=list(data.get("prefixes", [])),
            next_page_token=data.get("nextPageToken"),
        )

    async def get_object(self, bucket_name: str, object_name: str) -> ObjectMetadata:
        """Get object metadata without downloading."""
        response = await self._make_request(
            "GET",
            self._object_url(bucket_name, object_name),
            params={"projection": "full"},
            bucket_name=bucket_name,
            object_name=object_name,
        )
        return _object_from_json(response.json())

    async def try_get_object(self, bucket_name: str, object_name: str) -> Optional[ObjectMetadata]:
        """Get object metadata, or None if the object does not exist."""
        try:
            return await self.get_object(bucket_name, object_name)
        except NotFoundException:
            return None

    async def insert_object(
        self,
        bucket_name: str,
        object_name: str,
        data: UploadBody,
        content_type: str,
        predefined_acl: Optional[str] = None,
    ) -> ObjectMetadata:
        """
        Upload an object with a resumable upload session.

        ``data`` is either bytes or an async iterable of byte chunks; it is pulled
        until exhausted and sent in ``upload_chunk_size`` pieces.
        """
        session_url = await self._start_resumable_upload(bucket_name, object_name, content_type, predefined_acl)

        offset = 0
        buffer = bytearray()
        async for chunk in _iter_body(data):
            buffer.extend(chunk)
            # Keep at least one byte back so the final request carries the total size.
            while len(buffer) > self.upload_chunk_size:
                offset = await self._upload_chunk(session_url, buffer, offset, bucket_name, object_name)

        while True:
            total = offset + len(buffer)
            if buffer:
                content_range = f"bytes {offset}-{total - 1}/{total}"
            else:
                content_range = f"bytes */{total}"
            headers = await self._auth_headers({"Content-Range": content_range})
            response = await self._http.put(session_url, content=bytes(buffer), headers=headers)
            if response.status_code != 308:
                break
            previous = offset
            offset = self._committed_offset(response, offset, buffer)
            if offset == previous:
                raise ServerException("Upload session stopped accepting data.", response.status_code)

        self._raise_for_status(response, bucket_name, object_name)
        self._logger.debug(
            "[StorageDrive][Upload] bucket=%s object=%s bytes=%s",
            bucket_name,
            object_name,
            total,
        )
        return _object_from_json(response.json())

    async def _start_resumable_upload(
        self,
        bucket_name: str,
        object_name: str,
        content_type: str,
        predefined_acl: Optional[str],
    ) -> str:
        url = f"{self.storage_url}/upload/storage/v1/b/{quote(bucket_name, safe='')}/o"
        params = {
            "uploadType": "resumable",
            "projection": "full",
            "predefinedAcl": predefined_acl,
        }
        headers = await self._auth_headers({"X-Upload-Content-Type": content_type})
        response = await self._http.post(
            url,
            params={k: v for k, v in params.items() if v is not None},
            json={"name": object_name, "contentType": content_type},
            headers=headers,
        )
        self._raise_for_status(response, bucket_name, object_name)
        session_url = response.headers.get("Location")
        if not session_url:
            raise ServerException("Upload session was not created.", response.status_code)
        return session_url

    async def _upload_chunk(
        self,
        session_url: str,
        buffer: bytearray,
        offset: int,
        bucket_name: str,
        object_name: str,
    ) -> int:
        piece = bytes(buffer[:self.upload_chunk_size])
        headers = await self._auth_headers(
            {"Content-Range": f"bytes {offset}-{offset + len(piece) - 1}/*"}
        )
        response = await self._http.put(session_url, content=piece, headers=headers)
        if response.status_code != 308:
            self._raise_for_status(response, bucket_name, object_name)
            raise ServerException(
                f"Upload session ended early with status {response.status_code}", response.status_code
            )
        return self._committed_offset(response, offset, buffer)

    @staticmethod
    def _committed_offset(response: httpx.Response, offset: int, buffer: bytearray) -> int:
        """Drop the bytes the server has persisted from ``buffer`` and return the new offset."""
        committed = offset
        persisted = response.headers.get("Range")
        if persisted and "-" in persisted:
            committed = int(persisted.rsplit("-", 1)[1]) + 1
        del buffer[:committed - offset]
        return committed

    async def copy_object(
        self,
        source_bucket: str,
        source_object: str,
        destination_bucket: str,
        destination_object: str,
        source_generation: Optional[int] = None,
        destination_acl: Optional[str] = None,
    ) -> ObjectMetadata:
        """Copy an object to another location, keeping the source metadata."""
        url = (
            f"{self._object_url(source_bucket, source_object)}/copyTo"
            f"/b/{quote(destination_bucket, safe='')}/o/{quote(destination_object, safe='')}"
        )
        params = {
            "projection": "full",
            "sourceGeneration": str(source_generation) if source_generation is not None else None,
            "destinationPredefinedAcl": destination_acl,
        }
        response = await self._make_request(
            "POST", url, params=params, json_data={}, bucket_name=source_bucket, object_name=source_object
        )
        return _object_from_json(response.json())

    async def delete_object(self, bucket_name: str, object_name: str) -> None:
        """Remove an object from the bucket."""
        await self._make_request(
            "DELETE",
            self._object_url(bucket_name, object_name),
            bucket_name=bucket_name,
            object_name=object_name,
        )

    async def download_object(self, metadata: ObjectMetadata) -> AsyncIterator[bytes]:
        """Stream an object's content from its media link."""
        if metadata.media_link:
            url, params = metadata.media_link, None
        else:
            url = self._object_url(metadata.bucket_name, metadata.object_name)
            params = {"alt": "media"}
            if metadata.generation is not None:
                params["generation"] = str(metadata.generation)
        headers = await self._auth_headers()
        async with self._http.stream("GET", url, headers=headers, params=params) as response:
            if response.status_code >= 400:
                await response.aread()
                self._raise_for_status(response, metadata.bucket_name, metadata.object_name)
            async for chunk in response.aiter_bytes():
                yield chunk

    # Bucket operations

    async def list_buckets(self, project_id: str, page_token: Optional[str] = None) -> ListBucketsResult:
        """List one page of the buckets of a project."""
        params = {"project": project_id, "projection": "full", "pageToken": page_token}
        response = await self._make_request("GET", f"{self.storage_url}/storage/v1/b", params=params)
        data = response.json()
        return ListBucketsResult(
            buckets=[_bucket_from_json(item) for item in data.get("items", [])],
            next_page_token=data.get("nextPageToken"),
        )

    async def get_bucket(self, bucket_name: str) -> Bucket:
        response = await self._make_request("GET", self._bucket_url(bucket_name), bucket_name=bucket_name)
        return _bucket_from_json(response.json())

    async def try_get_bucket(self, bucket_name: str) -> Optional[Bucket]:
        """Get bucket metadata, or None if the bucket does not exist."""
        try:
            return await self.get_bucket(bucket_name)
        except NotFoundException:
            return None

    async def insert_bucket(
        self,
        project_id: str,
        bucket_name: str,
        location: Optional[str] = None,
        storage_class: Optional[str] = None,
        predefined_acl: Optional[str] = None,
        predefined_default_object_acl: Optional[str] = None,
    ) -> Bucket:
        """Create a new bucket in a project."""
        body = {"name": bucket_name}
        if location:
            body["location"] = location
        if storage_class:
            body["storageClass"] = storage_class
        params = {
            "project": project_id,
            "predefinedAcl": predefined_acl,
            "predefinedDefaultObjectAcl": predefined_default_object_acl,
        }
        response = await self._make_request(
            "POST", f"{self.storage_url}/storage/v1/b", params=params, json_data=body, bucket_name=bucket_name
        )
        self._logger.info("[StorageDrive][Bucket] created bucket=%s project=%s", bucket_name, project_id)
        return _bucket_from_json(response.json())

    async def delete_bucket(self, bucket_name: str) -> None:
        """Remove a bucket (must be empty)."""
        await self._make_request("DELETE", self._bucket_url(bucket_name), bucket_name=bucket_name)

    # Projects

    async def list_projects(self, page_token: Optional[str] = None) -> ListProjectsResult:
        """List one page of the projects visible to the caller."""
        response = await self._make_request(
            "GET", f"{self.resource_manager_url}/v1/projects", params={"pageToken": page_token}
        )
        data = response.json()
        return ListProjectsResult(
            projects=[
                Project(
                    project_id=item["projectId"],
                    name=item.get("name"),
                    lifecycle_state=item.get("lifecycleState", "ACTIVE"),
                )
                for item in data.get("projects", [])
            ],
            next_page_token=data.get("nextPageToken"),
        )

    async def close(self) -> None:
        """Close the client and cleanup resources."""
        await self._http.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
