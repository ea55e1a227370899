"""
HTTP client utilities for StorageDrive
"""

import httpx
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, AsyncIterator
import asyncio


class HttpClient:
    """
    HTTP client wrapper with connection pooling and retry logic.

    Only requests whose body can be replayed are retried; a streamed upload
    body is sent once.
    """

    def __init__(
        self,
        timeout: int = 30,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self._client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=100),
            transport=transport,
        )

    async def post(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict] = None,
        content: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs
    ) -> httpx.Response:
        """Make a POST request with retry logic."""
        return await self.request(
            "POST",
            url,
            params=params,
            json=json,
            content=content,
            headers=headers,
            **kwargs
        )

    async def put(
        self,
        url: str,
        content: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs
    ) -> httpx.Response:
        """Make a PUT request with retry logic."""
        return await self.request("PUT", url, content=content, headers=headers, **kwargs)

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs
    ) -> httpx.Response:
        """Make HTTP request with exponential backoff retry logic."""
        content = kwargs.get("content")
        replayable = content is None or isinstance(content, (bytes, str))
        attempts = self.max_retries if replayable else 1
        for attempt in range(attempts):
            try:
                response = await self._client.request(method, url, headers=headers, **kwargs)
                return response
            except httpx.RequestError:
                if attempt < attempts - 1:
                    wait_time = min(1000 * (2 ** attempt), 10000) / 1000
                    await asyncio.sleep(wait_time)
                else:
                    raise

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs
    ) -> AsyncIterator[httpx.Response]:
        """Open a response whose body is read lazily. Connecting is retried, reading is not."""
        for attempt in range(self.max_retries):
            request = self._client.build_request(method, url, headers=headers, **kwargs)
            try:
                response = await self._client.send(request, stream=True)
                break
            except httpx.RequestError:
                if attempt < self.max_retries - 1:
                    wait_time = min(1000 * (2 ** attempt), 10000) / 1000
                    await asyncio.sleep(wait_time)
                else:
                    raise
        try:
            yield response
        finally:
            await response.aclose()

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()
