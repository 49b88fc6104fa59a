"""Asynchronous client for the hosted video API.

Wraps the asset, task, playback, stream and transcode endpoints the testers
drive. Idempotent calls (reads, deletes) retry on connection errors, timeouts,
429 and 5xx responses with a short fixed backoff; mutating calls fail on the first
error so a retried request can never create a duplicate asset or stream.
"""

from __future__ import annotations

import asyncio
import base64
import math
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from streamtester import __version__
from streamtester.errors import TransientNetworkError

from .exceptions import (
    APIError,
    AuthenticationError,
    ConnectError,
    ForbiddenError,
    NotFoundError,
    RateLimitError,
    ServerError,
    TimeoutException,
    ValidationError,
)
from .types import Asset, Ingest, PlaybackInfo, Stream, StreamSession, Task, UploadRequest

logger = structlog.get_logger()

# Backoff between attempts of an idempotent call
DEFAULT_RETRY_DELAYS = [0.5, 1.0, 2.0]
# Upper bound on a server-requested Retry-After wait
MAX_RETRY_AFTER = 10.0
DEFAULT_TIMEOUT = 8.0
UPLOAD_TIMEOUT = 300.0
UPLOAD_CHUNK_SIZE = 1024 * 1024
TUS_CHUNK_SIZE = 8 * 1024 * 1024
TUS_VERSION = "1.0.0"

USER_AGENT = f"stream-tester/{__version__}"


def parse_retry_after(value: str | None) -> int | None:
    """Seconds to wait from a Retry-After header (delay-seconds or HTTP-date)."""
    if not value:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0, math.ceil((when - datetime.now(UTC)).total_seconds()))


def _handle_error(response: httpx.Response) -> None:
    """Raise appropriate exception for error responses."""
    status = response.status_code

    try:
        body = response.json()
        errors = body.get("errors") if isinstance(body, dict) else None
        detail = "; ".join(str(e) for e in errors) if errors else response.text
    except Exception:
        detail = response.text

    if status == 401:
        raise AuthenticationError(str(detail))
    elif status == 403:
        raise ForbiddenError(str(detail))
    elif status == 404:
        raise NotFoundError(str(detail))
    elif status == 429:
        raise RateLimitError(
            str(detail),
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    elif status == 400 or status == 422:
        raise ValidationError(str(detail), status_code=status)
    elif status >= 500:
        raise ServerError(str(detail), status_code=status)
    else:
        raise APIError(str(detail), status_code=status)


def _base_url(server: str) -> str:
    if server.startswith(("http://", "https://")):
        return server.rstrip("/")
    return f"https://{server.rstrip('/')}"


def patch_url_host(target: str, src: str) -> str:
    """Point ``target`` at the host of ``src`` unless it already contains it.

    Used for resumable uploads so they land in the region under test. When
    the target host already contains the source host (a global API endpoint
    such as ``example.com`` with a tus endpoint on ``origin.example.com``)
    the target is returned unchanged.
    """
    try:
        target_url = urlparse(target)
        src_url = urlparse(_base_url(src))
    except ValueError:
        return target
    if not target_url.netloc or not src_url.netloc:
        return target
    if src_url.netloc in target_url.netloc:
        return target
    return target_url._replace(scheme=src_url.scheme, netloc=src_url.netloc).geturl()


async def _iter_file(
    path: Path, chunk_size: int = UPLOAD_CHUNK_SIZE
) -> AsyncIterator[bytes]:
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            yield chunk


class AsyncStudioClient:
    """Asynchronous client for the hosted video API.

    Example:
        ```python
        async with AsyncStudioClient("livepeer.studio", api_token="...") as api:
            asset, task = await api.upload_via_url(url, "my-asset")
            task = await wait_for_task(api, task.id, poll_interval=5, timeout=600)
        ```
    """

    def __init__(
        self,
        server: str,
        api_token: str,
        timeout: float = DEFAULT_TIMEOUT,
        retry_delays: list[float] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            server: API host name (``livepeer.studio``) or full base URL.
            api_token: Bearer token for authentication.
            timeout: Per-request timeout in seconds.
            retry_delays: Sleep before each retry of an idempotent call.
        """
        self.server = server
        self.base_url = _base_url(server)
        self.api_token = api_token
        self._retry_delays = (
            DEFAULT_RETRY_DELAYS if retry_delays is None else list(retry_delays)
        )
        self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        """Build request headers."""
        headers = {"User-Agent": USER_AGENT}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> AsyncStudioClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        idempotent: bool,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying idempotent calls on transient failures."""
        url = path if path.startswith(("http://", "https://")) else self.base_url + path
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        attempts = len(self._retry_delays) + 1 if idempotent else 1
        log = logger.bind(method=method, url=url)

        for attempt in range(attempts):
            try:
                response = await self._client.request(
                    method, url, headers=headers, **kwargs
                )
            except httpx.ConnectError as e:
                error: Exception = ConnectError(f"Failed to connect: {e}")
                cause: Exception | None = e
            except httpx.TimeoutException as e:
                error = TimeoutException(f"Request timed out: {e}")
                cause = e
            else:
                if response.status_code < 400:
                    return response
                status = response.status_code
                retryable = status == 429 or status >= 500
                if not retryable or attempt == attempts - 1:
                    _handle_error(response)
                if status == 429:
                    header = response.headers.get("Retry-After")
                    error = RateLimitError(retry_after=parse_retry_after(header))
                else:
                    error = ServerError(f"HTTP {status}", status_code=status)
                cause = None

            if attempt == attempts - 1:
                raise error from cause

            delay = self._retry_delays[attempt]
            if isinstance(error, RateLimitError) and error.retry_after:
                delay = max(delay, min(error.retry_after, MAX_RETRY_AFTER))
            log.warning(
                "api_request_retry",
                attempt=attempt + 1,
                max_attempts=attempts,
                delay_seconds=delay,
                error=str(error),
            )
            await asyncio.sleep(delay)

        raise AssertionError("unreachable")

    async def geolocate(self) -> str:
        """Ask the API for the closest regional server and switch to it.

        Returns:
            The chosen server host name.
        """
        response = await self._request("GET", "/api/geolocate", idempotent=True)
        chosen = response.json().get("chosenServer")
        if chosen:
            logger.info("api_server_geolocated", server=chosen)
            self.server = chosen
            self.base_url = _base_url(chosen)
        return self.server

    # -------------------------------------------------------------------------
    # Assets and tasks
    # -------------------------------------------------------------------------

    async def get_asset(self, asset_id: str) -> Asset:
        response = await self._request(
            "GET", f"/api/asset/{asset_id}", idempotent=True
        )
        return Asset.from_dict(response.json())

    async def upload_via_url(
        self, url: str, name: str, pipeline_strategy: str | None = None
    ) -> tuple[Asset, Task]:
        """Import an asset from a public URL.

        Returns:
            The created asset and the import task to poll.
        """
        payload: dict[str, Any] = {"url": url, "name": name}
        if pipeline_strategy:
            payload["c2paEnable"] = False
            payload["pipelineStrategy"] = pipeline_strategy
        response = await self._request(
            "POST", "/api/asset/upload/url", idempotent=False, json=payload
        )
        data = response.json()
        return Asset.from_dict(data["asset"]), Task(id=data["task"]["id"])

    async def request_upload(
        self, name: str, pipeline_strategy: str | None = None
    ) -> UploadRequest:
        """Request a direct/resumable upload slot for a new asset."""
        payload: dict[str, Any] = {"name": name}
        if pipeline_strategy:
            payload["pipelineStrategy"] = pipeline_strategy
        response = await self._request(
            "POST", "/api/asset/request-upload", idempotent=False, json=payload
        )
        return UploadRequest.from_dict(response.json())

    async def upload_asset(self, upload_url: str, path: Path) -> None:
        """PUT the file contents to a direct upload URL."""
        await self._request(
            "PUT",
            upload_url,
            idempotent=False,
            content=_iter_file(path),
            headers={"Content-Type": "application/octet-stream"},
            timeout=UPLOAD_TIMEOUT,
        )

    async def resumable_upload(
        self, tus_endpoint: str, path: Path, chunk_size: int = TUS_CHUNK_SIZE
    ) -> str:
        """Upload a file with the tus resumable protocol.

        A chunk that fails with a transient network error is resumed from the
        offset the server acknowledges, so the upload survives flaky links
        without re-sending committed bytes.

        Returns:
            The upload URL assigned by the tus server.
        """
        size = path.stat().st_size
        filename = base64.b64encode(path.name.encode()).decode()
        response = await self._request(
            "POST",
            tus_endpoint,
            idempotent=False,
            headers={
                "Tus-Resumable": TUS_VERSION,
                "Upload-Length": str(size),
                "Upload-Metadata": f"filename {filename}",
            },
        )
        location = response.headers.get("Location")
        if not location:
            raise APIError("tus server did not return an upload location")
        upload_url = str(httpx.URL(tus_endpoint).join(location))
        log = logger.bind(upload_url=upload_url, size=size)

        offset = 0
        retries = 0
        with open(path, "rb") as f:
            while offset < size:
                f.seek(offset)
                chunk = f.read(chunk_size)
                try:
                    response = await self._request(
                        "PATCH",
                        upload_url,
                        idempotent=False,
                        content=chunk,
                        timeout=UPLOAD_TIMEOUT,
                        headers={
                            "Tus-Resumable": TUS_VERSION,
                            "Upload-Offset": str(offset),
                            "Content-Type": "application/offset+octet-stream",
                        },
                    )
                except TransientNetworkError as e:
                    if retries >= len(self._retry_delays):
                        raise
                    delay = self._retry_delays[retries]
                    retries += 1
                    log.warning(
                        "tus_chunk_retry", offset=offset, delay_seconds=delay, error=str(e)
                    )
                    await asyncio.sleep(delay)
                    offset = await self._tus_offset(upload_url)
                    continue
                offset = int(response.headers.get("Upload-Offset", offset + len(chunk)))
                log.debug("tus_chunk_uploaded", offset=offset)

        log.info("tus_upload_complete")
        return upload_url

    async def _tus_offset(self, upload_url: str) -> int:
        response = await self._request(
            "HEAD",
            upload_url,
            idempotent=True,
            headers={"Tus-Resumable": TUS_VERSION},
        )
        return int(response.headers.get("Upload-Offset", 0))

    async def export_asset(self, asset_id: str) -> Task:
        """Export an asset to IPFS."""
        response = await self._request(
            "POST",
            f"/api/asset/{asset_id}/export",
            idempotent=False,
            json={"ipfs": {}},
        )
        return Task(id=response.json()["task"]["id"])

    async def get_task(self, task_id: str) -> Task:
        response = await self._request("GET", f"/api/task/{task_id}", idempotent=True)
        return Task.from_dict(response.json())

    async def get_playback_info(self, playback_id: str) -> PlaybackInfo:
        response = await self._request(
            "GET", f"/api/playback/{playback_id}", idempotent=True
        )
        return PlaybackInfo.from_dict(response.json())

    # -------------------------------------------------------------------------
    # Streams
    # -------------------------------------------------------------------------

    async def create_stream(
        self,
        name: str,
        record: bool = True,
        profiles: list[dict[str, Any]] | None = None,
        record_object_store_id: str | None = None,
    ) -> Stream:
        payload: dict[str, Any] = {"name": name, "record": record}
        if profiles is not None:
            payload["profiles"] = profiles
        if record_object_store_id:
            payload["recordObjectStoreId"] = record_object_store_id
        response = await self._request(
            "POST", "/api/stream", idempotent=False, json=payload
        )
        return Stream.from_dict(response.json())

    async def get_stream(self, stream_id: str) -> Stream:
        response = await self._request(
            "GET", f"/api/stream/{stream_id}", idempotent=True
        )
        return Stream.from_dict(response.json())

    async def delete_stream(self, stream_id: str) -> None:
        await self._request("DELETE", f"/api/stream/{stream_id}", idempotent=True)

    async def list_stream_sessions(self, stream_id: str) -> list[StreamSession]:
        response = await self._request(
            "GET",
            f"/api/stream/{stream_id}/sessions",
            idempotent=True,
            params={"forceUrl": 1},
        )
        return [StreamSession.from_dict(s) for s in response.json()]

    async def list_ingests(self) -> list[Ingest]:
        response = await self._request("GET", "/api/ingest", idempotent=True)
        return [
            Ingest(
                base=i.get("base", ""),
                ingest=i.get("ingest", ""),
                playback=i.get("playback", ""),
            )
            for i in response.json()
        ]

    # -------------------------------------------------------------------------
    # Transcode
    # -------------------------------------------------------------------------

    async def transcode(
        self,
        input_url: str,
        storage: dict[str, Any],
        output_path: str,
        pipeline_strategy: str | None = None,
    ) -> Task:
        """Submit a transcode job writing HLS output to an object store."""
        payload: dict[str, Any] = {
            "input": {"url": input_url},
            "storage": storage,
            "outputs": {"hls": {"path": output_path}},
        }
        if pipeline_strategy:
            payload["pipelineStrategy"] = pipeline_strategy
        response = await self._request(
            "POST", "/api/transcode", idempotent=False, json=payload
        )
        return Task.from_dict(response.json())
