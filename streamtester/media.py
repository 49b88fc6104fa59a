"""Resolution of the media file used for uploads and RTMP pushes.

The file argument may be:
- A path to an existing local file, used as is
- An http(s) URL, downloaded into a temporary file
- A bare file name, downloaded from the test-asset bucket
"""

from __future__ import annotations

import os
import socket
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urljoin, urlparse

import httpx
import structlog

from streamtester.config import DEFAULT_MEDIA_BASE_URL
from streamtester.errors import ConfigurationError

logger = structlog.get_logger()

DOWNLOAD_TIMEOUT_SECONDS = 300
CHUNK_SIZE = 1024 * 1024


@dataclass
class MediaFile:
    """A local media file, possibly downloaded for this run."""

    path: Path
    source: str
    downloaded: bool = False

    def cleanup(self) -> None:
        """Delete the file if it was downloaded for this run."""
        if not self.downloaded:
            return
        try:
            self.path.unlink()
            logger.info("media_file_removed", path=str(self.path))
        except FileNotFoundError:
            pass


def _is_url(value: str) -> bool:
    return urlparse(value).scheme in ("http", "https")


async def resolve_media_file(
    file_arg: str,
    base_url: str = DEFAULT_MEDIA_BASE_URL,
    timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
) -> MediaFile:
    """Return a local copy of the media file named by ``file_arg``.

    Raises:
        ConfigurationError: The file does not exist locally and could not be
            downloaded.
    """
    local = Path(file_arg).expanduser()
    if not _is_url(file_arg) and local.is_file():
        return MediaFile(path=local, source=file_arg)

    url = file_arg if _is_url(file_arg) else urljoin(base_url, file_arg)
    name = Path(urlparse(url).path).name or "media"
    # Host name in the file name keeps concurrent testers on one box apart
    host = socket.gethostname().replace(".", "_")
    fd, tmp_name = tempfile.mkstemp(prefix=f"{host}_", suffix=f"_{name}")
    path = Path(tmp_name)
    log = logger.bind(url=url, path=tmp_name)
    log.info("media_download_started")

    total = 0
    try:
        with os.fdopen(fd, "wb") as f:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(timeout), follow_redirects=True
            ) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code == 404:
                        raise ConfigurationError(f"media file {file_arg} not found")
                    if response.status_code >= 400:
                        raise ConfigurationError(
                            f"failed to download media file {url}: HTTP {response.status_code}"
                        )
                    async for chunk in response.aiter_bytes(chunk_size=CHUNK_SIZE):
                        f.write(chunk)
                        total += len(chunk)
    except httpx.HTTPError as e:
        path.unlink(missing_ok=True)
        raise ConfigurationError(f"failed to download media file {url}: {e}") from e
    except BaseException:
        path.unlink(missing_ok=True)
        raise

    log.info("media_download_completed", size_bytes=total)
    return MediaFile(path=path, source=file_arg, downloaded=True)
