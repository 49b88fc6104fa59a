"""HLS playlist statistics.

Downloads a master playlist and each of its media playlists and reports, per
rendition, how many segments it lists and how much media they cover. A URL
that points straight at a media playlist is reported as a single rendition.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import httpx
import structlog

from streamtester.errors import TransientNetworkError, VerificationError

logger = structlog.get_logger()

MANIFEST_TIMEOUT = 10.0


class ManifestNotReadyError(TransientNetworkError):
    """Playlist could not be fetched (yet)."""


@dataclass
class RenditionStats:
    """Segment statistics of one media playlist."""

    uri: str
    bandwidth: int | None = None
    resolution: str | None = None
    codecs: str | None = None
    segments: int = 0
    duration: float = 0.0


@dataclass
class ManifestStats:
    """Statistics of a master playlist and its renditions."""

    url: str
    renditions: list[RenditionStats] = field(default_factory=list)

    @property
    def rendition_count(self) -> int:
        return len(self.renditions)

    @property
    def duration(self) -> float:
        """Duration of the longest rendition in seconds."""
        return max((r.duration for r in self.renditions), default=0.0)

    @property
    def segments_per_rendition(self) -> dict[str, int]:
        return {r.uri: r.segments for r in self.renditions}


def _parse_attributes(line: str) -> dict[str, str]:
    """Parse an ``#EXT-X-...:KEY=VALUE,KEY="V,ALUE"`` attribute list."""
    _, _, attr_text = line.partition(":")
    attrs: dict[str, str] = {}
    key = ""
    value = ""
    in_key = True
    quoted = False
    for ch in attr_text:
        if in_key:
            if ch == "=":
                in_key = False
            else:
                key += ch
        elif ch == '"':
            quoted = not quoted
        elif ch == "," and not quoted:
            attrs[key.strip()] = value
            key, value, in_key = "", "", True
        else:
            value += ch
    if key.strip():
        attrs[key.strip()] = value
    return attrs


def is_master_playlist(text: str) -> bool:
    return "#EXT-X-STREAM-INF" in text


def parse_master_playlist(text: str) -> list[RenditionStats]:
    """List the variant streams of a master playlist (URIs unresolved)."""
    renditions: list[RenditionStats] = []
    pending: dict[str, str] | None = None
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#EXT-X-STREAM-INF"):
            pending = _parse_attributes(line)
        elif not line.startswith("#") and pending is not None:
            bandwidth = pending.get("BANDWIDTH")
            renditions.append(
                RenditionStats(
                    uri=line,
                    bandwidth=int(bandwidth) if bandwidth and bandwidth.isdigit() else None,
                    resolution=pending.get("RESOLUTION"),
                    codecs=pending.get("CODECS"),
                )
            )
            pending = None
    return renditions


def parse_media_playlist(text: str) -> tuple[int, float]:
    """Count segments and sum their durations.

    Returns:
        (segment count, total duration in seconds)
    """
    segments = 0
    duration = 0.0
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("#EXTINF:"):
            value = line[len("#EXTINF:") :].split(",", 1)[0]
            try:
                duration += float(value)
            except ValueError:
                continue
            segments += 1
    return segments, duration


async def _fetch_playlist(client: httpx.AsyncClient, url: str) -> str:
    try:
        response = await client.get(url)
    except httpx.TransportError as e:
        raise ManifestNotReadyError(f"failed to fetch playlist {url}: {e}") from e
    if response.status_code >= 400:
        raise ManifestNotReadyError(
            f"playlist {url} returned HTTP {response.status_code}"
        )
    text = response.text
    if not text.lstrip().startswith("#EXTM3U"):
        raise VerificationError(f"invalid playlist at {url}: missing #EXTM3U header")
    return text


async def fetch_manifest_stats(client: httpx.AsyncClient, url: str) -> ManifestStats:
    """Fetch a playlist and the media playlists it references.

    Raises:
        ManifestNotReadyError: A playlist could not be fetched.
        VerificationError: A playlist is not a valid HLS playlist.
    """
    text = await _fetch_playlist(client, url)

    if not is_master_playlist(text):
        segments, duration = parse_media_playlist(text)
        return ManifestStats(
            url=url,
            renditions=[RenditionStats(uri=url, segments=segments, duration=duration)],
        )

    renditions = parse_master_playlist(text)
    base = httpx.URL(url)
    for rendition in renditions:
        rendition_url = str(base.join(rendition.uri))
        media_text = await _fetch_playlist(client, rendition_url)
        rendition.segments, rendition.duration = parse_media_playlist(media_text)

    logger.debug(
        "manifest_stats",
        url=url,
        renditions=len(renditions),
        duration=max((r.duration for r in renditions), default=0.0),
    )
    return ManifestStats(url=url, renditions=renditions)
