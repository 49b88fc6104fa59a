"""Unit tests for HLS playlist statistics."""

import httpx
import pytest

from streamtester.errors import VerificationError
from streamtester.manifest import (
    ManifestNotReadyError,
    fetch_manifest_stats,
    is_master_playlist,
    parse_master_playlist,
    parse_media_playlist,
)

MASTER_URL = "https://cdn.example.com/hls/abc/index.m3u8"

MASTER = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-STREAM-INF:BANDWIDTH=2000000,RESOLUTION=1280x720,CODECS="avc1.4d401f,mp4a.40.2"
720p/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=640x360,CODECS="avc1.4d401e,mp4a.40.2"
360p/index.m3u8
"""


def media_playlist(segments: int, duration: float = 4.0) -> str:
    lines = ["#EXTM3U", "#EXT-X-TARGETDURATION:4", "#EXT-X-MEDIA-SEQUENCE:0"]
    for i in range(segments):
        lines.append(f"#EXTINF:{duration},")
        lines.append(f"seg{i}.ts")
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


class TestParsing:
    """Tests for the playlist parsers."""

    def test_master_detection(self):
        """Master playlists are recognized by their variant tags."""
        assert is_master_playlist(MASTER)
        assert not is_master_playlist(media_playlist(3))

    def test_parse_master(self):
        """Variant attributes are parsed, including quoted lists."""
        renditions = parse_master_playlist(MASTER)

        assert [r.uri for r in renditions] == ["720p/index.m3u8", "360p/index.m3u8"]
        assert renditions[0].bandwidth == 2000000
        assert renditions[0].resolution == "1280x720"
        assert renditions[0].codecs == "avc1.4d401f,mp4a.40.2"

    def test_parse_master_without_codecs(self):
        """A variant without CODECS has none."""
        text = "#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=100\nlow.m3u8\n"

        (rendition,) = parse_master_playlist(text)

        assert rendition.codecs is None
        assert rendition.bandwidth == 100

    def test_parse_media(self):
        """Segments are counted and their durations summed."""
        segments, duration = parse_media_playlist(media_playlist(5, 2.5))

        assert segments == 5
        assert duration == pytest.approx(12.5)

    def test_parse_media_skips_bad_durations(self):
        """Unparseable EXTINF values are ignored."""
        text = "#EXTM3U\n#EXTINF:abc,\nseg0.ts\n#EXTINF:2.0,title\nseg1.ts\n"

        assert parse_media_playlist(text) == (1, 2.0)


@pytest.mark.asyncio
class TestFetchManifestStats:
    """Tests for fetch_manifest_stats()."""

    async def test_master_with_renditions(self, httpx_mock):
        """Each media playlist is fetched relative to the master URL."""
        httpx_mock.add_response(url=MASTER_URL, text=MASTER)
        httpx_mock.add_response(
            url="https://cdn.example.com/hls/abc/720p/index.m3u8",
            text=media_playlist(10),
        )
        httpx_mock.add_response(
            url="https://cdn.example.com/hls/abc/360p/index.m3u8",
            text=media_playlist(9),
        )

        async with httpx.AsyncClient() as client:
            stats = await fetch_manifest_stats(client, MASTER_URL)

        assert stats.rendition_count == 2
        assert stats.duration == pytest.approx(40.0)
        assert stats.segments_per_rendition == {
            "720p/index.m3u8": 10,
            "360p/index.m3u8": 9,
        }

    async def test_media_playlist_is_one_rendition(self, httpx_mock):
        """A media playlist URL is reported as a single rendition."""
        httpx_mock.add_response(url=MASTER_URL, text=media_playlist(3))

        async with httpx.AsyncClient() as client:
            stats = await fetch_manifest_stats(client, MASTER_URL)

        assert stats.rendition_count == 1
        assert stats.renditions[0].uri == MASTER_URL

    async def test_not_found_is_not_ready(self, httpx_mock):
        """HTTP errors mean the playlist is not available yet."""
        httpx_mock.add_response(url=MASTER_URL, status_code=404)

        async with httpx.AsyncClient() as client:
            with pytest.raises(ManifestNotReadyError):
                await fetch_manifest_stats(client, MASTER_URL)

    async def test_connection_error_is_not_ready(self, httpx_mock):
        """Transport errors mean the playlist is not available yet."""
        httpx_mock.add_exception(httpx.ConnectError("refused"))

        async with httpx.AsyncClient() as client:
            with pytest.raises(ManifestNotReadyError):
                await fetch_manifest_stats(client, MASTER_URL)

    async def test_not_a_playlist(self, httpx_mock):
        """A body without the #EXTM3U header fails verification."""
        httpx_mock.add_response(url=MASTER_URL, text="<html>oops</html>")

        async with httpx.AsyncClient() as client:
            with pytest.raises(VerificationError, match="EXTM3U"):
                await fetch_manifest_stats(client, MASTER_URL)
