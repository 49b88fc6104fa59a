"""Unit tests for the live stream and recording tester."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from streamtester.api.exceptions import APIError
from streamtester.api.types import (
    Ingest,
    PlaybackInfo,
    PlaybackSource,
    PlaybackSourceType,
    Stream,
    StreamSession,
)
from streamtester.errors import (
    ErrorKind,
    RemoteTaskFailedError,
    UnexpectedPhaseError,
    VerificationError,
)
from streamtester.geo import GeoNode
from streamtester.manifest import ManifestStats, RenditionStats
from streamtester.phases import PhaseContext
from streamtester.session import SessionConfig
from streamtester.testers import GeoOptions, RecordTester
from streamtester.testers.record import _CycleState

INGEST = Ingest(
    base="https://ingest.example.com",
    ingest="rtmp://ingest.example.com/live/",
    playback="https://playback.example.com/hls",
)

STATS = ManifestStats(
    url="https://playback.example.com/hls/pb-1/index.m3u8",
    renditions=[
        RenditionStats(uri="720p.m3u8", segments=5, duration=20),
        RenditionStats(uri="360p.m3u8", segments=5, duration=20),
    ],
)


@pytest.fixture
def config(tmp_path) -> SessionConfig:
    media = tmp_path / "clip.mp4"
    media.write_bytes(b"media")
    return SessionConfig(
        api_server="studio.example.com",
        file_path=media,
        test_duration=20,
        task_poll_interval=0.01,
        task_timeout=1,
        playback_max_wait=1,
    )


@pytest.fixture
def api() -> AsyncMock:
    api = AsyncMock()
    api.create_stream.return_value = Stream(
        id="stream-1", name="record_tester", stream_key="key-1", playback_id="pb-1"
    )
    api.list_stream_sessions.side_effect = [
        [StreamSession(id="sess-1", record_status="waiting")],
        [StreamSession(id="sess-1", record_status="ready", asset_id="asset-1")],
    ]
    return api


@pytest.fixture
def streamer() -> AsyncMock:
    return AsyncMock()


@pytest.mark.asyncio
class TestRecordTester:
    """Tests for a record cycle."""

    async def test_full_cycle(self, api, config, streamer):
        """Stream, recording and live playback all verify."""
        verify_manifest = AsyncMock(return_value=STATS)
        verify_playback = AsyncMock(return_value=STATS)
        tester = RecordTester(api, config, streamer=streamer, ingest=INGEST)

        with (
            patch("streamtester.testers.record.verify_manifest", verify_manifest),
            patch("streamtester.testers.base.verify_playback", verify_playback),
        ):
            result = await tester.build_session().run()

        assert result.ok
        streamer.push.assert_awaited_once_with(
            "rtmp://ingest.example.com/live/key-1", config.file_path, 20
        )
        assert verify_manifest.await_args.args[0] == (
            "https://playback.example.com/hls/pb-1/index.m3u8"
        )
        assert verify_playback.await_args.args[1] == "asset-1"
        assert verify_playback.await_args.kwargs["expected_min_duration"] == 20
        api.delete_stream.assert_awaited_once_with("stream-1")
        assert api.create_stream.await_args.kwargs["record"] is True

    async def test_pause_pushes_twice(self, api, config, streamer):
        """With a pause the stream is pushed twice."""
        config = SessionConfig(**{**config.__dict__, "pause_duration": 0.01})
        tester = RecordTester(api, config, streamer=streamer, ingest=INGEST)

        with (
            patch("streamtester.testers.record.verify_manifest", AsyncMock(return_value=STATS)),
            patch("streamtester.testers.base.verify_playback", AsyncMock(return_value=STATS)),
        ):
            result = await tester.build_session().run()

        assert result.ok
        assert streamer.push.await_count == 2

    async def test_uses_api_ingest(self, api, config, streamer):
        """Without an override the first API ingest is used."""
        api.list_ingests.return_value = [INGEST]
        api.get_playback_info.return_value = PlaybackInfo(
            type="live",
            sources=[
                PlaybackSource(
                    type=PlaybackSourceType.HLS.value,
                    url="https://cdn.example.com/hls/pb-1/index.m3u8",
                )
            ],
        )
        verify_manifest = AsyncMock(return_value=STATS)
        tester = RecordTester(api, config, streamer=streamer)

        with (
            patch("streamtester.testers.record.verify_manifest", verify_manifest),
            patch("streamtester.testers.base.verify_playback", AsyncMock(return_value=STATS)),
        ):
            result = await tester.build_session().run()

        assert result.ok
        assert verify_manifest.await_args.args[0] == (
            "https://cdn.example.com/hls/pb-1/index.m3u8"
        )

    async def test_no_ingest(self, api, config, streamer):
        """No ingest points fails the stream phase before creating a stream."""
        api.list_ingests.return_value = []
        tester = RecordTester(api, config, streamer=streamer)

        result = await tester.build_session().run()

        assert result.phase == "stream"
        assert result.error_kind is ErrorKind.REMOTE_FAILURE
        assert isinstance(result.error, APIError)
        assert not isinstance(result.error, RemoteTaskFailedError)
        api.create_stream.assert_not_awaited()
        api.delete_stream.assert_not_awaited()

    async def test_live_playback_without_stream(self, api, config, streamer):
        """Live playback refuses a ready signal that carries no stream."""
        state = _CycleState()
        state.stream_ready.set()
        tester = RecordTester(api, config, streamer=streamer, ingest=INGEST)

        with pytest.raises(UnexpectedPhaseError):
            await tester.live_playback(state, PhaseContext("live_playback"))

    async def test_live_failure_still_deletes_stream(self, api, config, streamer):
        """A live playback failure cancels the push but the stream is deleted."""

        async def long_push(*args):
            await asyncio.sleep(10)

        streamer.push.side_effect = long_push
        verify_manifest = AsyncMock(side_effect=VerificationError("1 rendition"))
        tester = RecordTester(api, config, streamer=streamer, ingest=INGEST)

        with patch("streamtester.testers.record.verify_manifest", verify_manifest):
            result = await tester.build_session().run()

        assert result.phase == "live_playback"
        assert result.error_kind is ErrorKind.VERIFICATION_FAILURE
        api.delete_stream.assert_awaited_once_with("stream-1")

    async def test_inconsistent_live_renditions(self, api, config, streamer):
        """Drift between live renditions fails when not ignored."""
        config = SessionConfig(**{**config.__dict__, "ignore_time_drift": False})
        drifting = ManifestStats(
            url="x",
            renditions=[
                RenditionStats(uri="a", segments=5, duration=20),
                RenditionStats(uri="b", segments=4, duration=20),
            ],
        )
        tester = RecordTester(api, config, streamer=streamer, ingest=INGEST)

        with (
            patch("streamtester.testers.record.verify_manifest", AsyncMock(return_value=drifting)),
            patch("streamtester.testers.base.verify_playback", AsyncMock(return_value=STATS)),
        ):
            result = await tester.build_session().run()

        assert result.phase == "live_playback"
        assert "segment counts differ" in str(result.error)

    async def test_recording_without_asset_or_url(self, api, config, streamer):
        """A ready session with nothing to play fails verification."""
        api.list_stream_sessions.side_effect = None
        api.list_stream_sessions.return_value = [
            StreamSession(id="sess-1", record_status="ready")
        ]
        tester = RecordTester(api, config, streamer=streamer, ingest=INGEST)

        with patch(
            "streamtester.testers.record.verify_manifest", AsyncMock(return_value=STATS)
        ):
            result = await tester.build_session().run()

        assert result.phase == "stream"
        assert "neither asset nor recording URL" in str(result.error)

    async def test_geo_playback_nodes(self, api, config, streamer):
        """Live playback is pulled from the closest playback node."""
        membership = AsyncMock()
        membership.members.return_value = [
            GeoNode(
                name="far",
                address="far.example.com",
                tags={"latitude": "60", "longitude": "60"},
            ),
            GeoNode(
                name="near",
                address="near.example.com",
                tags={"latitude": "1", "longitude": "1"},
            ),
        ]
        geo = GeoOptions(membership=membership, origin=(0.0, 0.0), node_count=1)
        verify_manifest = AsyncMock(return_value=STATS)
        tester = RecordTester(api, config, streamer=streamer, ingest=INGEST, geo=geo)

        with (
            patch("streamtester.testers.record.verify_manifest", verify_manifest),
            patch("streamtester.testers.base.verify_playback", AsyncMock(return_value=STATS)),
        ):
            result = await tester.build_session().run()

        assert result.ok
        assert verify_manifest.await_args.args[0] == (
            "https://near.example.com/hls/pb-1/index.m3u8"
        )

    async def test_delete_failure_does_not_fail_cycle(self, api, config, streamer):
        """A stream that cannot be deleted is logged, not reported."""
        from streamtester.api.exceptions import ServerError

        api.delete_stream.side_effect = ServerError()
        tester = RecordTester(api, config, streamer=streamer, ingest=INGEST)

        with (
            patch("streamtester.testers.record.verify_manifest", AsyncMock(return_value=STATS)),
            patch("streamtester.testers.base.verify_playback", AsyncMock(return_value=STATS)),
        ):
            result = await tester.build_session().run()

        assert result.ok
