"""Live stream and recording tester.

Each cycle runs two phases concurrently:

- stream: create a recorded stream, push the media file over RTMP (twice
  with a pause in between when a pause is configured), wait for the
  recording session to become ready and verify its playback. The stream is
  deleted at the end in a committed section, so a failing sibling cannot
  leave it behind.
- live_playback: once the stream exists, verify the live HLS manifest from
  the playback nodes closest to this tester, or from the API playback URL
  when node selection is off.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import partial

import httpx
import structlog

from streamtester.api.client import AsyncStudioClient
from streamtester.api.exceptions import APIError
from streamtester.api.types import Ingest, PlaybackSourceType, Stream, StreamSession
from streamtester.config import DEFAULT_PLAYBACK_URL_TEMPLATE
from streamtester.errors import TesterError, UnexpectedPhaseError, VerificationError
from streamtester.geo import HttpMembershipSource, pick_playback_nodes, select_closest_nodes
from streamtester.phases import Phase, PhaseContext
from streamtester.playback import check_rendition_consistency, verify_manifest
from streamtester.polling import poll_until
from streamtester.session import SessionConfig
from streamtester.simulator import FfmpegStreamer

from .base import Tester

logger = structlog.get_logger()


@dataclass
class GeoOptions:
    """Playback node selection for live verification."""

    membership: HttpMembershipSource
    origin: tuple[float, float]
    node_count: int = 5
    pull_count: int = 1
    randomize: bool = False
    url_template: str = DEFAULT_PLAYBACK_URL_TEMPLATE


@dataclass
class _CycleState:
    stream: Stream | None = None
    stream_ready: asyncio.Event = field(default_factory=asyncio.Event)


class RecordTester(Tester):
    name = "record"

    def __init__(
        self,
        api: AsyncStudioClient,
        config: SessionConfig,
        *,
        streamer: FfmpegStreamer | None = None,
        ingest: Ingest | None = None,
        geo: GeoOptions | None = None,
        record_object_store_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(api, config, http_client=http_client)
        self.streamer = streamer or FfmpegStreamer()
        self.ingest = ingest
        self.geo = geo
        self.record_object_store_id = record_object_store_id

    def phases(self) -> list[Phase]:
        state = _CycleState()
        return [
            self.phase("stream", partial(self.stream_and_record, state)),
            self.phase("live_playback", partial(self.live_playback, state)),
        ]

    async def stream_and_record(self, state: _CycleState, ctx: PhaseContext) -> None:
        ingest = await self._ingest()
        stream = await self.api.create_stream(
            self.asset_name("record_tester"),
            record=True,
            record_object_store_id=self.record_object_store_id,
        )
        state.stream = stream
        log = ctx.log.bind(stream_id=stream.id, playback_id=stream.playback_id)
        log.info("stream_created")

        try:
            rtmp_url = f"{ingest.ingest.rstrip('/')}/{stream.stream_key}"
            state.stream_ready.set()
            await self.streamer.push(rtmp_url, self.file_path, self.config.test_duration)
            if self.config.pause_duration > 0:
                log.info("stream_paused", pause=self.config.pause_duration)
                await asyncio.sleep(self.config.pause_duration)
                await self.streamer.push(
                    rtmp_url, self.file_path, self.config.test_duration
                )

            session = await self._wait_recording(stream)
            log.info("recording_ready", session_id=session.id, asset_id=session.asset_id)
            await self._verify_recording(session)
        finally:
            with ctx.committed():
                await self._delete_stream(stream)

    async def live_playback(self, state: _CycleState, ctx: PhaseContext) -> None:
        await state.stream_ready.wait()
        if state.stream is None:
            raise UnexpectedPhaseError("stream marked ready before it was created")
        urls = await self._live_urls(state.stream)

        for url in urls:
            stats = await verify_manifest(
                url,
                min_renditions=2,
                max_wait=self.config.test_duration,
                http_client=self.http_client,
            )
            check_rendition_consistency(
                stats,
                ignore_gaps=self.config.ignore_gaps,
                ignore_time_drift=self.config.ignore_time_drift,
                ignore_no_codec_error=self.config.ignore_no_codec_error,
            )
            ctx.log.info(
                "live_playback_verified", url=url, renditions=stats.rendition_count
            )

    async def _ingest(self) -> Ingest:
        if self.ingest is not None:
            return self.ingest
        ingests = await self.api.list_ingests()
        if not ingests:
            raise APIError("API returned no ingest points")
        return ingests[0]

    async def _live_urls(self, stream: Stream) -> list[str]:
        if self.geo is not None:
            members = await self.geo.membership.members()
            closest = select_closest_nodes(
                members, self.geo.origin, self.geo.node_count
            )
            nodes = pick_playback_nodes(
                closest, self.geo.pull_count, randomize=self.geo.randomize
            )
            if not nodes:
                raise VerificationError("no playback nodes available")
            logger.info(
                "playback_nodes_selected",
                nodes=[n.name for n in nodes],
                candidates=len(members),
            )
            return [
                self.geo.url_template.format(
                    address=n.address, name=n.name, playback_id=stream.playback_id
                )
                for n in nodes
            ]

        if self.ingest is not None and self.ingest.playback:
            return [f"{self.ingest.playback.rstrip('/')}/{stream.playback_id}/index.m3u8"]

        info = await self.api.get_playback_info(stream.playback_id)
        source = info.find_source(PlaybackSourceType.HLS)
        if source is None:
            raise VerificationError("no streaming source found in playback info")
        return [source.url]

    async def _wait_recording(self, stream: Stream) -> StreamSession:
        async def check() -> StreamSession | None:
            sessions = await self.api.list_stream_sessions(stream.id)
            for session in sessions:
                if session.recording_ready:
                    return session
            return None

        return await poll_until(
            check,
            interval=self.config.task_poll_interval,
            timeout=self.config.task_timeout,
            description=f"recording of stream {stream.id}",
        )

    async def _verify_recording(self, session: StreamSession) -> None:
        if session.asset_id:
            stats = await self.check_playback(
                session.asset_id, expected_min_duration=self.config.test_duration
            )
        elif session.recording_url:
            stats = await verify_manifest(
                session.recording_url,
                expected_duration=self.config.test_duration,
                max_wait=self.config.playback_max_wait,
                http_client=self.http_client,
            )
        else:
            raise VerificationError(
                f"recording session {session.id} has neither asset nor recording URL"
            )
        check_rendition_consistency(
            stats,
            ignore_gaps=self.config.ignore_gaps,
            ignore_time_drift=self.config.ignore_time_drift,
            ignore_no_codec_error=self.config.ignore_no_codec_error,
        )

    async def _delete_stream(self, stream: Stream) -> None:
        try:
            await self.api.delete_stream(stream.id)
        except TesterError as e:
            # Leaves the stream behind; the cycle outcome is decided by the phases
            logger.warning("stream_delete_failed", stream_id=stream.id, error=str(e))
            return
        logger.info("stream_deleted", stream_id=stream.id)
