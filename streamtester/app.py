"""Top-level tester application.

``TesterApp`` validates settings, prepares the media file and API client,
builds the enabled testers and then either runs one session over all of
their phases or runs each tester under its own ``ContinuousRunner`` with
alerting and a metrics server. A load test (``sim`` > 1) instead runs that
many record sessions side by side with staggered starts.
"""

from __future__ import annotations

import asyncio
import dataclasses
import random
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from streamtester import metrics
from streamtester.alerts import AlertDispatcher, DiscordNotifier, Notifier, PagerDutyNotifier
from streamtester.api.client import AsyncStudioClient
from streamtester.config import Settings
from streamtester.errors import ConfigurationError, TesterError
from streamtester.geo import HttpMembershipSource
from streamtester.manifest import MANIFEST_TIMEOUT
from streamtester.media import MediaFile, resolve_media_file
from streamtester.metrics_server import MetricsServer
from streamtester.runner import ContinuousRunner
from streamtester.session import (
    EXIT_CONFIGURATION,
    EXIT_OK,
    CycleResult,
    SessionConfig,
    TestSession,
)
from streamtester.simulator import FfmpegStreamer
from streamtester.testers import GeoOptions, RecordTester, Tester, TranscodeTester, VodTester

logger = structlog.get_logger()

SERVICE_NAME = "stream-tester"

ApiFactory = Callable[[Settings], AsyncStudioClient]


def _default_api_factory(settings: Settings) -> AsyncStudioClient:
    return AsyncStudioClient(
        settings.api_server, settings.api_token, timeout=settings.api_timeout
    )


def build_notifiers(settings: Settings) -> list[Notifier]:
    """Alert transports configured in settings."""
    notifiers: list[Notifier] = []
    if settings.discord_url:
        notifiers.append(
            DiscordNotifier(
                settings.discord_url,
                user_name=settings.discord_user_name,
                users_to_notify=settings.discord_user_ids,
            )
        )
    if settings.pagerduty_integration_key:
        notifiers.append(
            PagerDutyNotifier(
                settings.pagerduty_integration_key,
                component=settings.pagerduty_component,
                low_urgency=settings.pagerduty_low_urgency,
            )
        )
    return notifiers


def combined_session(testers: list[Tester], config: SessionConfig) -> TestSession:
    """One session running the phases of every tester side by side."""
    if len(testers) == 1:
        return testers[0].build_session()
    phases = [
        dataclasses.replace(p, name=f"{t.name}.{p.name}")
        for t in testers
        for p in t.phases()
    ]
    return TestSession("+".join(t.name for t in testers), phases, config)


class TesterApp:
    """Runs the configured testers once or continuously.

    Args:
        settings: Validated on ``start()``.
        api_factory: Builds the API client; replaced in tests.
        streamer: RTMP pusher for the record tester.
        notifiers: Alert transports; built from settings when None.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        api_factory: ApiFactory | None = None,
        streamer: FfmpegStreamer | None = None,
        notifiers: list[Notifier] | None = None,
    ) -> None:
        self.settings = settings
        self._api_factory = api_factory or _default_api_factory
        self._streamer = streamer or FfmpegStreamer(settings.ffmpeg_path)
        self._notifiers = build_notifiers(settings) if notifiers is None else notifiers
        self.runners: dict[str, ContinuousRunner] = {}
        self._task: asyncio.Task | None = None
        self._cancel_requested = False
        self._done = asyncio.Event()

    async def start(self) -> tuple[int, BaseException | None]:
        """Run until done, cancelled or the continuous duration expires.

        Returns:
            (exit code, error). Exit code 0 for success, cancellation and
            continuous runs; 1 for a failed single run; 2 for invalid
            configuration.
        """
        if self._task is not None:
            raise RuntimeError("tester app already started")
        self._task = asyncio.create_task(self._run(), name="tester-app")
        try:
            return await self._task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._cancel_requested and not (current and current.cancelling()):
                logger.info("tester_app_cancelled")
                return EXIT_OK, None
            raise
        finally:
            self._done.set()

    def cancel(self) -> None:
        """Cancel every running session, poll and push."""
        self._cancel_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_done(self) -> None:
        """Wait until ``start()`` has returned and every task has finished."""
        await self._done.wait()

    def status(self) -> list[dict[str, Any]]:
        return [r.status().to_dict() for r in self.runners.values()]

    async def _run(self) -> tuple[int, BaseException | None]:
        if self._cancel_requested:
            return EXIT_OK, None
        settings = self.settings
        try:
            settings.validate_for_run()
        except ConfigurationError as e:
            logger.error("invalid_configuration", error=str(e))
            return EXIT_CONFIGURATION, e

        metrics.configure_metrics(SERVICE_NAME, enabled=settings.metrics_enabled)

        try:
            media = await resolve_media_file(settings.file, settings.media_base_url)
        except ConfigurationError as e:
            logger.error("media_file_unavailable", error=str(e))
            return EXIT_CONFIGURATION, e

        api = self._api_factory(settings)
        http_client = httpx.AsyncClient(timeout=MANIFEST_TIMEOUT, follow_redirects=True)
        try:
            if settings.geolocate_api:
                try:
                    await api.geolocate()
                except TesterError as e:
                    logger.warning(
                        "api_geolocation_failed", server=api.server, error=str(e)
                    )

            config = dataclasses.replace(
                settings.session_config(media.path), api_server=api.server
            )
            try:
                testers = self.build_testers(api, config, http_client)
            except ConfigurationError as e:
                logger.error("invalid_configuration", error=str(e))
                return EXIT_CONFIGURATION, e

            logger.info(
                "tester_app_started",
                api_server=api.server,
                testers=[t.name for t in testers],
                continuous=settings.continuous,
                sim=settings.sim,
            )
            if settings.load_test:
                return await self._run_sim(api, config, http_client)
            if settings.continuous:
                return await self._run_continuous(testers)
            return await self._run_once(testers, config)
        finally:
            await http_client.aclose()
            await api.close()
            self._cleanup_media(media)

    def build_testers(
        self,
        api: AsyncStudioClient,
        config: SessionConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> list[Tester]:
        """Instantiate the enabled testers.

        A single run with no workflow enabled runs the record tester.
        """
        settings = self.settings
        names = settings.enabled_workflows or ["record"]
        testers: list[Tester] = []
        for name in names:
            if name == "record":
                testers.append(self._record_tester(api, config, http_client))
            elif name == "vod":
                testers.append(VodTester(api, config, http_client=http_client))
            elif name == "transcode":
                if not settings.transcode_bucket_url:
                    raise ConfigurationError("transcode tests need a bucket URL")
                testers.append(
                    TranscodeTester(
                        api,
                        config,
                        settings.transcode_bucket_url,
                        http_client=http_client,
                    )
                )
        return testers

    def _record_tester(
        self,
        api: AsyncStudioClient,
        config: SessionConfig,
        http_client: httpx.AsyncClient | None,
    ) -> RecordTester:
        settings = self.settings
        return RecordTester(
            api,
            config,
            streamer=self._streamer,
            ingest=settings.parsed_ingest(),
            geo=self._geo_options(),
            record_object_store_id=settings.record_object_store_id,
            http_client=http_client,
        )

    def _geo_options(self) -> GeoOptions | None:
        settings = self.settings
        if not settings.use_geo or not settings.membership_url:
            return None
        return GeoOptions(
            membership=HttpMembershipSource(settings.membership_url),
            origin=(settings.latitude, settings.longitude),
            node_count=settings.node_count,
            pull_count=settings.pull_count,
            randomize=settings.random_member,
            url_template=settings.playback_url_template,
        )

    async def _run_once(
        self, testers: list[Tester], config: SessionConfig
    ) -> tuple[int, BaseException | None]:
        session = combined_session(testers, config)
        result = await session.run()
        if not result.ok:
            logger.error(
                "test_failed", exit_code=result.exit_code, error=str(result.error)
            )
        return result.exit_code, result.error

    async def _run_sim(
        self,
        api: AsyncStudioClient,
        config: SessionConfig,
        http_client: httpx.AsyncClient,
    ) -> tuple[int, BaseException | None]:
        """Run ``sim`` record sessions side by side with staggered starts.

        Returns:
            The exit code and error of the first session to fail, or
            (0, None) when every session passed.
        """
        settings = self.settings
        count = settings.sim
        loop = asyncio.get_running_loop()
        started = loop.time()
        results: list[CycleResult] = []

        async def run_one(index: int) -> None:
            tester = self._record_tester(api, config, http_client)
            results.append(await tester.build_session(index).run())

        async with asyncio.TaskGroup() as tg:
            for index in range(1, count + 1):
                tg.create_task(run_one(index), name=f"sim:{index}")
                if index < count:
                    await asyncio.sleep(
                        random.uniform(
                            settings.sim_start_delay_min, settings.sim_start_delay_max
                        )
                    )

        succeeded = sum(1 for r in results if r.ok)
        logger.info(
            "load_test_finished",
            streams=count,
            succeeded=succeeded,
            success_percent=round(100.0 * succeeded / count, 1),
            duration=round(loop.time() - started, 3),
        )
        for result in results:
            if not result.ok:
                return result.exit_code, result.error
        return EXIT_OK, None

    async def _run_continuous(
        self, testers: list[Tester]
    ) -> tuple[int, BaseException | None]:
        settings = self.settings
        dispatcher = AlertDispatcher(
            self._notifiers, send_timeout=settings.alert_send_timeout
        )
        host, port = settings.bind_host_port
        server = MetricsServer(host, port, status_provider=self.status)
        await server.start()
        try:
            async with asyncio.TaskGroup() as tg:
                for tester in testers:
                    runner = ContinuousRunner(tester.name, dispatcher=dispatcher)
                    self.runners[tester.name] = runner
                    tg.create_task(
                        runner.run(
                            tester.build_session,
                            total_duration=settings.continuous_test,
                            pause_between=settings.continuous_pause,
                        ),
                        name=f"runner:{tester.name}",
                    )
        finally:
            await server.stop()

        logger.info("continuous_test_finished", testers=self.status())
        return EXIT_OK, None

    @staticmethod
    def _cleanup_media(media: MediaFile) -> None:
        try:
            media.cleanup()
        except OSError as e:
            logger.warning("media_cleanup_failed", path=str(media.path), error=str(e))
