"""Transcode API tester.

Submits a transcode of the import URL into an object store bucket, waits for
the task and checks that the HLS output lists more than one rendition.
"""

from __future__ import annotations

from typing import Any

import httpx

from streamtester.api.client import AsyncStudioClient
from streamtester.config import parse_bucket_url
from streamtester.errors import TesterError
from streamtester.phases import Phase, PhaseContext
from streamtester.playback import verify_manifest
from streamtester.session import SessionConfig

from .base import Tester


class TranscodeTester(Tester):
    name = "transcode"

    def __init__(
        self,
        api: AsyncStudioClient,
        config: SessionConfig,
        bucket_url: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(api, config, http_client=http_client)
        self.bucket = parse_bucket_url(bucket_url)

    def phases(self) -> list[Phase]:
        return [self.phase("transcode", self.transcode)]

    @property
    def storage(self) -> dict[str, Any]:
        return {k: v for k, v in self.bucket.items() if k != "public_url"}

    def output_manifest_url(self, output_path: str) -> str:
        return f"{self.bucket['public_url']}{output_path}/index.m3u8"

    async def transcode(self, ctx: PhaseContext) -> None:
        output_path = "/" + self.asset_name("transcode_test").replace(":", "-")
        task = await self.api.transcode(
            self.config.vod_import_url,
            self.storage,
            output_path,
            pipeline_strategy=self.config.pipeline_strategy,
        )
        ctx.log.info("transcode_started", task_id=task.id, output_path=output_path)

        await self.wait_task(task.id)

        try:
            stats = await verify_manifest(
                self.output_manifest_url(output_path),
                min_renditions=2,
                max_wait=self.config.playback_max_wait,
                http_client=self.http_client,
            )
        except TesterError as e:
            e.with_context(task_id=task.id)
            raise
        ctx.log.info(
            "transcode_output_verified",
            task_id=task.id,
            renditions=stats.rendition_count,
        )
