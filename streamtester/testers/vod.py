"""VOD workflow tester.

Runs three independent phases concurrently:

- url_import: import an asset from a public URL, verify playback, then
  export it and wait for the export task
- direct_upload: PUT the media file to a direct upload URL
- resumable_upload: upload the media file over tus, pinned to the API
  region under test

Each upload phase waits for the processing task and verifies playback.
"""

from __future__ import annotations

import structlog

from streamtester.api.client import patch_url_host
from streamtester.errors import TesterError
from streamtester.phases import Phase, PhaseContext

from .base import Tester

logger = structlog.get_logger()


class VodTester(Tester):
    name = "vod"

    def phases(self) -> list[Phase]:
        return [
            self.phase("url_import", self.url_import),
            self.phase("direct_upload", self.direct_upload),
            self.phase("resumable_upload", self.resumable_upload),
        ]

    async def url_import(self, ctx: PhaseContext) -> None:
        name = self.asset_name("vod_test_asset")
        url = self.config.vod_import_url
        asset, task = await self.api.upload_via_url(
            url, name, pipeline_strategy=self.config.pipeline_strategy
        )
        ctx.log.info(
            "asset_import_started",
            asset_id=asset.id,
            task_id=task.id,
            url=url,
            pipeline_strategy=self.config.pipeline_strategy,
        )

        await self.wait_task(task.id, asset_id=asset.id)
        await self.check_playback(asset.id)

        try:
            export_task = await self.api.export_asset(asset.id)
        except TesterError as e:
            e.with_context(asset_id=asset.id)
            raise
        ctx.log.info("asset_export_started", asset_id=asset.id, task_id=export_task.id)
        await self.wait_task(export_task.id, asset_id=asset.id)

    async def direct_upload(self, ctx: PhaseContext) -> None:
        name = self.asset_name("vod_test_upload_direct")
        request = await self.api.request_upload(
            name, pipeline_strategy=self.config.pipeline_strategy
        )
        asset_id = request.asset.id
        ctx.log.info("direct_upload_started", asset_id=asset_id, task_id=request.task.id)

        try:
            await self.api.upload_asset(request.url, self.file_path)
        except TesterError as e:
            e.with_context(asset_id=asset_id, task_id=request.task.id)
            raise

        await self.wait_task(request.task.id, asset_id=asset_id)
        await self.check_playback(asset_id)

    async def resumable_upload(self, ctx: PhaseContext) -> None:
        name = self.asset_name("vod_test_upload_resumable")
        request = await self.api.request_upload(
            name, pipeline_strategy=self.config.pipeline_strategy
        )
        asset_id = request.asset.id
        endpoint = patch_url_host(request.tus_endpoint, self.api.server)
        ctx.log.info(
            "resumable_upload_started",
            asset_id=asset_id,
            task_id=request.task.id,
            endpoint=endpoint,
        )

        try:
            await self.api.resumable_upload(endpoint, self.file_path)
        except TesterError as e:
            e.with_context(asset_id=asset_id, task_id=request.task.id)
            raise

        await self.wait_task(request.task.id, asset_id=asset_id)
        await self.check_playback(asset_id)
