"""Unit tests for the VOD workflow tester."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from streamtester.api.types import Asset, Task, TaskStatus, UploadRequest
from streamtester.errors import ErrorKind, RemoteTaskFailedError
from streamtester.manifest import ManifestStats
from streamtester.session import SessionConfig
from streamtester.testers import VodTester


@pytest.fixture
def config(tmp_path) -> SessionConfig:
    media = tmp_path / "clip.mp4"
    media.write_bytes(b"media")
    return SessionConfig(
        api_server="studio.example.com",
        file_path=media,
        test_duration=30,
        task_poll_interval=0.01,
        task_timeout=1,
        playback_max_wait=1,
        pipeline_strategy="catalyst",
        vod_import_url="https://assets.example.com/clip.mp4",
    )


def upload_request(asset_id: str, task_id: str) -> UploadRequest:
    return UploadRequest(
        url=f"https://origin.example.com/upload/direct?token={asset_id}",
        tus_endpoint="https://origin.example.com/upload/tus?token=x",
        asset=Asset(id=asset_id),
        task=Task(id=task_id),
    )


@pytest.fixture
def api() -> AsyncMock:
    api = AsyncMock()
    api.server = "lon.studio.example.org"
    api.upload_via_url.return_value = (Asset(id="import-asset"), Task(id="import-task"))
    api.export_asset.return_value = Task(id="export-task")
    api.request_upload.side_effect = [
        upload_request("direct-asset", "direct-task"),
        upload_request("tus-asset", "tus-task"),
    ]
    return api


def succeeded(api, task_id, **kwargs):
    return Task(id=task_id, status=TaskStatus.SUCCEEDED)


@pytest.mark.asyncio
class TestVodTester:
    """Tests for a VOD cycle."""

    async def test_all_phases_succeed(self, api, config):
        """Import, direct upload and resumable upload all pass."""
        verify = AsyncMock(return_value=ManifestStats(url="https://x/index.m3u8"))

        with (
            patch("streamtester.testers.base.wait_for_task", side_effect=succeeded) as wait,
            patch("streamtester.testers.base.verify_playback", verify),
        ):
            result = await VodTester(api, config).build_session().run()

        assert result.ok
        assert result.tester == "vod"
        waited = {c.args[1] for c in wait.call_args_list}
        assert waited == {"import-task", "export-task", "direct-task", "tus-task"}
        verified = {c.args[1] for c in verify.await_args_list}
        assert verified == {"import-asset", "direct-asset", "tus-asset"}

    async def test_import_uses_configured_url(self, api, config):
        """The URL import sends the import URL and pipeline strategy."""
        with (
            patch("streamtester.testers.base.wait_for_task", side_effect=succeeded),
            patch("streamtester.testers.base.verify_playback", AsyncMock()),
        ):
            await VodTester(api, config).build_session().run()

        url, name = api.upload_via_url.await_args.args
        assert url == "https://assets.example.com/clip.mp4"
        assert name.startswith("vod_test_asset_")
        assert api.upload_via_url.await_args.kwargs["pipeline_strategy"] == "catalyst"
        api.export_asset.assert_awaited_once_with("import-asset")

    async def test_resumable_upload_pinned_to_region(self, api, config):
        """The tus endpoint is rewritten to the API server under test."""
        with (
            patch("streamtester.testers.base.wait_for_task", side_effect=succeeded),
            patch("streamtester.testers.base.verify_playback", AsyncMock()),
        ):
            await VodTester(api, config).build_session().run()

        endpoint, path = api.resumable_upload.await_args.args
        assert endpoint == "https://lon.studio.example.org/upload/tus?token=x"
        assert path == config.file_path
        api.upload_asset.assert_awaited_once()

    async def test_failed_task_fails_cycle(self, api, config):
        """A failed processing task fails the cycle and names its phase."""

        async def wait(api_, task_id, **kwargs):
            if task_id == "direct-task":
                raise RemoteTaskFailedError("remote task failed: bad codec", reason="bad codec")
            await asyncio.sleep(10)

        with (
            patch("streamtester.testers.base.wait_for_task", side_effect=wait),
            patch("streamtester.testers.base.verify_playback", AsyncMock()),
        ):
            result = await VodTester(api, config).build_session().run()

        assert not result.ok
        assert result.phase == "direct_upload"
        assert result.error_kind is ErrorKind.REMOTE_FAILURE
        assert result.error.task_id == "direct-task"
        assert result.error.asset_id == "direct-asset"

    async def test_export_failure_carries_asset(self, api, config):
        """A failing export call is tagged with the imported asset."""
        api.export_asset.side_effect = RemoteTaskFailedError("export rejected")

        with (
            patch("streamtester.testers.base.wait_for_task", side_effect=succeeded),
            patch("streamtester.testers.base.verify_playback", AsyncMock()),
        ):
            result = await VodTester(api, config).build_session().run()

        assert result.phase == "url_import"
        assert result.error.asset_id == "import-asset"

    async def test_fresh_phases_per_cycle(self, api, config):
        """Each session gets its own phase list and cycle number."""
        tester = VodTester(api, config)

        first, second = tester.build_session(1), tester.build_session(2)

        assert first.phases is not second.phases
        assert [p.name for p in first.phases] == [
            "url_import",
            "direct_upload",
            "resumable_upload",
        ]
        assert second.cycle == 2
