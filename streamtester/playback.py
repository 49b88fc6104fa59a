"""Playback verification of produced assets.

An asset counts as playable once its HLS manifest can be fetched and lists
more than one rendition, i.e. the platform transcoded it beyond the source.
"""

from __future__ import annotations

import httpx
import structlog

from streamtester.api.client import AsyncStudioClient
from streamtester.api.types import PlaybackSourceType
from streamtester.errors import DeadlineExceededError, VerificationError
from streamtester.manifest import (
    MANIFEST_TIMEOUT,
    ManifestNotReadyError,
    ManifestStats,
    fetch_manifest_stats,
)
from streamtester.polling import poll_until

logger = structlog.get_logger()

MAX_TIME_TO_WAIT_FOR_MANIFEST = 20.0
MANIFEST_POLL_INTERVAL = 2.0

# A manifest may fall short of the expected duration by this much
DURATION_TOLERANCE_SECONDS = 2.0
DURATION_TOLERANCE_RATIO = 0.1


def duration_tolerance(expected: float) -> float:
    return max(DURATION_TOLERANCE_SECONDS, expected * DURATION_TOLERANCE_RATIO)


async def verify_manifest(
    url: str,
    *,
    min_renditions: int = 2,
    expected_duration: float | None = None,
    max_wait: float = MAX_TIME_TO_WAIT_FOR_MANIFEST,
    poll_interval: float = MANIFEST_POLL_INTERVAL,
    http_client: httpx.AsyncClient | None = None,
) -> ManifestStats:
    """Wait for a manifest to become fetchable with enough renditions.

    Args:
        url: Master (or media) playlist URL.
        min_renditions: Renditions required for the manifest to pass.
        expected_duration: When set, the longest rendition must cover it
            within ``duration_tolerance``.
        max_wait: Seconds to keep polling.
        poll_interval: Seconds between fetches.
        http_client: Client to reuse; a private one is created otherwise.

    Raises:
        VerificationError: Too few renditions or too little media.
        DeadlineExceededError: The manifest never became fetchable.
    """
    log = logger.bind(url=url)
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(
        timeout=MANIFEST_TIMEOUT, follow_redirects=True
    )
    last_stats: ManifestStats | None = None

    async def check() -> ManifestStats | None:
        nonlocal last_stats
        try:
            stats = await fetch_manifest_stats(client, url)
        except ManifestNotReadyError as e:
            log.debug("manifest_not_ready", error=str(e))
            return None
        last_stats = stats
        if stats.rendition_count >= min_renditions:
            return stats
        log.debug("manifest_renditions_pending", renditions=stats.rendition_count)
        return None

    try:
        stats = await poll_until(
            check,
            interval=poll_interval,
            timeout=max_wait,
            description=f"manifest {url}",
        )
    except DeadlineExceededError:
        if last_stats is not None:
            raise VerificationError(
                f"insufficient renditions in manifest {url}: found "
                f"{last_stats.rendition_count}, want at least {min_renditions}"
            ) from None
        raise
    finally:
        if owns_client:
            await client.aclose()

    if expected_duration:
        shortfall = expected_duration - stats.duration
        if shortfall > duration_tolerance(expected_duration):
            raise VerificationError(
                f"manifest {url} covers {stats.duration:.1f}s, "
                f"expected at least {expected_duration:.1f}s"
            )

    log.info(
        "manifest_verified",
        renditions=stats.rendition_count,
        duration=round(stats.duration, 2),
    )
    return stats


def check_rendition_consistency(
    stats: ManifestStats,
    *,
    ignore_gaps: bool = True,
    ignore_time_drift: bool = True,
    ignore_no_codec_error: bool = True,
) -> None:
    """Compare renditions of one manifest against each other.

    Args:
        stats: Manifest to check.
        ignore_gaps: Skip the check that every rendition covers as much
            media as the longest one.
        ignore_time_drift: Skip the check that all renditions list the same
            number of segments.
        ignore_no_codec_error: Skip the check that every variant declares
            its codecs.

    Raises:
        VerificationError: A check that is not ignored failed.
    """
    renditions = stats.renditions
    if not renditions:
        return

    if not ignore_no_codec_error:
        missing = [r.uri for r in renditions if not r.codecs and r.uri != stats.url]
        if missing:
            raise VerificationError(
                f"renditions without codecs in {stats.url}: {', '.join(missing)}"
            )

    if not ignore_time_drift:
        counts = {r.segments for r in renditions}
        if len(counts) > 1:
            raise VerificationError(
                f"segment counts differ between renditions of {stats.url}: "
                f"{stats.segments_per_rendition}"
            )

    if not ignore_gaps:
        longest = stats.duration
        tolerance = duration_tolerance(longest)
        for r in renditions:
            if longest - r.duration > tolerance:
                raise VerificationError(
                    f"rendition {r.uri} covers {r.duration:.1f}s of {longest:.1f}s"
                )


async def verify_playback(
    api: AsyncStudioClient,
    asset_id: str,
    *,
    expected_min_duration: float | None = None,
    max_wait: float = MAX_TIME_TO_WAIT_FOR_MANIFEST,
    poll_interval: float = MANIFEST_POLL_INTERVAL,
    http_client: httpx.AsyncClient | None = None,
) -> ManifestStats:
    """Check that an asset is playable.

    Args:
        api: Hosted API client.
        asset_id: Asset to verify.
        expected_min_duration: Media the manifest must cover; defaults to the
            duration the asset reports.
        max_wait: Seconds to wait for the manifest.
        poll_interval: Seconds between manifest fetches.
        http_client: Client used for manifest downloads.

    Raises:
        VerificationError: Missing duration, streaming source or renditions.
        DeadlineExceededError: The manifest never became fetchable.
    """
    asset = await api.get_asset(asset_id)
    if asset.duration <= 0:
        raise VerificationError(
            f"no duration: asset reports {asset.duration}", asset_id=asset_id
        )
    if not asset.playback_id:
        raise VerificationError("asset has no playback id", asset_id=asset_id)

    info = await api.get_playback_info(asset.playback_id)
    source = info.find_source(PlaybackSourceType.HLS)
    if source is None:
        raise VerificationError(
            "no streaming source found in playback info", asset_id=asset_id
        )

    expected = (
        expected_min_duration if expected_min_duration is not None else asset.duration
    )
    try:
        return await verify_manifest(
            source.url,
            expected_duration=expected,
            max_wait=max_wait,
            poll_interval=poll_interval,
            http_client=http_client,
        )
    except (VerificationError, DeadlineExceededError) as e:
        e.with_context(asset_id=asset_id)
        raise
