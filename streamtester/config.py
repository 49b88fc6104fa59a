"""Runtime settings for stream-tester.

Values come from ``RT_*`` environment variables, a ``.env`` file, an optional
YAML config file and CLI options, in increasing order of precedence. The CLI
passes its overrides by field name.
"""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from streamtester.api.types import Ingest
from streamtester.errors import ConfigurationError
from streamtester.session import SessionConfig

DEFAULT_FILE = "bbb_sunflower_1080p_30fps_normal_t02.mp4"
DEFAULT_MEDIA_BASE_URL = "https://storage.googleapis.com/lp_testharness_assets/"
DEFAULT_VOD_IMPORT_URL = DEFAULT_MEDIA_BASE_URL + "bbb_sunflower_1080p_30fps_normal_2min.mp4"
DEFAULT_PLAYBACK_URL_TEMPLATE = "https://{address}/hls/{playback_id}/index.m3u8"
MAX_PAUSE_DURATION = 300.0


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Hosted API
    api_server: str = Field(default="livepeer.studio", alias="RT_API_SERVER")
    api_token: str = Field(default="", alias="RT_API_TOKEN")
    geolocate_api: bool = Field(
        default=True,
        alias="RT_GEOLOCATE_API",
        description="Resolve the closest regional API server before testing",
    )
    api_timeout: float = Field(default=8.0, alias="RT_API_TIMEOUT")
    ingest: str | None = Field(
        default=None,
        alias="RT_INGEST",
        description='Ingest override as JSON: {"ingest": "rtmp://...", "playback": "https://..."}',
    )
    pipeline_strategy: str | None = Field(
        default=None, alias="RT_CATALYST_PIPELINE_STRATEGY"
    )
    record_object_store_id: str | None = Field(
        default=None, alias="RT_RECORD_OBJECT_STORE_ID"
    )

    # Media
    file: str = Field(default=DEFAULT_FILE, alias="RT_FILE")
    media_base_url: str = Field(default=DEFAULT_MEDIA_BASE_URL, alias="RT_MEDIA_BASE_URL")
    vod_import_url: str = Field(default=DEFAULT_VOD_IMPORT_URL, alias="RT_VOD_IMPORT_URL")
    ffmpeg_path: str = Field(default="ffmpeg", alias="RT_FFMPEG_PATH")

    # Timing, in seconds
    test_duration: float = Field(default=0.0, alias="RT_TEST_DUR")
    pause_duration: float = Field(default=0.0, alias="RT_PAUSE_DUR")
    continuous_test: float = Field(
        default=0.0,
        alias="RT_CONTINUOUS_TEST",
        description="Run cycles continuously for this long; 0 runs a single pass",
    )
    continuous_pause: float = Field(default=0.0, alias="RT_CONTINUOUS_PAUSE")
    sim: int = Field(
        default=0,
        alias="RT_SIM",
        description="Load test with this many concurrent record streams",
    )
    sim_start_delay_min: float = Field(default=3.0, alias="RT_SIM_START_DELAY_MIN")
    sim_start_delay_max: float = Field(default=8.0, alias="RT_SIM_START_DELAY_MAX")
    task_poll_interval: float = Field(default=15.0, alias="RT_TASK_POLL_DUR")
    task_timeout: float = Field(default=600.0, alias="RT_TASK_TIMEOUT")
    playback_max_wait: float = Field(default=20.0, alias="RT_PLAYBACK_MAX_WAIT")
    phase_deadline: float | None = Field(default=None, alias="RT_PHASE_DEADLINE")

    # Workflows
    test_live: bool = Field(default=False, alias="RT_LIVE")
    test_vod: bool = Field(default=False, alias="RT_VOD")
    test_transcode: bool = Field(default=False, alias="RT_TRANSCODE")
    transcode_bucket_url: str | None = Field(
        default=None,
        alias="RT_TRANSCODE_BUCKET_URL",
        description="s3+https://<access-key-id>:<secret-access-key>@<endpoint>/<bucket>",
    )

    # Playback node selection
    use_geo: bool = Field(default=False, alias="RT_USE_SERF")
    membership_url: str | None = Field(default=None, alias="RT_MEMBERSHIP_URL")
    random_member: bool = Field(default=False, alias="RT_RANDOM_SERF_MEMBER")
    pull_count: int = Field(default=1, alias="RT_PULL_COUNT")
    node_count: int = Field(default=5, alias="RT_SERF_NODE_COUNT")
    latitude: float = Field(default=0.0, alias="RT_LATITUDE")
    longitude: float = Field(default=0.0, alias="RT_LONGITUDE")
    playback_url_template: str = Field(
        default=DEFAULT_PLAYBACK_URL_TEMPLATE, alias="RT_PLAYBACK_URL_TEMPLATE"
    )

    # Tolerances
    ignore_gaps: bool = Field(default=True, alias="RT_IGNORE_GAPS")
    ignore_time_drift: bool = Field(default=True, alias="RT_IGNORE_TIME_DRIFT")
    ignore_no_codec_error: bool = Field(default=True, alias="RT_IGNORE_NO_CODEC_ERROR")

    # Alerting
    discord_url: str | None = Field(default=None, alias="RT_DISCORD_URL")
    discord_user_name: str = Field(default="", alias="RT_DISCORD_USER_NAME")
    discord_users: str = Field(
        default="", alias="RT_DISCORD_USERS", description="Comma-separated user IDs"
    )
    pagerduty_integration_key: str | None = Field(
        default=None, alias="RT_PAGERDUTY_INTEGRATION_KEY"
    )
    pagerduty_component: str = Field(default="", alias="RT_PAGERDUTY_COMPONENT")
    pagerduty_low_urgency: bool = Field(default=False, alias="RT_PAGERDUTY_LOW_URGENCY")
    alert_send_timeout: float = Field(default=15.0, alias="RT_ALERT_SEND_TIMEOUT")

    # Observability
    bind: str = Field(
        default="0.0.0.0:9090",
        alias="RT_BIND",
        description="Address of the metrics server in continuous mode",
    )
    metrics_enabled: bool = Field(default=True, alias="RT_METRICS_ENABLED")
    log_level: str = Field(default="INFO", alias="RT_LOG_LEVEL")
    log_format: str = Field(default="json", alias="RT_LOG_FORMAT")

    @property
    def continuous(self) -> bool:
        return self.continuous_test > 0

    @property
    def load_test(self) -> bool:
        return self.sim > 1

    @property
    def enabled_workflows(self) -> list[str]:
        return [
            name
            for name, enabled in (
                ("record", self.test_live),
                ("vod", self.test_vod),
                ("transcode", self.test_transcode),
            )
            if enabled
        ]

    @property
    def discord_user_ids(self) -> list[str]:
        return [u.strip() for u in self.discord_users.split(",") if u.strip()]

    @property
    def bind_host_port(self) -> tuple[str, int]:
        host, _, port = self.bind.rpartition(":")
        return host or "0.0.0.0", int(port)

    def parsed_ingest(self) -> Ingest | None:
        """Parse the ingest override.

        Raises:
            ConfigurationError: The value is not a JSON object.
        """
        if not self.ingest:
            return None
        try:
            data = json.loads(self.ingest)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"invalid ingest JSON: {e}") from e
        if not isinstance(data, dict) or not data.get("ingest"):
            raise ConfigurationError("ingest override must be an object with an 'ingest' URL")
        return Ingest(
            base=data.get("base", ""),
            ingest=data["ingest"],
            playback=data.get("playback", ""),
        )

    def validate_for_run(self) -> None:
        """Check that the settings describe a runnable test.

        Raises:
            ConfigurationError: On the first problem found.
        """
        if self.test_duration <= 0:
            raise ConfigurationError("test duration must be specified (RT_TEST_DUR)")
        if not self.api_token:
            raise ConfigurationError("API token must be specified (RT_API_TOKEN)")
        if not self.file:
            raise ConfigurationError("media file must be specified (RT_FILE)")
        if self.pause_duration > MAX_PAUSE_DURATION:
            raise ConfigurationError(
                f"pause duration must be at most {MAX_PAUSE_DURATION:.0f}s"
            )
        if self.task_poll_interval <= 0:
            raise ConfigurationError("task poll interval must be positive")
        if self.use_geo and not self.membership_url:
            raise ConfigurationError(
                "membership URL (RT_MEMBERSHIP_URL) is required with geo node selection"
            )
        if self.use_geo and self.pull_count < 1:
            raise ConfigurationError("pull count must be at least 1")
        if self.sim < 0:
            raise ConfigurationError("sim stream count must not be negative")
        if self.load_test and self.continuous:
            raise ConfigurationError("sim load tests cannot run in continuous mode")
        if not 0 <= self.sim_start_delay_min <= self.sim_start_delay_max:
            raise ConfigurationError("sim start delays must satisfy 0 <= min <= max")
        if self.continuous and not self.enabled_workflows:
            raise ConfigurationError(
                "continuous mode needs at least one workflow (live, vod, transcode)"
            )
        if self.test_transcode and not self.transcode_bucket_url:
            raise ConfigurationError(
                "transcode bucket URL (RT_TRANSCODE_BUCKET_URL) is required for transcode tests"
            )
        if self.transcode_bucket_url:
            parse_bucket_url(self.transcode_bucket_url)
        if not (
            math.isfinite(self.latitude)
            and math.isfinite(self.longitude)
            and -90 <= self.latitude <= 90
            and -180 <= self.longitude <= 180
        ):
            raise ConfigurationError(
                f"invalid origin coordinates ({self.latitude}, {self.longitude})"
            )
        self.parsed_ingest()

    def session_config(self, file_path: Path | None = None) -> SessionConfig:
        """Snapshot the values every phase of a session reads."""
        return SessionConfig(
            api_server=self.api_server,
            file_path=file_path,
            test_duration=self.test_duration,
            pause_duration=self.pause_duration,
            task_poll_interval=self.task_poll_interval,
            task_timeout=self.task_timeout,
            playback_max_wait=self.playback_max_wait,
            phase_deadline=self.phase_deadline,
            pipeline_strategy=self.pipeline_strategy,
            vod_import_url=self.vod_import_url,
            ignore_gaps=self.ignore_gaps,
            ignore_time_drift=self.ignore_time_drift,
            ignore_no_codec_error=self.ignore_no_codec_error,
        )


def parse_bucket_url(url: str) -> dict[str, Any]:
    """Parse ``s3+http(s)://<key-id>:<secret>@<endpoint>/<bucket>``.

    Returns:
        Object store description accepted by the transcode API, plus the
        ``public_url`` under which written objects can be read back.

    Raises:
        ConfigurationError: The URL does not follow the format.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("s3+http", "s3+https"):
        raise ConfigurationError(
            f"transcode bucket URL must use s3+http or s3+https, got {parsed.scheme!r}"
        )
    bucket = parsed.path.strip("/")
    if not parsed.hostname or not bucket or parsed.username is None:
        raise ConfigurationError(
            "transcode bucket URL must include credentials, endpoint and bucket"
        )

    http_scheme = parsed.scheme.removeprefix("s3+")
    endpoint = f"{http_scheme}://{parsed.hostname}"
    if parsed.port:
        endpoint += f":{parsed.port}"
    return {
        "type": "s3",
        "endpoint": endpoint,
        "bucket": bucket,
        "credentials": {
            "accessKeyId": unquote(parsed.username),
            "secretAccessKey": unquote(parsed.password or ""),
        },
        "public_url": f"{endpoint}/{bucket}",
    }


def load_config_file(path: Path) -> dict[str, Any]:
    """Load setting overrides from a YAML file.

    Keys may be field names (``test_duration``) or environment names
    (``RT_TEST_DUR``); dashes are accepted in place of underscores.

    Raises:
        ConfigurationError: The file is missing or not a YAML mapping.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain a mapping")
    return {str(k).replace("-", "_"): v for k, v in data.items()}

