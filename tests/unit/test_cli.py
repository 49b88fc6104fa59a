"""Tests for CLI commands."""

from unittest.mock import AsyncMock

import pytest
from typer.testing import CliRunner

from streamtester import __version__, cli
from streamtester.cli import app, build_settings, run_app
from streamtester.config import Settings
from streamtester.errors import ConfigurationError

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep a local .env or RT_* variables out of the settings."""
    monkeypatch.chdir(tmp_path)
    for name in ("RT_API_TOKEN", "RT_TEST_DUR", "RT_VOD", "RT_LIVE", "RT_API_SERVER"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_run(monkeypatch):
    """Replace the app run and logging setup, recording the settings."""
    run = AsyncMock(return_value=0)
    monkeypatch.setattr(cli, "run_app", run)
    monkeypatch.setattr(cli, "configure_logging", lambda *args: None)
    return run


def test_cli_help():
    """Test CLI help output."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "Synthetic end-to-end tests" in result.output


def test_cli_version():
    """Test CLI version output."""
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_version_command():
    """Test version subcommand."""
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert f"stream-tester {__version__}" in result.output


def test_run_help():
    """Test run command help."""
    result = runner.invoke(app, ["run", "--help"])
    assert result.exit_code == 0
    assert "--test-dur" in result.output


def test_run_passes_options(fake_run):
    """CLI options reach the settings by field name."""
    result = runner.invoke(
        app, ["run", "--api-token", "abc", "--test-dur", "30", "--vod", "--no-live"]
    )

    assert result.exit_code == 0
    settings = fake_run.await_args.args[0]
    assert settings.api_token == "abc"
    assert settings.test_duration == 30
    assert settings.enabled_workflows == ["vod"]


def test_run_passes_sim(fake_run):
    """--sim turns a run into a load test."""
    result = runner.invoke(
        app, ["run", "--api-token", "abc", "--test-dur", "30", "--sim", "4"]
    )

    assert result.exit_code == 0
    settings = fake_run.await_args.args[0]
    assert settings.sim == 4
    assert settings.load_test


def test_run_exit_code_propagates(fake_run):
    """A failed run exits with the app's exit code."""
    fake_run.return_value = 1

    result = runner.invoke(app, ["run", "--api-token", "abc", "--test-dur", "30"])

    assert result.exit_code == 1


def test_run_missing_config_file(fake_run, tmp_path):
    """An unreadable config file exits 2 without running."""
    result = runner.invoke(app, ["run", "--config", str(tmp_path / "missing.yaml")])

    assert result.exit_code == 2
    assert "cannot read config file" in result.output
    fake_run.assert_not_awaited()


def test_build_settings_cli_overrides_file(tmp_path):
    """CLI values win over the config file; unset options keep file values."""
    config = tmp_path / "settings.yaml"
    config.write_text("api-token: from-file\nRT_TEST_DUR: 45\nvod_import_url: https://a/b.mp4\n")

    settings = build_settings(config, {"api_token": "from-cli", "test_duration": None})

    assert settings.api_token == "from-cli"
    assert settings.test_duration == 45
    assert settings.vod_import_url == "https://a/b.mp4"


def test_build_settings_invalid_value():
    """A value of the wrong type is a configuration error."""
    with pytest.raises(ConfigurationError, match="invalid settings"):
        build_settings(None, {"node_count": "many"})


@pytest.mark.asyncio
async def test_run_app_invalid_settings(capsys):
    """run_app reports invalid settings and returns 2."""
    settings = Settings(_env_file=None, api_token="", test_duration=10)

    exit_code = await run_app(settings)

    assert exit_code == 2
    assert "API token must be specified" in capsys.readouterr().err
