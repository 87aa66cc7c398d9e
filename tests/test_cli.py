"""Tests for the typer CLI."""

import pytest
from typer.testing import CliRunner

from outline_sync import cli
from outline_sync.sync import SyncRunner

from .conftest import DIRECTORY_ADMIN_GROUP
from .test_config import ENV

runner = CliRunner()


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for key, value in ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: "testrun")
    return monkeypatch


@pytest.fixture
def fake_runner(cli_env, outline, directory):
    """Route the CLI's runner to the in-memory clients."""
    cli_env.setattr(
        cli,
        "SyncRunner",
        lambda config: SyncRunner(config, outline=outline, directory=directory),
    )
    alice = directory.add_person("alice@epfl.ch", units=["unit-a"])
    directory.add_group(DIRECTORY_ADMIN_GROUP, persons=[alice])
    outline.add_user("alice@epfl.ch")
    return outline


def test_sync_succeeds(fake_runner):
    result = runner.invoke(cli.app, ["sync"])

    assert result.exit_code == 0, result.output
    assert "Sync Summary" in result.output
    assert fake_runner.group_named("unit-a") is not None


def test_sync_single_phase(fake_runner):
    result = runner.invoke(cli.app, ["sync", "--phase", "units"])

    assert result.exit_code == 0, result.output
    assert fake_runner.group_named("admin") is None


def test_sync_partial_failure_exit_code(fake_runner, directory):
    directory.failing_groups.add(DIRECTORY_ADMIN_GROUP)

    result = runner.invoke(cli.app, ["sync"])

    assert result.exit_code == 1


def test_sync_unknown_phase_is_config_error(fake_runner):
    result = runner.invoke(cli.app, ["sync", "--phase", "everything"])

    assert result.exit_code == 2


def test_missing_configuration_exit_code(cli_env):
    cli_env.delenv("OUTLINE_API_TOKEN")

    result = runner.invoke(cli.app, ["sync"])

    assert result.exit_code == 2
    assert "api_token" in result.output


def test_verify(fake_runner):
    result = runner.invoke(cli.app, ["verify"])

    assert result.exit_code == 0, result.output
    assert "Connected" in result.output


def test_config_show_masks_secrets(cli_env):
    result = runner.invoke(cli.app, ["config-show"])

    assert result.exit_code == 0, result.output
    assert "outline-secret" not in result.output
    assert "directory-secret" not in result.output
    assert "outl..." in result.output
