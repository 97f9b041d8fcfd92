"""Tests for the localsync command line interface."""

import json

import pytest
from click.testing import CliRunner

from localsync.cli import main


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    """Run the CLI against a fresh DuckDB file without a remote store."""
    for name in ("LOCALSYNC_STORAGE_PATH", "LOCALSYNC_REMOTE_URL", "LOCALSYNC_LOG_LEVEL",
                 "LOCALSYNC_ENABLE_REMOTE", "LOCALSYNC_LEGACY_KEYS", "LOCALSYNC_STORAGE_QUOTA_BYTES"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)

    storage = str(tmp_path / "data.duckdb")

    def invoke(*args):
        return CliRunner().invoke(main, ["--storage", storage, "--log-level", "WARNING", *args])

    return invoke


def test_set_then_get_across_invocations(cli_env):
    result = cli_env("set", "preferences_u1", '{"theme": "dark"}')
    assert result.exit_code == 0, result.output

    result = cli_env("get", "preferences_u1")
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {"theme": "dark"}


def test_get_missing_key_prints_null(cli_env):
    result = cli_env("get", "absent")
    assert result.exit_code == 0
    assert json.loads(result.stdout) is None


def test_set_rejects_invalid_json(cli_env):
    result = cli_env("set", "k", "{not json")
    assert result.exit_code == 2
    assert "not valid JSON" in result.output


def test_set_reports_value_over_quota(cli_env, monkeypatch):
    monkeypatch.setenv("LOCALSYNC_STORAGE_QUOTA_BYTES", "1000")

    result = cli_env("set", "huge", json.dumps("z" * 5000))
    assert result.exit_code == 1
    assert "was not saved" in result.output
    assert json.loads(cli_env("get", "huge").stdout) is None


def test_remove(cli_env):
    cli_env("set", "k", "1")
    assert cli_env("remove", "k").exit_code == 0
    assert json.loads(cli_env("get", "k").stdout) is None


def test_import_and_list_keys(cli_env, tmp_path):
    input_file = tmp_path / "entries.json"
    input_file.write_text(json.dumps({
        "progress_u1": {"completed": ["intro"]},
        "preferences_u1": {"theme": "light"},
        "app_settings": {"language": "en"},
    }))

    result = cli_env("import", str(input_file))
    assert result.exit_code == 0, result.output
    assert "Imported 3 entries" in result.stdout

    result = cli_env("keys")
    assert result.stdout.splitlines() == ["app_settings", "preferences_u1", "progress_u1"]

    result = cli_env("keys", "--prefix", "pre")
    assert result.stdout.splitlines() == ["preferences_u1"]


def test_import_requires_json_object(cli_env, tmp_path):
    input_file = tmp_path / "entries.json"
    input_file.write_text("[1, 2, 3]")

    result = cli_env("import", str(input_file))
    assert result.exit_code == 1
    assert "must contain a JSON object" in result.output


def test_status_reports_health(cli_env):
    result = cli_env("status")
    assert result.exit_code == 0, result.output

    status = json.loads(result.stdout)
    assert status["online"] is True
    assert status["pending_count"] == 0
    assert status["health"] == "healthy"


def test_flush_without_remote_is_skipped(cli_env):
    result = cli_env("flush")
    assert result.exit_code == 0, result.output
    assert "Flush skipped" in result.stdout
