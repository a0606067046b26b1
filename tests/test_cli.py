import json
import logging

import pytest
from click.testing import CliRunner

from conftest import AUTHOR, CHANNEL
from voiceinbox import repository
from voiceinbox.cli import cli, print_result
from voiceinbox.db import connect_db
from voiceinbox.lock import FileLock
from voiceinbox.models import ItemRecord
from voiceinbox.result import RunResult


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger("voiceinbox")
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return {
        "DISCORD_BOT_TOKEN": "bot-token",
        "DISCORD_API_BASE_URL": "http://127.0.0.1:9/api/v10",
        "VOICE_INBOX_CHANNEL_ID": CHANNEL,
        "VOICE_INBOX_ALLOWED_AUTHOR_IDS": AUTHOR,
        "OBSIDIAN_API_KEY": "obsidian-key",
        "STATE_DB_PATH": str(tmp_path / "state" / "state.db"),
        "AUDIO_STORE_DIR": str(tmp_path / "audio"),
        "LOG_DIR": str(tmp_path / "logs"),
        "MAX_RETRY_ATTEMPTS": "3",
    }


def seed_failed(db_path, item_id="1001", attempts=3):
    conn = connect_db(db_path)
    try:
        repository.upsert_pending(conn, ItemRecord(
            item_id=item_id, channel_id=CHANNEL, author_id=AUTHOR,
            attachment_id="a1", attachment_url="https://cdn.example.com/a1.ogg",
        ))
        repository.mark_failed(conn, item_id, "whisper failed", attempts, None)
    finally:
        conn.close()


def test_status_json_on_empty_db(env):
    result = CliRunner().invoke(cli, ["status", "--json"], env=env)
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["command"] == "status"
    assert payload["data"]["summary"]["total"] == 0


def test_config_error_exits_before_state(env, tmp_path):
    env = {**env, "DISCORD_BOT_TOKEN": None, "OBSIDIAN_API_KEY": None}
    result = CliRunner().invoke(cli, ["status"], env=env)
    assert result.exit_code == 1
    assert "DISCORD_BOT_TOKEN is required" in result.output
    assert not (tmp_path / "state" / "state.db").exists()


def test_poll_requires_once(env):
    result = CliRunner().invoke(cli, ["poll"], env=env)
    assert result.exit_code == 1
    assert "--once" in result.output


def test_poll_with_lock_held_fails_fast(env):
    with FileLock(env["STATE_DB_PATH"] + ".lock"):
        result = CliRunner().invoke(cli, ["poll", "--once", "--json"], env=env)
    assert result.exit_code == 1
    assert "lock already held" in result.output


def test_status_shows_permanent_failures(env):
    seed_failed(env["STATE_DB_PATH"])
    result = CliRunner().invoke(cli, ["status", "--json"], env=env)
    summary = json.loads(result.stdout)["data"]["summary"]
    assert summary["permanent_failed"] == 1
    assert summary["permanent_failures"][0]["last_error"] == "whisper failed"


def test_list_and_requeue(env):
    seed_failed(env["STATE_DB_PATH"])
    runner = CliRunner()

    listed = runner.invoke(cli, ["list", "--status", "failed"], env=env)
    assert "1001" in listed.output
    assert "attempts=3/3" in listed.output

    requeued = runner.invoke(cli, ["requeue", "1001"], env=env)
    assert requeued.exit_code == 0
    assert "Re-queued item 1001" in requeued.output

    missing = runner.invoke(cli, ["requeue", "999"], env=env)
    assert missing.exit_code == 1


def test_list_empty(env):
    result = CliRunner().invoke(cli, ["list"], env=env)
    assert result.exit_code == 0
    assert "No items." in result.output


def test_print_result_redacts_errors(capsys):
    res = RunResult(command="poll", failed=1, errors=["discord GET failed: Authorization: Bot abc.def"])
    print_result(res, as_json=False)
    captured = capsys.readouterr()
    assert "command=poll" in captured.out
    assert "abc.def" not in captured.err
    assert "Bot [REDACTED]" in captured.err


def test_print_result_json_redacts(capsys):
    res = RunResult(command="retry", run_id="r1", succeeded=1, failed=1, errors=["Bearer xyz"])
    print_result(res, as_json=True)
    payload = json.loads(capsys.readouterr().out)
    assert payload["errors"] == ["Bearer [REDACTED]"]
    assert payload["run_id"] == "r1"


def test_bad_log_level_is_a_config_error(env):
    result = CliRunner().invoke(cli, ["status"], env={**env, "LOG_LEVEL": "VERBOSE"})
    assert result.exit_code == 1
    assert "LOG_LEVEL must be one of" in result.output
