from datetime import timedelta

import pytest

from conftest import AUTHOR, CHANNEL
from voiceinbox import repository
from voiceinbox.db import connect_db
from voiceinbox.errors import DataIntegrityError
from voiceinbox.models import ItemRecord, Status
from voiceinbox.utils import utc_now


def record(item_id="1001", **overrides):
    fields = dict(
        item_id=item_id, channel_id=CHANNEL, author_id=AUTHOR,
        attachment_id=f"a{item_id}", attachment_url=f"https://cdn.example.com/{item_id}.ogg",
        attachment_filename="voice.ogg", content_type="audio/ogg",
    )
    fields.update(overrides)
    return ItemRecord(**fields)


def test_schema_version_written(conn):
    assert repository.get_kv(conn, "schema_version") == "1"


def test_state_survives_reconnect(cfg, conn):
    repository.upsert_pending(conn, record())
    repository.set_kv(conn, repository.LAST_SEEN_KEY, "1001")
    run_id = repository.begin_run(conn, "poll")
    conn.close()

    again = connect_db(cfg.state_db_path)
    try:
        assert repository.get_item(again, "1001").status == Status.PENDING
        assert repository.get_kv(again, repository.LAST_SEEN_KEY) == "1001"
        assert repository.get_run(again, run_id).command == "poll"
    finally:
        again.close()


def test_upsert_creates_pending(conn):
    repository.upsert_pending(conn, record())
    rec = repository.get_item(conn, "1001")
    assert rec.status == Status.PENDING
    assert rec.attempts == 0
    assert rec.created_at is not None


def test_upsert_preserves_progress(conn):
    repository.upsert_pending(conn, record())
    repository.mark_failed(conn, "1001", "ffmpeg failed", 2, utc_now())

    repository.upsert_pending(conn, record(attachment_filename="renamed.ogg"))

    rec = repository.get_item(conn, "1001")
    assert rec.status == Status.FAILED
    assert rec.attempts == 2
    assert rec.attachment_filename == "renamed.ogg"


def test_mark_done_clears_schedule(conn):
    repository.upsert_pending(conn, record())
    repository.mark_reaction_pending(conn, "1001", "429", 1, utc_now(), "J/d.md", "/a.orig", "/t.json", "")
    repository.mark_done(conn, "1001", "J/d.md", "/a.orig", "/t.json", "")

    rec = repository.get_item(conn, "1001")
    assert rec.status == Status.DONE
    assert rec.next_retry_at is None
    assert rec.last_error is None
    assert rec.jump_url is None


def test_done_cannot_move_back_to_failed(conn):
    repository.upsert_pending(conn, record())
    repository.mark_done(conn, "1001", "J/d.md", None, None, None)
    with pytest.raises(DataIntegrityError):
        repository.mark_failed(conn, "1001", "late failure", 1, None)
    assert repository.get_item(conn, "1001").status == Status.DONE


def test_unknown_status_is_integrity_error(conn):
    repository.upsert_pending(conn, record())
    conn.execute("UPDATE items SET status='processing' WHERE item_id='1001'")
    conn.commit()
    with pytest.raises(DataIntegrityError):
        repository.get_item(conn, "1001")


def test_last_error_truncated(conn):
    repository.upsert_pending(conn, record())
    repository.mark_failed(conn, "1001", "x" * 5000, 1, None)
    assert len(repository.get_item(conn, "1001").last_error) == 1000


def test_retry_candidates_due_rules(conn):
    now = utc_now()
    for item_id in ("1", "2", "3", "4", "5"):
        repository.upsert_pending(conn, record(item_id))
    repository.mark_failed(conn, "1", "e", 1, now - timedelta(seconds=1))        # due
    repository.mark_failed(conn, "2", "e", 1, now + timedelta(hours=1))          # not yet
    repository.mark_failed(conn, "3", "e", 8, None)                              # permanent
    repository.mark_reaction_pending(conn, "4", "e", 1, None, "J", None, None, None)  # always due
    repository.mark_reaction_pending(conn, "5", "e", 1, now + timedelta(hours=1), "J", None, None, None)

    due = repository.list_retry_candidates(conn, now)

    assert [r.item_id for r in due] == ["1", "4"]


def test_retry_candidates_oldest_updated_first(conn):
    now = utc_now()
    for item_id in ("1", "2"):
        repository.upsert_pending(conn, record(item_id))
    repository.mark_failed(conn, "2", "e", 1, now)
    repository.mark_failed(conn, "1", "e", 1, now)
    assert [r.item_id for r in repository.list_retry_candidates(conn, now)] == ["2", "1"]


def test_finish_run_only_once(conn):
    run_id = repository.begin_run(conn, "retry")
    repository.finish_run(conn, run_id, 3, 2, 1)
    repository.finish_run(conn, run_id, 9, 9, 9)
    run = repository.get_run(conn, run_id)
    assert (run.processed_count, run.success_count, run.failed_count) == (3, 2, 1)


def test_run_ids_are_unique(conn):
    assert repository.begin_run(conn, "poll") != repository.begin_run(conn, "poll")


def test_clear_paths(conn):
    repository.upsert_pending(conn, record())
    repository.mark_done(conn, "1001", "J/d.md", "/a.orig", "/t.json", None)
    before = repository.get_item(conn, "1001")

    repository.clear_audio_path(conn, "1001")
    repository.clear_transcript_path(conn, "1001")

    rec = repository.get_item(conn, "1001")
    assert rec.audio_path is None and rec.transcript_path is None
    assert rec.journal_path == "J/d.md"
    assert rec.updated_at == before.updated_at


def test_summary_counts_permanent_failures(conn):
    for item_id in ("1", "2", "3"):
        repository.upsert_pending(conn, record(item_id))
    repository.mark_failed(conn, "1", "gone for good", 3, None)
    repository.mark_failed(conn, "2", "e", 1, utc_now() - timedelta(seconds=5))
    repository.set_kv(conn, repository.LAST_SEEN_KEY, "3")

    s = repository.summary(conn, utc_now(), max_attempts=3)

    assert s["total"] == 3
    assert s["by_status"] == {"failed": 2, "pending": 1}
    assert s["retry_due"] == 1
    assert s["permanent_failed"] == 1
    assert s["permanent_failures"][0]["item_id"] == "1"
    assert s["last_seen_message_id"] == "3"


def test_requeue_resets_failed_item(conn):
    repository.upsert_pending(conn, record())
    repository.mark_failed(conn, "1001", "e", 8, None)

    assert repository.requeue_item(conn, "1001")

    rec = repository.get_item(conn, "1001")
    assert rec.attempts == 0
    assert rec.next_retry_at is not None
    assert [r.item_id for r in repository.list_retry_candidates(conn, utc_now())] == ["1001"]


def test_requeue_ignores_other_states(conn):
    repository.upsert_pending(conn, record())
    assert not repository.requeue_item(conn, "1001")
    assert not repository.requeue_item(conn, "missing")
