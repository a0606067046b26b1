import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from .errors import StoreError
from .models import ItemRecord, RunRecord, Status, check_transition
from .utils import now_iso, parse_iso, to_iso, trim_error, utc_now

LAST_SEEN_KEY = "last_seen_message_id"

ITEM_COLUMNS = """
    item_id, channel_id, author_id, attachment_id, attachment_url, attachment_filename,
    content_type, message_text, audio_path, transcript_path, status, attempts, next_retry_at,
    last_error, journal_path, jump_url, created_at, updated_at
"""

# failed rows need a due schedule; reaction_pending rows with no schedule are always due
_DUE_CLAUSE = """
    (status = 'reaction_pending' AND (next_retry_at IS NULL OR next_retry_at <= :now))
    OR (status = 'failed' AND next_retry_at IS NOT NULL AND next_retry_at <= :now)
"""


@contextmanager
def _db_errors(action: str):
    try:
        yield
    except sqlite3.Error as e:
        raise StoreError(f"DB error during {action}: {e}")


def _row_to_item(row: sqlite3.Row) -> ItemRecord:
    return ItemRecord(
        item_id=row["item_id"],
        channel_id=row["channel_id"],
        author_id=row["author_id"],
        attachment_id=row["attachment_id"],
        attachment_url=row["attachment_url"],
        attachment_filename=row["attachment_filename"] or "",
        content_type=row["content_type"] or "",
        message_text=row["message_text"] or "",
        audio_path=row["audio_path"],
        transcript_path=row["transcript_path"],
        status=Status.parse(row["status"]),
        attempts=row["attempts"],
        next_retry_at=parse_iso(row["next_retry_at"]),
        last_error=row["last_error"],
        journal_path=row["journal_path"],
        jump_url=row["jump_url"],
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
    )


def _current_status(conn, item_id: str) -> Optional[Status]:
    row = conn.execute("SELECT status FROM items WHERE item_id=?", (item_id,)).fetchone()
    if row is None:
        return None
    return Status.parse(row["status"])


def _write_status(conn, item_id: str, target: Status, assignments: str, params: tuple):
    """Apply an UPDATE that moves an item into `target`, after checking the transition."""
    with _db_errors(f"mark {target.value} {item_id}"):
        current = _current_status(conn, item_id)
        if current is None:
            raise StoreError(f"Item {item_id} not found")
        check_transition(current, target)
        with conn:
            conn.execute(
                f"UPDATE items SET status=?, {assignments}, updated_at=? WHERE item_id=?",
                (target.value, *params, now_iso(), item_id),
            )


def _nullable(value: Optional[str]) -> Optional[str]:
    return value or None


# ---------- KV ----------
def get_kv(conn, key: str) -> Optional[str]:
    with _db_errors(f"read kv {key}"):
        row = conn.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
    return row["value"] if row else None


def set_kv(conn, key: str, value: str):
    with _db_errors(f"write kv {key}"), conn:
        conn.execute(
            "INSERT INTO kv(key, value, updated_at) VALUES(?,?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
            (key, str(value), now_iso()),
        )


# ---------- Runs ----------
def begin_run(conn, command: str, started_at: Optional[datetime] = None) -> str:
    run_id = secrets.token_hex(12)
    with _db_errors("begin run"), conn:
        conn.execute(
            "INSERT INTO runs(run_id, command, started_at) VALUES(?,?,?)",
            (run_id, command, to_iso(started_at or utc_now())),
        )
    return run_id


def finish_run(conn, run_id: str, processed: int, succeeded: int, failed: int):
    # A finished run is an audit record; only the first finish sticks.
    with _db_errors("finish run"), conn:
        conn.execute(
            """UPDATE runs
               SET finished_at=?, processed_count=?, success_count=?, failed_count=?
               WHERE run_id=? AND finished_at IS NULL""",
            (now_iso(), processed, succeeded, failed, run_id),
        )


def get_run(conn, run_id: str) -> Optional[RunRecord]:
    with _db_errors("read run"):
        row = conn.execute("SELECT * FROM runs WHERE run_id=?", (run_id,)).fetchone()
    if not row:
        return None
    return RunRecord(
        run_id=row["run_id"],
        command=row["command"],
        started_at=parse_iso(row["started_at"]),
        finished_at=parse_iso(row["finished_at"]),
        processed_count=row["processed_count"],
        success_count=row["success_count"],
        failed_count=row["failed_count"],
    )


# ---------- Items: upsert / transitions ----------
def upsert_pending(conn, rec: ItemRecord):
    """
    Create the item as pending, or refresh its source metadata.
    Status, attempts and produced paths of an existing row are left alone.
    """
    ts = now_iso()
    with _db_errors(f"upsert {rec.item_id}"), conn:
        conn.execute(
            """INSERT INTO items
                   (item_id, channel_id, author_id, attachment_id, attachment_url,
                    attachment_filename, content_type, message_text, status, attempts,
                    jump_url, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
               ON CONFLICT(item_id) DO UPDATE SET
                   channel_id=excluded.channel_id,
                   author_id=excluded.author_id,
                   attachment_id=excluded.attachment_id,
                   attachment_url=excluded.attachment_url,
                   attachment_filename=excluded.attachment_filename,
                   content_type=excluded.content_type,
                   message_text=excluded.message_text,
                   jump_url=COALESCE(excluded.jump_url, items.jump_url),
                   updated_at=excluded.updated_at""",
            (
                rec.item_id, rec.channel_id, rec.author_id, rec.attachment_id, rec.attachment_url,
                rec.attachment_filename, rec.content_type, rec.message_text, Status.PENDING.value,
                _nullable(rec.jump_url), ts, ts,
            ),
        )


def get_item(conn, item_id: str) -> Optional[ItemRecord]:
    with _db_errors(f"read {item_id}"):
        row = conn.execute(f"SELECT {ITEM_COLUMNS} FROM items WHERE item_id=?", (item_id,)).fetchone()
    return _row_to_item(row) if row else None


def mark_done(conn, item_id: str, journal_path: str, audio_path: Optional[str],
              transcript_path: Optional[str], jump_url: Optional[str]):
    _write_status(
        conn, item_id, Status.DONE,
        "journal_path=?, audio_path=?, transcript_path=?, jump_url=?, last_error=NULL, next_retry_at=NULL",
        (journal_path, _nullable(audio_path), _nullable(transcript_path), _nullable(jump_url)),
    )


def mark_failed(conn, item_id: str, error: str, attempts: int, next_retry_at: Optional[datetime]):
    """next_retry_at=None means the failure is permanent."""
    _write_status(
        conn, item_id, Status.FAILED,
        "attempts=?, last_error=?, next_retry_at=?",
        (attempts, trim_error(error), to_iso(next_retry_at) if next_retry_at else None),
    )


def mark_reaction_pending(conn, item_id: str, error: str, attempts: int, next_retry_at: Optional[datetime],
                          journal_path: Optional[str], audio_path: Optional[str],
                          transcript_path: Optional[str], jump_url: Optional[str]):
    _write_status(
        conn, item_id, Status.REACTION_PENDING,
        "attempts=?, last_error=?, next_retry_at=?, journal_path=?, audio_path=?, transcript_path=?, jump_url=?",
        (
            attempts, trim_error(error), to_iso(next_retry_at) if next_retry_at else None,
            _nullable(journal_path), _nullable(audio_path), _nullable(transcript_path), _nullable(jump_url),
        ),
    )


def requeue_item(conn, item_id: str, now: Optional[datetime] = None) -> bool:
    """Manual reset of a failed item: attempts back to 0 and due immediately."""
    with _db_errors(f"requeue {item_id}"), conn:
        res = conn.execute(
            """UPDATE items SET attempts=0, next_retry_at=?, updated_at=?
               WHERE item_id=? AND status=?""",
            (to_iso(now or utc_now()), now_iso(), item_id, Status.FAILED.value),
        )
    return res.rowcount == 1


# ---------- Queries ----------
def list_retry_candidates(conn, now: datetime, limit: int = 100) -> List[ItemRecord]:
    if limit <= 0:
        limit = 100
    with _db_errors("list retry candidates"):
        rows = conn.execute(
            f"""SELECT {ITEM_COLUMNS} FROM items
                WHERE status IN ('failed', 'reaction_pending') AND ({_DUE_CLAUSE})
                ORDER BY updated_at ASC
                LIMIT :limit""",
            {"now": to_iso(now), "limit": limit},
        ).fetchall()
    return [_row_to_item(r) for r in rows]


def _list_done_with(conn, column: str, cutoff: datetime, limit: int) -> List[ItemRecord]:
    with _db_errors(f"list done items with {column}"):
        rows = conn.execute(
            f"""SELECT {ITEM_COLUMNS} FROM items
                WHERE status='done' AND {column} IS NOT NULL AND updated_at < ?
                ORDER BY updated_at ASC
                LIMIT ?""",
            (to_iso(cutoff), limit),
        ).fetchall()
    return [_row_to_item(r) for r in rows]


def list_done_with_audio_before(conn, cutoff: datetime, limit: int = 1000) -> List[ItemRecord]:
    return _list_done_with(conn, "audio_path", cutoff, limit)


def list_done_with_transcript_before(conn, cutoff: datetime, limit: int = 1000) -> List[ItemRecord]:
    return _list_done_with(conn, "transcript_path", cutoff, limit)


# Clearing a path leaves updated_at alone: both retention sweeps measure age from it.
def clear_audio_path(conn, item_id: str):
    with _db_errors(f"clear audio path {item_id}"), conn:
        conn.execute("UPDATE items SET audio_path=NULL WHERE item_id=?", (item_id,))


def clear_transcript_path(conn, item_id: str):
    with _db_errors(f"clear transcript path {item_id}"), conn:
        conn.execute("UPDATE items SET transcript_path=NULL WHERE item_id=?", (item_id,))


def list_items(conn, status: Optional[Status] = None) -> List[ItemRecord]:
    with _db_errors("list items"):
        if status:
            rows = conn.execute(
                f"SELECT {ITEM_COLUMNS} FROM items WHERE status=? ORDER BY updated_at ASC",
                (status.value,),
            ).fetchall()
        else:
            rows = conn.execute(f"SELECT {ITEM_COLUMNS} FROM items ORDER BY updated_at ASC").fetchall()
    return [_row_to_item(r) for r in rows]


def summary(conn, now: datetime, max_attempts: int) -> Dict:
    out = {"total": 0, "by_status": {}, "retry_due": 0, "permanent_failed": 0}
    with _db_errors("status summary"):
        for r in conn.execute("SELECT status, COUNT(1) AS c FROM items GROUP BY status"):
            out["by_status"][Status.parse(r["status"]).value] = r["c"]
            out["total"] += r["c"]
        out["retry_due"] = conn.execute(
            f"SELECT COUNT(1) AS c FROM items WHERE status IN ('failed', 'reaction_pending') AND ({_DUE_CLAUSE})",
            {"now": to_iso(now)},
        ).fetchone()["c"]
        permanent = conn.execute(
            "SELECT item_id, attempts, last_error FROM items WHERE status='failed' AND attempts >= ? "
            "ORDER BY updated_at ASC",
            (max_attempts,),
        ).fetchall()
    out["permanent_failed"] = len(permanent)
    out["permanent_failures"] = [
        {"item_id": r["item_id"], "attempts": r["attempts"], "last_error": r["last_error"]} for r in permanent
    ]
    last_seen = get_kv(conn, LAST_SEEN_KEY)
    if last_seen:
        out["last_seen_message_id"] = last_seen
    return out
