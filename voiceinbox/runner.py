import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from . import repository
from .config import Config
from .errors import ConfigError, DocumentStoreError, LockHeldError, PathOutsideRootError, StoreError, VoiceInboxError
from .journal import EntryInput, build_entry, contains_marker, journal_path, jump_url, new_journal_content
from .lock import FileLock
from .models import Attachment, Candidate, CandidateKind, ItemRecord, SourceItem, Status
from .repository import LAST_SEEN_KEY
from .result import RunResult
from .retry import next_retry_at
from .selector import fallback_group_id, max_item_id, select_candidates
from .utils import Deadline, days_ago, to_iso, utc_now

log = logging.getLogger(__name__)

# Upper bounds for a single external call; the command deadline may cut them shorter.
REQUEST_TIMEOUT = 30
DOWNLOAD_TIMEOUT = 300
NORMALIZE_TIMEOUT = 300


@dataclass
class Outcome:
    succeeded: bool = False
    requeued: bool = False
    error: Optional[str] = None


@dataclass
class Produced:
    journal_path: str
    audio_path: Optional[str]
    transcript_path: Optional[str]
    jump_url: str


def remove_within(path: str, root: Path):
    """Delete `path` if it resolves inside `root`. An already-missing file counts as removed."""
    target = Path(path).expanduser().resolve()
    try:
        target.relative_to(root)
    except ValueError:
        raise PathOutsideRootError(f"path {target} is outside root {root}")
    target.unlink(missing_ok=True)


def candidate_from_record(rec: ItemRecord) -> Candidate:
    item = SourceItem(
        id=rec.item_id,
        channel_id=rec.channel_id,
        author_id=rec.author_id,
        text=rec.message_text,
    )
    attachment = Attachment(
        id=rec.attachment_id,
        url=rec.attachment_url,
        filename=rec.attachment_filename,
        content_type=rec.content_type,
    )
    return Candidate(item=item, attachment=attachment, kind=rec.kind, jump_url=rec.jump_url or "")


def record_for(c: Candidate) -> ItemRecord:
    return ItemRecord(
        item_id=c.item.id,
        channel_id=c.item.channel_id,
        author_id=c.item.author_id,
        attachment_id=c.attachment.id,
        attachment_url=c.attachment.url,
        attachment_filename=c.attachment.filename,
        content_type=c.attachment.content_type,
        message_text=c.item.text,
        jump_url=c.jump_url,
    )


class Runner:
    """
    Drives one bounded command (doctor / poll / retry / cleanup / status)
    against the state DB and the external collaborators.

    source: fetch_messages, get_channel, acknowledge, download_attachment, me
    vault:  file_exists, create_file, append_file, read_file, health
    media:  normalize, transcribe
    """

    def __init__(self, cfg: Config, conn, source, vault, media, clock: Callable = utc_now):
        self.cfg = cfg
        self.conn = conn
        self.source = source
        self.vault = vault
        self.media = media
        self.clock = clock
        self.store_dir = Path(cfg.audio_store_dir).expanduser().resolve()

    # ---------- Commands ----------
    def doctor(self, deadline: Deadline) -> RunResult:
        result = RunResult(command="doctor")
        checks = []

        def check(name: str, fn: Callable[[], str]):
            try:
                detail = fn()
            except VoiceInboxError as e:
                checks.append({"name": name, "pass": False, "detail": str(e)})
                result.add_error(f"{name}: {e}")
                return
            checks.append({"name": name, "pass": True, "detail": detail})

        check("whisper_bin", lambda: _check_executable(self.cfg.whisper_bin))
        check("ffmpeg_bin", lambda: _check_executable(self.cfg.ffmpeg_bin))
        check("db_writable", lambda: self._touch_health_check())
        check("discord_api", lambda: self._check_discord(deadline))
        check("obsidian_api", lambda: self._check_obsidian(deadline))

        result.data["checks"] = checks
        return result.finalize()

    def poll_once(self, deadline: Deadline) -> RunResult:
        return self._run_locked("poll", lambda result: self._poll(result, deadline))

    def retry(self, deadline: Deadline) -> RunResult:
        return self._run_locked("retry", lambda result: self._retry(result, deadline))

    def cleanup(self, deadline: Deadline) -> RunResult:
        return self._run_locked("cleanup", lambda result: self._cleanup(result, deadline))

    def status(self) -> RunResult:
        result = RunResult(command="status")
        try:
            result.data["summary"] = repository.summary(self.conn, self.clock(), self.cfg.max_retry_attempts)
        except StoreError as e:
            result.add_error(str(e))
        return result.finalize()

    # ---------- Run scaffolding ----------
    def _run_locked(self, command: str, body: Callable[[RunResult], None]) -> RunResult:
        result = RunResult(command=command)
        try:
            with FileLock(self.cfg.lock_file_path):
                result.run_id = repository.begin_run(self.conn, command, self.clock())
                try:
                    body(result)
                except VoiceInboxError as e:
                    log.error("%s aborted: %s", command, e)
                    result.add_error(str(e))
                finally:
                    repository.finish_run(
                        self.conn, result.run_id, result.processed, result.succeeded, result.failed
                    )
        except LockHeldError as e:
            log.warning("%s not started: %s", command, e)
            result.add_error(str(e))
        except StoreError as e:
            log.error("%s run bookkeeping failed: %s", command, e)
            result.add_error(str(e))

        result.finalize()
        log.info(
            "%s finished run=%s processed=%d succeeded=%d failed=%d requeued=%d skipped=%d",
            command, result.run_id, result.processed, result.succeeded,
            result.failed, result.requeued, result.skipped,
        )
        return result

    def _tally(self, result: RunResult, item_id: str, outcome: Outcome, label: str = ""):
        if outcome.error is None:
            result.succeeded += 1
            return
        if outcome.requeued:
            result.requeued += 1
        log.warning("Item %s%s failed: %s", item_id, label, outcome.error)
        result.add_error(f"message {item_id}{label}: {outcome.error}")

    # ---------- Poll ----------
    def _poll(self, result: RunResult, deadline: Deadline):
        last_seen = repository.get_kv(self.conn, LAST_SEEN_KEY) or ""
        items = self.source.fetch_messages(
            self.cfg.channel_id, last_seen, self.cfg.fetch_limit,
            timeout=deadline.remaining(REQUEST_TIMEOUT),
        )
        max_seen = max_item_id(items, last_seen)
        candidates = select_candidates(items, self.cfg.allowed_author_ids)
        log.info("Fetched %d items after %r, %d candidates", len(items), last_seen, len(candidates))
        self._resolve_jump_urls(candidates, items, deadline)

        for c in candidates:
            self._poll_candidate(result, c, deadline)

        # every fetched id counts, including ones the selector dropped
        if max_seen and max_seen != last_seen:
            try:
                repository.set_kv(self.conn, LAST_SEEN_KEY, max_seen)
            except StoreError as e:
                result.add_error(f"update {LAST_SEEN_KEY}: {e}")

    def _resolve_jump_urls(self, candidates: List[Candidate], items: List[SourceItem], deadline: Deadline):
        missing = [c for c in candidates if not c.jump_url]
        if not missing:
            return
        guild_id = fallback_group_id(items)
        if not guild_id:
            try:
                guild_id = self.source.get_channel(self.cfg.channel_id, timeout=deadline.remaining(REQUEST_TIMEOUT))
            except VoiceInboxError as e:
                log.warning("Could not resolve guild for jump links: %s", e)
                return
        if guild_id:
            for c in missing:
                c.jump_url = jump_url(guild_id, c.item.channel_id, c.item.id)

    def _poll_candidate(self, result: RunResult, c: Candidate, deadline: Deadline):
        item_id = c.item.id
        try:
            existing = repository.get_item(self.conn, item_id)
            if existing and existing.status == Status.DONE:
                result.skipped += 1
                return
            repository.upsert_pending(self.conn, record_for(c))
        except StoreError as e:
            result.processed += 1
            result.add_error(f"message {item_id} lookup: {e}")
            return

        result.processed += 1
        try:
            outcome = self._process(c, existing.attempts if existing else 0, deadline)
        except StoreError as e:
            outcome = Outcome(error=str(e))
        self._tally(result, item_id, outcome)

    # ---------- Retry ----------
    def _retry(self, result: RunResult, deadline: Deadline):
        due = repository.list_retry_candidates(self.conn, self.clock(), self.cfg.fetch_limit)
        log.info("%d items due for retry", len(due))
        for rec in due:
            if rec.status == Status.FAILED and rec.attempts >= self.cfg.max_retry_attempts:
                result.skipped += 1
                continue
            result.processed += 1
            try:
                if rec.status == Status.REACTION_PENDING:
                    outcome = self._retry_acknowledge(rec, deadline)
                else:
                    outcome = self._process(candidate_from_record(rec), rec.attempts, deadline)
            except StoreError as e:
                outcome = Outcome(error=str(e))
            self._tally(result, rec.item_id, outcome, " retry")

    def _retry_acknowledge(self, rec: ItemRecord, deadline: Deadline) -> Outcome:
        try:
            self.source.acknowledge(rec.channel_id, rec.item_id, timeout=deadline.remaining(REQUEST_TIMEOUT))
        except VoiceInboxError as e:
            attempts = rec.attempts + 1
            if attempts >= self.cfg.max_retry_attempts:
                repository.mark_failed(self.conn, rec.item_id, str(e), attempts, None)
                return Outcome(error=f"reaction retry exhausted: {e}")
            repository.mark_reaction_pending(
                self.conn, rec.item_id, str(e), attempts, self._next_retry(attempts),
                rec.journal_path, rec.audio_path, rec.transcript_path, rec.jump_url,
            )
            return Outcome(requeued=True, error=f"reaction retry: {e}")

        repository.mark_done(
            self.conn, rec.item_id, rec.journal_path or "", rec.audio_path, rec.transcript_path, rec.jump_url
        )
        return Outcome(succeeded=True)

    # ---------- Per-item processing ----------
    def _process(self, c: Candidate, previous_attempts: int, deadline: Deadline) -> Outcome:
        item = c.item
        try:
            produced = self._produce(c, deadline)
        except (VoiceInboxError, OSError) as e:
            # local artifact work (mkdir, wav removal) raises plain OSError
            return self._schedule_failure(item.id, previous_attempts, e)

        try:
            self.source.acknowledge(item.channel_id, item.id, timeout=deadline.remaining(REQUEST_TIMEOUT))
        except VoiceInboxError as e:
            # Content is already in the journal; only the acknowledgment needs redoing.
            attempts = previous_attempts + 1
            repository.mark_reaction_pending(
                self.conn, item.id, str(e), attempts, self._next_retry(attempts),
                produced.journal_path, produced.audio_path, produced.transcript_path, produced.jump_url,
            )
            return Outcome(requeued=True, error=f"reaction failed: {e}")

        repository.mark_done(
            self.conn, item.id, produced.journal_path, produced.audio_path,
            produced.transcript_path, produced.jump_url,
        )
        log.info("Item %s done (%s)", item.id, c.kind.value)
        return Outcome(succeeded=True)

    def _produce(self, c: Candidate, deadline: Deadline) -> Produced:
        """download -> normalize -> transcribe -> ensure journal -> idempotent append."""
        now = self.clock().astimezone()
        item, att = c.item, c.attachment
        link = c.jump_url or (jump_url(item.guild_id, item.channel_id, item.id) if item.guild_id else "")
        audio_path = transcript_path = None
        audio_file = ""

        if c.kind == CandidateKind.AUDIO:
            subdir = self.store_dir / now.strftime("%Y/%m/%d")
            prefix = f"{item.id}_{att.id}"
            orig = subdir / f"{prefix}.orig"
            wav = subdir / f"{prefix}.wav"

            self.source.download_attachment(att.url, orig, timeout=deadline.remaining(DOWNLOAD_TIMEOUT))
            self.media.normalize(orig, wav, timeout=deadline.remaining(NORMALIZE_TIMEOUT))
            tx = self.media.transcribe(
                wav, subdir / "transcripts",
                timeout=deadline.remaining(self.cfg.transcribe_timeout_seconds),
            )
            wav.unlink(missing_ok=True)
            text = tx.text
            audio_path, transcript_path = str(orig), str(tx.json_path)
            audio_file = str(orig.relative_to(self.store_dir))
        else:
            text = item.text

        path = journal_path(self.cfg.vault_journal_dir, now)
        if not self.vault.file_exists(path, timeout=deadline.remaining(REQUEST_TIMEOUT)):
            self.vault.create_file(path, new_journal_content(now), timeout=deadline.remaining(REQUEST_TIMEOUT))

        content = self.vault.read_file(path, timeout=deadline.remaining(REQUEST_TIMEOUT))
        if contains_marker(content, item.id):
            log.info("Item %s already in %s, not appending again", item.id, path)
        else:
            entry = build_entry(EntryInput(
                now=now,
                transcript=text,
                channel_id=item.channel_id,
                message_id=item.id,
                author_id=item.author_id,
                jump_url=link,
                audio_file=audio_file,
                whisper_model=self.cfg.whisper_model if c.kind == CandidateKind.AUDIO else "",
                processed_at=self.clock().astimezone(),
                kind=c.kind.value,
            ))
            self.vault.append_file(path, entry, timeout=deadline.remaining(REQUEST_TIMEOUT))

        return Produced(journal_path=path, audio_path=audio_path, transcript_path=transcript_path, jump_url=link)

    def _schedule_failure(self, item_id: str, previous_attempts: int, error: Exception) -> Outcome:
        attempts = previous_attempts + 1
        if attempts >= self.cfg.max_retry_attempts:
            repository.mark_failed(self.conn, item_id, str(error), attempts, None)
            log.error("Item %s permanently failed after %d attempts", item_id, attempts)
            return Outcome(error=str(error))
        repository.mark_failed(self.conn, item_id, str(error), attempts, self._next_retry(attempts))
        return Outcome(requeued=True, error=str(error))

    def _next_retry(self, attempts: int):
        return next_retry_at(self.clock(), attempts, self.cfg.retry_base_seconds, self.cfg.retry_max_seconds)

    # ---------- Cleanup ----------
    def _cleanup(self, result: RunResult, deadline: Deadline):
        now = self.clock()
        sweeps = (
            ("audio", "audio_path", self.cfg.audio_retention_days,
             repository.list_done_with_audio_before, repository.clear_audio_path),
            ("transcript", "transcript_path", self.cfg.transcript_retention_days,
             repository.list_done_with_transcript_before, repository.clear_transcript_path),
        )
        for label, attr, days, list_rows, clear_path in sweeps:
            removed = 0
            try:
                rows = list_rows(self.conn, days_ago(now, days))
            except StoreError as e:
                result.add_error(f"list {label} cleanup rows: {e}")
                rows = []
            for rec in rows:
                path = getattr(rec, attr)
                if not path:
                    continue
                deadline.remaining()
                result.processed += 1
                try:
                    remove_within(path, self.store_dir)
                    clear_path(self.conn, rec.item_id)
                except (VoiceInboxError, OSError) as e:
                    result.add_error(f"remove {label} {path}: {e}")
                    continue
                removed += 1
                result.succeeded += 1
            result.data[f"{label}_removed"] = removed
            log.info("Removed %d %s artifacts older than %d days", removed, label, days)

    # ---------- Doctor helpers ----------
    def _touch_health_check(self) -> str:
        repository.set_kv(self.conn, "doctor_last_run", to_iso(self.clock()))
        return "ok"

    def _check_discord(self, deadline: Deadline) -> str:
        me = self.source.me(timeout=deadline.remaining(REQUEST_TIMEOUT))
        return f"authenticated as {me.get('username', '?')} ({me.get('id', '?')})"

    def _check_obsidian(self, deadline: Deadline) -> str:
        health = self.vault.health(timeout=deadline.remaining(REQUEST_TIMEOUT))
        if not health.get("authenticated"):
            raise DocumentStoreError("authenticated=false")
        return "authenticated=true"


def _check_executable(path: str) -> str:
    found = shutil.which(path)
    if not found:
        raise ConfigError(f"{path} not found or not executable")
    return found
