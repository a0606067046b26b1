import json
import logging
import sys

import click

from .clients import DiscordClient, ObsidianClient
from .config import COMMAND_TIMEOUTS, load_config
from .db import connect_db
from .errors import ConfigError, LockHeldError, StoreError
from .lock import FileLock
from .media import MediaTools
from .models import Status
from .repository import list_items, requeue_item
from .result import RunResult
from .runner import Runner
from .utils import Deadline, redact

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(cfg):
    logger = logging.getLogger("voiceinbox")
    logger.setLevel(cfg.log_level)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    stream = logging.StreamHandler(sys.stderr)
    stream.setLevel(logging.WARNING)
    stream.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(stream)

    cfg.log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(cfg.log_dir / "voice-inbox.log", encoding="utf-8")
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(fh)


def print_result(res: RunResult, as_json: bool):
    if as_json:
        payload = res.to_dict()
        payload["errors"] = [redact(e) for e in payload.get("errors", [])]
        if not payload["errors"]:
            payload.pop("errors")
        click.echo(json.dumps(payload, indent=2, default=str, ensure_ascii=False))
        return

    click.echo(
        f"command={res.command} run_id={res.run_id or ''} processed={res.processed} "
        f"succeeded={res.succeeded} failed={res.failed} requeued={res.requeued} "
        f"skipped={res.skipped} duration_ms={res.duration_ms}"
    )
    if res.errors:
        click.secho("errors:", fg="red", err=True)
        for e in res.errors:
            click.secho(f"- {redact(e)}", fg="red", err=True)
    if res.data:
        click.echo(f"data={json.dumps(res.data, default=str, ensure_ascii=False)}")


def _run(ctx, command: str, as_json: bool):
    cfg = ctx.obj
    try:
        conn = connect_db(cfg.state_db_path)
    except StoreError as e:
        click.secho(f"Error: {redact(str(e))}", fg="red", err=True)
        raise SystemExit(1)
    try:
        runner = Runner(
            cfg,
            conn,
            DiscordClient(cfg.discord_bot_token, cfg.discord_api_base_url),
            ObsidianClient(cfg.obsidian_base_url, cfg.obsidian_auth_header, cfg.obsidian_api_key,
                           cfg.obsidian_verify_tls),
            MediaTools(cfg.ffmpeg_bin, cfg.whisper_bin, cfg.whisper_model, cfg.whisper_language),
        )
        deadline = Deadline(COMMAND_TIMEOUTS[command])
        if command == "doctor":
            res = runner.doctor(deadline)
        elif command == "poll":
            res = runner.poll_once(deadline)
        elif command == "retry":
            res = runner.retry(deadline)
        elif command == "cleanup":
            res = runner.cleanup(deadline)
        else:
            res = runner.status()
    finally:
        conn.close()

    print_result(res, as_json)
    raise SystemExit(res.exit_code())


json_option = click.option("--json", "as_json", is_flag=True, help="Output as JSON")


@click.group(help="voice-inbox: Discord voice inbox to Obsidian journal")
@click.pass_context
def cli(ctx):
    # Configuration problems are fatal before any state is touched
    try:
        cfg = load_config()
    except ConfigError as e:
        click.secho(f"config error: {e}", fg="red", err=True)
        raise SystemExit(1)
    cfg.audio_store_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(cfg)
    ctx.obj = cfg


# ---------- Runs ----------
@cli.command("doctor", help="Check binaries, the state DB and both APIs")
@json_option
@click.pass_context
def doctor_cmd(ctx, as_json):
    _run(ctx, "doctor", as_json)


@cli.command("poll", help="Fetch new messages and process them (one cycle)")
@click.option("--once", is_flag=True, help="Run a single poll cycle (required)")
@json_option
@click.pass_context
def poll_cmd(ctx, once, as_json):
    if not once:
        click.secho("poll requires --once; scheduling is done by cron/launchd", fg="red", err=True)
        raise SystemExit(1)
    _run(ctx, "poll", as_json)


@cli.command("retry", help="Re-drive failed and reaction_pending items that are due")
@json_option
@click.pass_context
def retry_cmd(ctx, as_json):
    _run(ctx, "retry", as_json)


@cli.command("cleanup", help="Delete old audio/transcript artifacts of done items")
@json_option
@click.pass_context
def cleanup_cmd(ctx, as_json):
    _run(ctx, "cleanup", as_json)


@cli.command("status", help="Show item counts, due retries and permanent failures")
@json_option
@click.pass_context
def status_cmd(ctx, as_json):
    _run(ctx, "status", as_json)


# ---------- Items ----------
@cli.command("list", help="List stored items")
@click.option("--status", "status", type=click.Choice([s.value for s in Status]), default=None)
@click.pass_context
def list_cmd(ctx, status):
    conn = connect_db(ctx.obj.state_db_path)
    try:
        rows = list_items(conn, Status(status) if status else None)
    finally:
        conn.close()

    if not rows:
        click.echo("No items.")
        return

    for r in rows:
        next_at = r.next_retry_at.isoformat() if r.next_retry_at else "-"
        click.echo(
            f"{r.item_id:>20} | {r.status.value:<16} | attempts={r.attempts}/{ctx.obj.max_retry_attempts} "
            f"| next={next_at} | journal={r.journal_path or '-'} | last_error={redact(r.last_error or '')}"
        )


@cli.command("requeue", help="Reset a failed item so the next retry run picks it up")
@click.argument("item_id")
@click.pass_context
def requeue_cmd(ctx, item_id):
    conn = connect_db(ctx.obj.state_db_path)
    try:
        with FileLock(ctx.obj.lock_file_path):
            ok = requeue_item(conn, item_id)
    except (LockHeldError, StoreError) as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1)
    finally:
        conn.close()

    if not ok:
        click.secho(f"Error: item {item_id} is not in failed state.", fg="red", err=True)
        raise SystemExit(1)
    click.secho(f"Re-queued item {item_id}.", fg="green")


def main():
    cli()
