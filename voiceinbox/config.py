import os
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError

_APP_DIR = "~/.local/share/voice-inbox"

DEFAULT_CONFIG = {
    "DISCORD_API_BASE_URL": "https://discord.com/api/v10",
    "DISCORD_FETCH_LIMIT": "100",
    "WHISPER_BIN": "whisper",
    "WHISPER_MODEL": "large-v3-turbo",
    "WHISPER_LANGUAGE": "ja",
    "FFMPEG_BIN": "ffmpeg",
    "OBSIDIAN_BASE_URL": "https://127.0.0.1:27124",
    "OBSIDIAN_AUTH_HEADER": "Authorization",
    "OBSIDIAN_VERIFY_TLS": "false",
    "VAULT_JOURNAL_DIR": "01_Projects/Journal",
    "AUDIO_RETENTION_DAYS": "14",
    "TRANSCRIPT_RETENTION_DAYS": "7",
    "MAX_RETRY_ATTEMPTS": "8",
    "RETRY_BASE_SECONDS": "300",
    "RETRY_MAX_SECONDS": "86400",
    "TRANSCRIBE_TIMEOUT_SECONDS": "600",
    "STATE_DB_PATH": f"{_APP_DIR}/state.db",
    "AUDIO_STORE_DIR": f"{_APP_DIR}/audio",
    "LOG_DIR": f"{_APP_DIR}/logs",
    "LOG_LEVEL": "INFO",
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Per-command deadlines, seconds
COMMAND_TIMEOUTS = {
    "doctor": 30,
    "poll": 30 * 60,
    "retry": 30 * 60,
    "cleanup": 10 * 60,
    "status": 15,
}


@dataclass(frozen=True)
class Config:
    discord_bot_token: str
    discord_api_base_url: str
    channel_id: str
    allowed_author_ids: FrozenSet[str]
    fetch_limit: int
    whisper_bin: str
    whisper_model: str
    whisper_language: str
    ffmpeg_bin: str
    obsidian_base_url: str
    obsidian_api_key: str
    obsidian_auth_header: str
    obsidian_verify_tls: bool
    vault_journal_dir: str
    audio_retention_days: int
    transcript_retention_days: int
    max_retry_attempts: int
    retry_base_seconds: int
    retry_max_seconds: int
    transcribe_timeout_seconds: int
    state_db_path: Path
    audio_store_dir: Path
    log_dir: Path
    log_level: str = "INFO"

    @property
    def lock_file_path(self) -> Path:
        return self.state_db_path.with_name(self.state_db_path.name + ".lock")


def _parse_id_list(raw: str) -> Tuple[str, ...]:
    out = []
    for part in raw.split(","):
        part = part.strip()
        if part and part not in out:
            out.append(part)
    return tuple(out)


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_config(env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = ".env") -> Config:
    """
    Build a Config from the environment (plus a .env file when present).
    All validation problems are collected into a single ConfigError.
    """
    if env is None:
        if dotenv_path:
            load_dotenv(dotenv_path, override=False)
        env = os.environ

    problems = []

    def get(key: str) -> str:
        value = (env.get(key) or "").strip()
        return value or DEFAULT_CONFIG.get(key, "")

    def get_int(key: str) -> int:
        raw = get(key)
        try:
            return int(raw)
        except ValueError:
            problems.append(f"{key} must be an integer (got {raw!r})")
            return 0

    def get_path(key: str) -> Path:
        return Path(get(key)).expanduser()

    cfg = Config(
        discord_bot_token=get("DISCORD_BOT_TOKEN"),
        discord_api_base_url=get("DISCORD_API_BASE_URL").rstrip("/"),
        channel_id=get("VOICE_INBOX_CHANNEL_ID"),
        allowed_author_ids=frozenset(_parse_id_list(get("VOICE_INBOX_ALLOWED_AUTHOR_IDS"))),
        fetch_limit=get_int("DISCORD_FETCH_LIMIT"),
        whisper_bin=get("WHISPER_BIN"),
        whisper_model=get("WHISPER_MODEL"),
        whisper_language=get("WHISPER_LANGUAGE"),
        ffmpeg_bin=get("FFMPEG_BIN"),
        obsidian_base_url=get("OBSIDIAN_BASE_URL").rstrip("/"),
        obsidian_api_key=get("OBSIDIAN_API_KEY"),
        obsidian_auth_header=get("OBSIDIAN_AUTH_HEADER"),
        obsidian_verify_tls=_parse_bool(get("OBSIDIAN_VERIFY_TLS")),
        vault_journal_dir=get("VAULT_JOURNAL_DIR").strip("/"),
        audio_retention_days=get_int("AUDIO_RETENTION_DAYS"),
        transcript_retention_days=get_int("TRANSCRIPT_RETENTION_DAYS"),
        max_retry_attempts=get_int("MAX_RETRY_ATTEMPTS"),
        retry_base_seconds=get_int("RETRY_BASE_SECONDS"),
        retry_max_seconds=get_int("RETRY_MAX_SECONDS"),
        transcribe_timeout_seconds=get_int("TRANSCRIBE_TIMEOUT_SECONDS"),
        state_db_path=get_path("STATE_DB_PATH"),
        audio_store_dir=get_path("AUDIO_STORE_DIR"),
        log_dir=get_path("LOG_DIR"),
        log_level=get("LOG_LEVEL").upper(),
    )
    problems.extend(validate(cfg))
    if problems:
        raise ConfigError("; ".join(problems))
    return cfg


def validate(cfg: Config) -> list:
    problems = []
    if not cfg.discord_bot_token:
        problems.append("DISCORD_BOT_TOKEN is required")
    if not cfg.channel_id:
        problems.append("VOICE_INBOX_CHANNEL_ID is required")
    if not cfg.allowed_author_ids:
        problems.append("VOICE_INBOX_ALLOWED_AUTHOR_IDS must include at least one author ID")
    if not cfg.obsidian_api_key:
        problems.append("OBSIDIAN_API_KEY is required")
    if not cfg.vault_journal_dir:
        problems.append("VAULT_JOURNAL_DIR must not be empty")
    if cfg.fetch_limit <= 0:
        problems.append("DISCORD_FETCH_LIMIT must be > 0")
    if cfg.audio_retention_days <= 0 or cfg.transcript_retention_days <= 0:
        problems.append("AUDIO_RETENTION_DAYS and TRANSCRIPT_RETENTION_DAYS must be > 0")
    if cfg.max_retry_attempts <= 0:
        problems.append("MAX_RETRY_ATTEMPTS must be > 0")
    if cfg.retry_base_seconds <= 0 or cfg.retry_max_seconds <= 0:
        problems.append("RETRY_BASE_SECONDS and RETRY_MAX_SECONDS must be > 0")
    elif cfg.retry_base_seconds > cfg.retry_max_seconds:
        problems.append("RETRY_BASE_SECONDS must be <= RETRY_MAX_SECONDS")
    if cfg.transcribe_timeout_seconds <= 0:
        problems.append("TRANSCRIBE_TIMEOUT_SECONDS must be > 0")
    if cfg.log_level not in LOG_LEVELS:
        problems.append(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
    return problems
