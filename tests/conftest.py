"""Shared fixtures: temp state DB, config and in-memory collaborators."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from voiceinbox.config import Config
from voiceinbox.db import connect_db
from voiceinbox.errors import DocumentStoreError, NormalizeError, SourceError, TranscribeError
from voiceinbox.media import Transcription
from voiceinbox.models import Attachment, SourceItem
from voiceinbox.runner import Runner
from voiceinbox.selector import compare_ids, sort_items

CHANNEL = "1476388224124325909"
AUTHOR = "968754117885456425"


class Clock:
    def __init__(self, start=None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeSource:
    def __init__(self, items=None, guild_id="42"):
        self.items = list(items or [])
        self.guild_id = guild_id
        self.ack_fail = False
        self.download_fail = False
        self.fetch_fail = False
        self.acks = []
        self.downloads = []
        self.fetch_calls = []

    def me(self, timeout):
        return {"id": "bot", "username": "voice-bot"}

    def fetch_messages(self, channel_id, after_id, limit, timeout):
        self.fetch_calls.append(after_id)
        if self.fetch_fail:
            raise SourceError("discord fetch messages failed: 500")
        newer = [i for i in self.items if not after_id or compare_ids(i.id, after_id) > 0]
        return sort_items(newer)[:limit]

    def get_channel(self, channel_id, timeout):
        return self.guild_id

    def acknowledge(self, channel_id, item_id, timeout):
        self.acks.append(item_id)
        if self.ack_fail:
            raise SourceError("discord add reaction failed: 500")

    def download_attachment(self, url, dest, timeout):
        self.downloads.append(url)
        if self.download_fail:
            raise SourceError("download failed with header Bot secret-token")
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(b"FAKE_AUDIO")


class FakeVault:
    def __init__(self):
        self.files = {}
        self.append_fail = False
        self.appends = 0

    def health(self, timeout):
        return {"authenticated": True}

    def file_exists(self, path, timeout):
        return path in self.files

    def create_file(self, path, content, timeout):
        self.files[path] = content

    def append_file(self, path, content, timeout):
        self.appends += 1
        if self.append_fail:
            raise DocumentStoreError("obsidian append failed: 500")
        self.files[path] += content

    def read_file(self, path, timeout):
        if path not in self.files:
            raise DocumentStoreError("obsidian read failed: 404")
        return self.files[path]


class FakeMedia:
    def __init__(self, text="こんにちは 今日の記録"):
        self.text = text
        self.normalize_fail = False
        self.transcribe_fail = False
        self.normalized = []
        self.transcribed = []

    def normalize(self, src, dst, timeout):
        self.normalized.append(src)
        if self.normalize_fail:
            raise NormalizeError("ffmpeg failed with exit code 1")
        dst.parent.mkdir(parents=True, exist_ok=True)
        dst.write_bytes(b"RIFF")
        return dst

    def transcribe(self, wav, out_dir, timeout):
        self.transcribed.append(wav)
        if self.transcribe_fail:
            raise TranscribeError("whisper json has no text segments")
        out_dir.mkdir(parents=True, exist_ok=True)
        json_path = out_dir / f"{wav.stem}.json"
        json_path.write_text(json.dumps({"text": self.text}), encoding="utf-8")
        return Transcription(text=self.text, json_path=json_path)


def audio_item(item_id, author=AUTHOR, text="", guild_id=""):
    return SourceItem(
        id=item_id,
        channel_id=CHANNEL,
        author_id=author,
        text=text,
        guild_id=guild_id,
        attachments=[
            Attachment(
                id=f"a{item_id}",
                url=f"https://cdn.example.com/attachments/{item_id}/voice.ogg",
                filename="voice-message.ogg",
                content_type="audio/ogg",
            )
        ],
    )


def text_item(item_id, text, author=AUTHOR):
    return SourceItem(id=item_id, channel_id=CHANNEL, author_id=author, text=text)


@pytest.fixture
def cfg(tmp_path):
    return Config(
        discord_bot_token="token",
        discord_api_base_url="https://discord.example/api/v10",
        channel_id=CHANNEL,
        allowed_author_ids=frozenset({AUTHOR}),
        fetch_limit=100,
        whisper_bin="whisper",
        whisper_model="large-v3-turbo",
        whisper_language="ja",
        ffmpeg_bin="ffmpeg",
        obsidian_base_url="https://127.0.0.1:27124",
        obsidian_api_key="key",
        obsidian_auth_header="Authorization",
        obsidian_verify_tls=False,
        vault_journal_dir="Journal",
        audio_retention_days=14,
        transcript_retention_days=7,
        max_retry_attempts=3,
        retry_base_seconds=300,
        retry_max_seconds=86400,
        transcribe_timeout_seconds=600,
        state_db_path=tmp_path / "state" / "state.db",
        audio_store_dir=tmp_path / "audio",
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def conn(cfg):
    c = connect_db(cfg.state_db_path)
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def vault():
    return FakeVault()


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def runner(cfg, conn, source, vault, media, clock):
    return Runner(cfg, conn, source, vault, media, clock=clock)
