from dataclasses import dataclass
from datetime import datetime

SOURCE_TAG = "voice-inbox"


@dataclass
class EntryInput:
    now: datetime
    transcript: str
    channel_id: str
    message_id: str
    author_id: str
    jump_url: str
    audio_file: str
    whisper_model: str
    processed_at: datetime
    kind: str = "audio"


def journal_path(journal_dir: str, when: datetime) -> str:
    return f"{journal_dir.strip('/')}/{when.strftime('%Y-%m-%d')}.md"


def new_journal_content(when: datetime) -> str:
    title = when.strftime("%Y_%m_%d")
    return (
        "---\n"
        f'title: "{title}"\n'
        "type: journal\n"
        f"date: {when.strftime('%Y-%m-%d')}\n"
        f"created: {when.isoformat(timespec='seconds')}\n"
        "tags: [journal]\n"
        f"source: {SOURCE_TAG}\n"
        "---\n"
        f"# {title}\n"
    )


def marker(message_id: str) -> str:
    return f'discord_message_id: "{message_id}"'


def contains_marker(content: str, message_id: str) -> bool:
    return marker(message_id) in (content or "")


def build_entry(entry: EntryInput) -> str:
    transcript = entry.transcript.strip() or "(transcript is empty)"
    heading = "🎤 Voice Inbox" if entry.kind == "audio" else "💬 Text Inbox"
    lines = [
        "",
        f"## Log - {entry.now.strftime('%H:%M')}",
        f"### {heading}",
        "",
        transcript,
        "",
        "```yaml",
        "voice_inbox:",
        f'  kind: "{entry.kind}"',
        f'  discord_channel_id: "{entry.channel_id}"',
        f"  {marker(entry.message_id)}",
        f'  discord_author_id: "{entry.author_id}"',
        f'  discord_jump_url: "{entry.jump_url}"',
        f'  audio_file: "{entry.audio_file}"',
        f'  whisper_model: "{entry.whisper_model}"',
        f'  processed_at: "{entry.processed_at.isoformat(timespec="seconds")}"',
        "```",
        "",
    ]
    return "\n".join(lines)


def jump_url(guild_id: str, channel_id: str, message_id: str) -> str:
    return f"https://discord.com/channels/{guild_id}/{channel_id}/{message_id}"
