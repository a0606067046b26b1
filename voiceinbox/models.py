from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .errors import DataIntegrityError


class Status(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    REACTION_PENDING = "reaction_pending"

    @classmethod
    def parse(cls, raw: str) -> "Status":
        try:
            return cls(raw)
        except ValueError:
            raise DataIntegrityError(f"Unknown item status in store: {raw!r}")


# None stands for "no record yet"
TRANSITIONS = {
    None: {Status.PENDING},
    Status.PENDING: {Status.PENDING, Status.DONE, Status.FAILED, Status.REACTION_PENDING},
    Status.FAILED: {Status.FAILED, Status.DONE, Status.REACTION_PENDING},
    Status.REACTION_PENDING: {Status.REACTION_PENDING, Status.DONE, Status.FAILED},
    Status.DONE: {Status.DONE},
}


def check_transition(current: Optional[Status], target: Status):
    if target not in TRANSITIONS[current]:
        name = current.value if current else "absent"
        raise DataIntegrityError(f"Illegal status transition {name} -> {target.value}")


class CandidateKind(str, Enum):
    AUDIO = "audio"
    TEXT = "text"


@dataclass
class Attachment:
    id: str
    url: str
    filename: str = ""
    content_type: str = ""

    @property
    def is_audio(self) -> bool:
        return self.content_type.strip().lower().startswith("audio/")


@dataclass
class SourceItem:
    id: str
    channel_id: str
    author_id: str
    text: str = ""
    guild_id: str = ""
    attachments: List[Attachment] = field(default_factory=list)


@dataclass
class Candidate:
    item: SourceItem
    attachment: Attachment
    kind: CandidateKind
    jump_url: str = ""


@dataclass
class ItemRecord:
    item_id: str
    channel_id: str
    author_id: str
    attachment_id: str
    attachment_url: str
    attachment_filename: str = ""
    content_type: str = ""
    message_text: str = ""
    audio_path: Optional[str] = None
    transcript_path: Optional[str] = None
    status: Status = Status.PENDING
    attempts: int = 0
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    journal_path: Optional[str] = None
    jump_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_permanent(self, max_attempts: int) -> bool:
        return self.status == Status.FAILED and self.attempts >= max_attempts

    @property
    def kind(self) -> CandidateKind:
        if self.attachment_url == "about:text":
            return CandidateKind.TEXT
        return CandidateKind.AUDIO


@dataclass
class RunRecord:
    run_id: str
    command: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed_count: int = 0
    success_count: int = 0
    failed_count: int = 0
