from enum import Enum


class ErrorKind(str, Enum):
    CONFIG = "config"
    LOCK = "lock"
    NETWORK = "network"
    PROCESSING = "processing"
    STORE = "store"


class VoiceInboxError(Exception):
    kind = ErrorKind.PROCESSING


class ConfigError(VoiceInboxError):
    kind = ErrorKind.CONFIG


class LockHeldError(VoiceInboxError):
    kind = ErrorKind.LOCK


# ---------- Network ----------
class NetworkError(VoiceInboxError):
    kind = ErrorKind.NETWORK


class SourceError(NetworkError):
    """Message source (Discord) call failed."""


class DocumentStoreError(NetworkError):
    """Document store (Obsidian) call failed."""


# ---------- Processing ----------
class ProcessingError(VoiceInboxError):
    kind = ErrorKind.PROCESSING


class NormalizeError(ProcessingError):
    pass


class TranscribeError(ProcessingError):
    pass


class DeadlineExceeded(ProcessingError):
    pass


# ---------- Store ----------
class StoreError(VoiceInboxError):
    kind = ErrorKind.STORE


class DataIntegrityError(StoreError):
    """Persisted state holds a value the code does not recognise."""


class PathOutsideRootError(ProcessingError):
    """A stored artifact path resolves outside the storage root."""
