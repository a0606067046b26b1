import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List

from .errors import NormalizeError, TranscribeError

log = logging.getLogger(__name__)


@dataclass
class Transcription:
    text: str
    json_path: Path


def run_command(args: List[str], timeout: float, error_cls):
    """Run an external tool; any non-zero exit, timeout or missing binary raises error_cls."""
    name = Path(args[0]).name
    try:
        proc = subprocess.run(args, capture_output=True, text=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired:
        raise error_cls(f"{name} timed out after {timeout:.0f}s")
    except FileNotFoundError:
        raise error_cls(f"{name} not found: {args[0]}")
    except OSError as e:
        raise error_cls(f"{name} could not start: {e}")

    if proc.returncode != 0:
        output = ((proc.stderr or "") + (proc.stdout or "")).strip()
        raise error_cls(f"{name} failed with exit code {proc.returncode}: {output[-2000:]}")
    return proc


def _str_field(obj, key: str) -> str:
    value = obj.get(key)
    return value.strip() if isinstance(value, str) else ""


def extract_text(payload) -> str:
    """Top-level `text`, or the non-blank segment texts joined by newlines. Non-string values count as blank."""
    if not isinstance(payload, dict):
        return ""
    text = _str_field(payload, "text")
    if text:
        return text
    segments = payload.get("segments")
    if not isinstance(segments, list):
        return ""
    parts = [_str_field(seg, "text") for seg in segments if isinstance(seg, dict)]
    return "\n".join(p for p in parts if p)


class MediaTools:
    """ffmpeg normalizer + whisper CLI transcriber."""

    def __init__(self, ffmpeg_bin: str, whisper_bin: str, model: str, language: str):
        self.ffmpeg_bin = ffmpeg_bin
        self.whisper_bin = whisper_bin
        self.model = model
        self.language = language

    def normalize(self, src: Path, dst: Path, timeout: float) -> Path:
        """Convert arbitrary media to 16kHz mono PCM WAV."""
        dst.parent.mkdir(parents=True, exist_ok=True)
        run_command(
            [
                self.ffmpeg_bin,
                "-y",
                "-i", str(src),
                "-vn",
                "-ac", "1",
                "-ar", "16000",
                "-c:a", "pcm_s16le",
                str(dst),
            ],
            timeout,
            NormalizeError,
        )
        if not dst.exists() or dst.stat().st_size == 0:
            raise NormalizeError(f"ffmpeg reported success, but output WAV is missing/empty: {dst}")
        return dst

    def transcribe(self, wav: Path, out_dir: Path, timeout: float) -> Transcription:
        out_dir.mkdir(parents=True, exist_ok=True)
        run_command(
            [
                self.whisper_bin,
                str(wav),
                "--model", self.model,
                "--language", self.language,
                "--output_format", "json",
                "--output_dir", str(out_dir),
                "--verbose", "False",
            ],
            timeout,
            TranscribeError,
        )
        json_path = out_dir / f"{wav.stem}.json"
        try:
            payload = json.loads(json_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise TranscribeError(f"read whisper json: {e}")
        except ValueError as e:
            raise TranscribeError(f"parse whisper json {json_path}: {e}")

        text = extract_text(payload)
        if not text:
            raise TranscribeError(f"whisper json has no text segments: {json_path}")
        log.debug("Transcribed %s (%d chars)", wav.name, len(text))
        return Transcription(text=text, json_path=json_path)
