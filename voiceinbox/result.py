import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

# Process exit codes
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2


@dataclass
class RunResult:
    command: str
    run_id: Optional[str] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    requeued: int = 0
    skipped: int = 0
    duration_ms: int = 0
    errors: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
    _started: float = field(default_factory=time.monotonic, repr=False)

    def add_error(self, message: str, count: bool = True):
        self.errors.append(message)
        if count:
            self.failed += 1

    def finalize(self) -> "RunResult":
        self.duration_ms = int((time.monotonic() - self._started) * 1000)
        return self

    def exit_code(self) -> int:
        if self.failed == 0:
            return EXIT_OK
        if self.succeeded > 0:
            return EXIT_PARTIAL
        return EXIT_FAILED

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out.pop("_started")
        if not out["run_id"]:
            out.pop("run_id")
        if not out["errors"]:
            out.pop("errors")
        if not out["data"]:
            out.pop("data")
        return out
