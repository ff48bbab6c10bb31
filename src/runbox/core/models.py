from __future__ import annotations
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class Language(str, Enum):
    PYTHON = "python"
    NODE = "node"
    BASH = "bash"


class TerminalState(str, Enum):
    COMPLETED = "Completed"
    TIMED_OUT = "TimedOut"
    MEMORY_EXCEEDED = "MemoryExceeded"
    OUTPUT_EXCEEDED = "OutputExceeded"
    RUNTIME_ERROR = "RuntimeError"
    SANDBOX_FAILURE = "SandboxFailure"


class KillReason(str, Enum):
    """Why the supervisor killed a sandbox (NONE = it exited by itself)."""
    NONE = "none"
    WALL_TIMEOUT = "wall_timeout"
    CPU_TIMEOUT = "cpu_timeout"
    MEMORY = "memory"
    PIDS = "pids_limit"
    OUTPUT = "output_limit"
    CANCELLED = "cancelled"


class Decision(str, Enum):
    ACCEPTED = "accepted"   # an idle worker picks it up right away
    QUEUED = "queued"       # waits behind running work
    REJECTED = "rejected"   # capacity; retry later


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResourceBudget:
    cpu_time_ms: int
    wall_time_ms: int
    memory_bytes: int
    max_output_bytes: int
    max_processes: int

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


BUDGET_FIELDS: Tuple[str, ...] = tuple(f.name for f in fields(ResourceBudget))

# wire names used by the portal (camelCase)
BUDGET_ALIASES: Dict[str, str] = {
    "cpuTimeMs": "cpu_time_ms",
    "wallTimeMs": "wall_time_ms",
    "memoryBytes": "memory_bytes",
    "maxOutputBytes": "max_output_bytes",
    "maxProcesses": "max_processes",
}


@dataclass(frozen=True)
class ExecutionRequest:
    """What a caller submits; nothing in here is trusted yet."""
    language: str
    source: str
    stdin: Optional[str] = None
    limits_override: Optional[Mapping[str, Any]] = None
    submitter: Optional[str] = None


@dataclass(frozen=True)
class ExecutionJob:
    job_id: str
    language: Language
    source: str
    budget: ResourceBudget
    stdin: Optional[str] = None
    submitter: Optional[str] = None
    submitted_at: datetime = field(default_factory=utcnow)
    arrival_ns: int = 0


@dataclass(frozen=True)
class ExecutionResult:
    job_id: str
    state: TerminalState
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    exit_code: Optional[int] = None
    elapsed_ms: int = 0
    peak_memory_bytes: Optional[int] = None
    detail: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "state": self.state.value,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "stdoutTruncated": self.stdout_truncated,
            "stderrTruncated": self.stderr_truncated,
            "exitCode": self.exit_code,
            "elapsedMs": self.elapsed_ms,
            "peakMemoryBytes": self.peak_memory_bytes,
        }


@dataclass
class RawOutcome:
    """Everything the runner observed for one job, before interpretation."""
    job_id: str
    returncode: Optional[int] = None
    kill_reason: KillReason = KillReason.NONE
    stdout: bytes = b""
    stderr: bytes = b""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    elapsed_ms: int = 0
    peak_memory_bytes: Optional[int] = None
    oom_killed: bool = False
    oom_markers: Tuple[str, ...] = ()
    setup_error: Optional[str] = None
