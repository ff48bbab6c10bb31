from __future__ import annotations
import signal
from typing import Optional

from ..core.models import ExecutionResult, KillReason, RawOutcome, TerminalState
from ..core.utils import exit_code_from_returncode, tail_text

# supervisor kill reason -> terminal state
KILL_STATES = {
    KillReason.WALL_TIMEOUT: TerminalState.TIMED_OUT,
    KillReason.CPU_TIMEOUT: TerminalState.TIMED_OUT,
    KillReason.MEMORY: TerminalState.MEMORY_EXCEEDED,
    KillReason.PIDS: TerminalState.MEMORY_EXCEEDED,
    KillReason.OUTPUT: TerminalState.OUTPUT_EXCEEDED,
    KillReason.CANCELLED: TerminalState.RUNTIME_ERROR,
}


def decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


class VerdictBuilder:
    """
    Maps what the runner observed onto exactly one TerminalState.

    Precedence: setup failure, supervisor kill, kernel OOM kill, SIGXCPU,
    runtime out-of-memory marker, clean exit, anything else.
    """

    def build(self, raw: RawOutcome) -> ExecutionResult:
        if raw.setup_error is not None:
            # the service's fault: nothing of the program is reported back
            return ExecutionResult(
                job_id=raw.job_id,
                state=TerminalState.SANDBOX_FAILURE,
                elapsed_ms=raw.elapsed_ms,
                detail=raw.setup_error,
            )

        state, detail = self._classify(raw)
        return ExecutionResult(
            job_id=raw.job_id,
            state=state,
            stdout=decode(raw.stdout),
            stderr=decode(raw.stderr),
            stdout_truncated=raw.stdout_truncated,
            stderr_truncated=raw.stderr_truncated,
            exit_code=exit_code_from_returncode(raw.returncode),
            elapsed_ms=raw.elapsed_ms,
            peak_memory_bytes=raw.peak_memory_bytes,
            detail=detail,
        )

    def _classify(self, raw: RawOutcome):
        if raw.kill_reason is not KillReason.NONE:
            return KILL_STATES[raw.kill_reason], raw.kill_reason.value
        if raw.oom_killed:
            return TerminalState.MEMORY_EXCEEDED, "oom_kill"
        rc = raw.returncode
        if rc is None:
            # reaper lost the child; we cannot vouch for anything it did
            return TerminalState.RUNTIME_ERROR, "exit_unknown"
        if rc == -signal.SIGXCPU:
            return TerminalState.TIMED_OUT, "cpu_rlimit"
        if rc == 0:
            return TerminalState.COMPLETED, None
        if self._oom_marker(raw):
            return TerminalState.MEMORY_EXCEEDED, "runtime_oom"
        if rc < 0:
            return TerminalState.RUNTIME_ERROR, f"signal_{-rc}"
        return TerminalState.RUNTIME_ERROR, f"exit_{rc}"

    @staticmethod
    def _oom_marker(raw: RawOutcome) -> Optional[str]:
        tail = tail_text(raw.stderr)
        for marker in raw.oom_markers:
            if marker in tail:
                return marker
        return None
