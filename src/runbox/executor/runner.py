from __future__ import annotations
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import structlog

from ..core.errors import SandboxSetupError, UnsupportedLanguage
from ..core.models import ExecutionJob, ExecutionResult, KillReason, RawOutcome, ResourceBudget
from ..isolation.isolation import IsolationPipeline
from ..isolation.limiter import Limiter, limiter_factory
from ..isolation.ns_chroot import NS_MARKER, WORK_MOUNT, sandbox_path
from ..isolation.secwrap import SETUP_FAILED
from ..runners.registry import RuntimeRegistry
from ..services.verdict import VerdictBuilder
from .base import ExecSpec, sandbox_env
from .sandbox import SandboxHandle

log = structlog.get_logger(__name__)

SECWRAP_MARKER = b"[runbox-secwrap]"
NS_SETUP_MARKER = NS_MARKER.encode()


class SandboxRunner:
    """
    run(job, budget) -> ExecutionResult.

    Creates a fresh SandboxHandle per job, supervises it on a fixed tick and
    hands what it observed to the VerdictBuilder. The first breach seen by the
    supervisor decides the kill reason; teardown happens on every path.
    """

    def __init__(
        self,
        registry: RuntimeRegistry,
        isolation: IsolationPipeline,
        make_limiter: Callable[..., Limiter],
        jobs_dir: Path,
        poll_interval_ms: int = 50,
        verdicts: Optional[VerdictBuilder] = None,
    ):
        self.registry = registry
        self.isolation = isolation
        self.make_limiter = make_limiter
        self.jobs_dir = Path(jobs_dir).resolve()
        self.tick = poll_interval_ms / 1000.0
        self.verdicts = verdicts or VerdictBuilder()

    @classmethod
    def from_settings(cls, s, registry: RuntimeRegistry) -> "SandboxRunner":
        return cls(
            registry=registry,
            isolation=IsolationPipeline.from_settings(s),
            make_limiter=limiter_factory(s),
            jobs_dir=s.jobs_dir,
            poll_interval_ms=s.poll_interval_ms,
        )

    def run(self, job: ExecutionJob, budget: Optional[ResourceBudget] = None,
            cancel: Optional[threading.Event] = None) -> ExecutionResult:
        raw = self.execute(job, budget or job.budget, cancel or threading.Event())
        result = self.verdicts.build(raw)
        log.info(
            "job_finished", job_id=job.job_id, state=result.state.value, detail=result.detail,
            exit_code=result.exit_code, elapsed_ms=result.elapsed_ms,
        )
        return result

    # ---------- one sandbox ----------

    def execute(self, job: ExecutionJob, budget: ResourceBudget, cancel: threading.Event) -> RawOutcome:
        raw = RawOutcome(job_id=job.job_id)
        try:
            runtime = self.registry.get(job.language)
            raw.oom_markers = runtime.oom_markers
            limiter = self.make_limiter(
                budget,
                address_space_limit=runtime.address_space_limit,
                overhead=self.isolation.overhead,
            )
            with SandboxHandle(job.job_id, self.jobs_dir, limiter) as handle:
                handle.open()
                handle.write_file(runtime.entry, job.source)
                entry = sandbox_path(handle.scratch, runtime.entry, self.isolation.rootfs)
                home = WORK_MOUNT if self.isolation.chrooted else str(handle.scratch)
                spec = ExecSpec(
                    argv=self.isolation.build(runtime.command(entry, budget), handle.scratch),
                    workdir=handle.scratch,
                    env=sandbox_env(home, runtime.env),
                    stdin=job.stdin.encode("utf-8") if job.stdin is not None else None,
                    wall_timeout_ms=budget.wall_time_ms,
                )
                handle.spawn(spec, budget.max_output_bytes)
                killed = self._supervise(handle, spec, cancel, raw)
                handle.drain()
                if not killed:
                    self._late_breach(handle, raw)
                self._collect(handle, raw)
        except (SandboxSetupError, UnsupportedLanguage) as e:
            raw.setup_error = str(e)
        except OSError as e:
            raw.setup_error = f"io_error: {e}"
        if raw.setup_error is None and self._wrapper_failed(raw):
            raw.setup_error = raw.stderr.decode("utf-8", errors="replace").strip()
        if raw.setup_error:
            log.error("sandbox_failure", job_id=job.job_id, error=raw.setup_error)
        return raw

    def _supervise(self, handle: SandboxHandle, spec: ExecSpec, cancel: threading.Event,
                   raw: RawOutcome) -> bool:
        """Poll until the program exits (False) or a breach kills it (True)."""
        deadline = handle.started_at + spec.wall_timeout_ms / 1000.0
        limiter = handle.limiter
        while True:
            remaining = deadline - time.monotonic()
            if handle.wait_exit(max(0.0, min(self.tick, remaining))):
                break
            reason = None
            if cancel.is_set():
                reason = KillReason.CANCELLED
            elif handle.overflow.is_set():
                reason = KillReason.OUTPUT
            elif time.monotonic() >= deadline:
                reason = KillReason.WALL_TIMEOUT
            else:
                reason = limiter.check()
            if reason is not None:
                raw.kill_reason = reason
                handle.kill()
                log.info("sandbox_killed", job_id=handle.job_id, reason=reason.value)
                return True
        return False

    def _late_breach(self, handle: SandboxHandle, raw: RawOutcome) -> None:
        # exited by itself; a breach that raced the exit still counts.
        # Runs after drain so both readers have seen everything.
        limiter = handle.limiter
        if handle.overflow.is_set():
            raw.kill_reason = KillReason.OUTPUT
        elif limiter.oom_killed():
            raw.kill_reason = KillReason.MEMORY
        else:
            late = limiter.check()
            if late in (KillReason.PIDS, KillReason.MEMORY):
                raw.kill_reason = late

    def _collect(self, handle: SandboxHandle, raw: RawOutcome) -> None:
        raw.returncode = handle.returncode
        raw.stdout, raw.stdout_truncated = handle.stdout.data, handle.stdout.truncated
        raw.stderr, raw.stderr_truncated = handle.stderr.data, handle.stderr.truncated
        end = handle.ended_at or time.monotonic()
        raw.elapsed_ms = int((end - handle.started_at) * 1000)
        raw.oom_killed = handle.limiter.oom_killed()
        peaks = [p for p in (handle.limiter.peak_memory(), handle.max_rss) if p]
        raw.peak_memory_bytes = max(peaks) if peaks else None

    def _wrapper_failed(self, raw: RawOutcome) -> bool:
        """A wrapper (mount setup or secwrap) gave up before the program ran."""
        if raw.kill_reason is not KillReason.NONE or raw.returncode != SETUP_FAILED:
            return False
        if self.isolation.seccomp_policy is not None and raw.stderr.startswith(SECWRAP_MARKER):
            return True
        # mount/mkdir print their own complaint before the marker line
        return self.isolation.strategy == "ns" and NS_SETUP_MARKER in raw.stderr
