import sys
import threading
import time
from pathlib import Path

import pytest

from runbox.core.models import ExecutionJob, ExecutionResult, Language, ResourceBudget, TerminalState
from runbox.core.settings import DEFAULT_LIMITS, Settings
from runbox.executor.runner import SandboxRunner
from runbox.runners.registry import RuntimeRegistry

PROGRAMS = Path(__file__).parent / "programs"


def program(name: str) -> str:
    return (PROGRAMS / name).read_text(encoding="utf-8")


def make_budget(**kw) -> ResourceBudget:
    return ResourceBudget(**{**DEFAULT_LIMITS, **kw})


def make_job(job_id: str, source: str = "ok", submitter=None, stdin=None,
             language: Language = Language.PYTHON, **limits) -> ExecutionJob:
    return ExecutionJob(
        job_id=job_id,
        language=language,
        source=source,
        budget=make_budget(**limits),
        stdin=stdin,
        submitter=submitter,
    )


class FakeRunner:
    """
    Stands in for SandboxRunner in queue/service/API tests.

    source "block..." waits until release() (or until cancelled),
    "boom" raises, "fail" ends as SandboxFailure, anything else is echoed.
    """

    def __init__(self):
        self.dispatched = []
        self.started = threading.Semaphore(0)
        self._gate = threading.Event()
        self._lock = threading.Lock()

    def release(self):
        self._gate.set()

    def wait_started(self, n: int = 1, timeout: float = 5.0):
        for _ in range(n):
            assert self.started.acquire(timeout=timeout), "job never started"

    def run(self, job, budget=None, cancel=None):
        with self._lock:
            self.dispatched.append(job.job_id)
        self.started.release()
        if job.source.startswith("block"):
            while not self._gate.is_set():
                if cancel is not None and cancel.is_set():
                    return ExecutionResult(job.job_id, TerminalState.RUNTIME_ERROR, detail="cancelled")
                time.sleep(0.005)
        if job.source == "boom":
            raise RuntimeError("runner exploded")
        if job.source == "fail":
            return ExecutionResult(job.job_id, TerminalState.SANDBOX_FAILURE, stdout="secret", detail="setup")
        return ExecutionResult(job.job_id, TerminalState.COMPLETED, stdout=job.source, exit_code=0)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        jobs_dir=tmp_path / "jobs",
        workers=2,
        queue_capacity=4,
        poll_interval_ms=20,
        isolation_strategy="none",
        limiter_strategy="rlimit",
        languages=["python"],
        runtimes={"python": sys.executable},
    )


@pytest.fixture
def registry(settings) -> RuntimeRegistry:
    return RuntimeRegistry.from_settings(settings)


@pytest.fixture
def runner(settings, registry) -> SandboxRunner:
    return SandboxRunner.from_settings(settings, registry)


@pytest.fixture
def fake_runner() -> FakeRunner:
    fr = FakeRunner()
    yield fr
    fr.release()
