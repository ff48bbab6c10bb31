from __future__ import annotations
import threading
from typing import Callable, Dict, List, Optional

import structlog

from ..core.models import ExecutionJob, ExecutionRequest, ExecutionResult
from ..core.settings import Settings, get_settings
from ..executor.runner import SandboxRunner
from ..isolation.isolation import probe_capabilities
from ..runners.registry import RuntimeRegistry
from .admission import Admission, AdmissionController
from .budget import BudgetPolicy
from .queue import ExecutionQueue

log = structlog.get_logger(__name__)

# a collaborator that wants to see results (e.g. the portal's persistence layer)
ResultSink = Callable[[ExecutionJob, ExecutionResult], None]


class ExecutionService:
    """
    Wires registry + budget policy + sandbox runner + queue + admission.

    The service keeps no job state once a result has been handed out;
    persisting results is left to registered sinks.
    """

    def __init__(self, settings: Optional[Settings] = None, runner=None,
                 registry: Optional[RuntimeRegistry] = None):
        self.settings = settings or get_settings()
        s = self.settings

        self.registry = registry or RuntimeRegistry.from_settings(s)
        self.budgets = BudgetPolicy.from_settings(s)
        self.runner = runner or SandboxRunner.from_settings(s, self.registry)
        self.queue = ExecutionQueue(
            self._execute,
            workers=s.workers,
            capacity=s.queue_capacity,
            max_pending_per_submitter=s.max_pending_per_submitter,
        )
        self.admission = AdmissionController(
            self.registry, self.budgets, self.queue,
            max_source_bytes=s.max_source_bytes,
            max_stdin_bytes=s.max_stdin_bytes,
        )
        self._sinks: List[ResultSink] = []

    # ------------ lifecycle ------------

    def start(self) -> "ExecutionService":
        if self.settings.isolation_strategy == "none":
            log.warning("isolation_disabled", strategy="none",
                        note="jobs share the host filesystem and network; development only")
        self.queue.start()
        log.info("execution_service_started", workers=self.settings.workers,
                 queue_capacity=self.settings.queue_capacity, languages=self.registry.languages())
        return self

    def shutdown(self, wait: bool = True) -> None:
        self.queue.shutdown(wait=wait, cancel_running=not wait)
        log.info("execution_service_stopped")

    def __enter__(self) -> "ExecutionService":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.shutdown()

    # ------------ operations ------------

    def submit(self, req: ExecutionRequest, job_id: Optional[str] = None) -> Admission:
        return self.admission.submit(req, job_id=job_id)

    def execute(self, req: ExecutionRequest, timeout: Optional[float] = None,
                job_id: Optional[str] = None) -> Admission:
        """Submit and block until the result is in (or the job was rejected)."""
        admission = self.submit(req, job_id=job_id)
        if admission.accepted:
            admission.result(timeout)
        return admission

    def cancel(self, job_id: str) -> bool:
        return self.admission.cancel(job_id)

    def add_sink(self, sink: ResultSink) -> None:
        self._sinks.append(sink)

    def languages(self) -> List[str]:
        return self.registry.languages()

    def stats(self) -> Dict:
        return self.queue.stats()

    def capabilities(self) -> Dict:
        isolation = getattr(self.runner, "isolation", None)
        if isolation is None:
            return {}
        return probe_capabilities(isolation, self.settings.limiter_strategy)

    # ------------ worker side ------------

    def _execute(self, job: ExecutionJob, cancel: threading.Event) -> ExecutionResult:
        result = self.runner.run(job, job.budget, cancel)
        for sink in self._sinks:
            try:
                sink(job, result)
            except Exception:
                log.exception("result_sink_failed", job_id=job.job_id)
        return result
