from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

import structlog

from ..core.errors import DuplicateJobId, InvalidJobId, SubmissionTooLarge
from ..core.models import Decision, ExecutionJob, ExecutionRequest, ExecutionResult
from ..core.utils import new_job_id, valid_job_id
from ..runners.registry import RuntimeRegistry
from .budget import BudgetPolicy
from .queue import ExecutionQueue, Ticket

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Admission:
    decision: Decision
    job_id: Optional[str] = None
    ticket: Optional[Ticket] = None
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.decision is not Decision.REJECTED

    def result(self, timeout: Optional[float] = None) -> ExecutionResult:
        if self.ticket is None:
            raise RuntimeError(f"job was rejected ({self.reason}); there is no result")
        return self.ticket.future.result(timeout)


class AdmissionController:
    """
    Front door of the execution service.

    Client-fixable problems (language, budget, payload size) raise a
    SubmissionError; capacity problems come back as a REJECTED Admission.
    Never blocks on execution.
    """

    def __init__(self, registry: RuntimeRegistry, budgets: BudgetPolicy, queue: ExecutionQueue,
                 max_source_bytes: int, max_stdin_bytes: int):
        self.registry = registry
        self.budgets = budgets
        self.queue = queue
        self.max_source_bytes = max_source_bytes
        self.max_stdin_bytes = max_stdin_bytes

    def _check_sizes(self, req: ExecutionRequest) -> None:
        if len(req.source.encode("utf-8")) > self.max_source_bytes:
            raise SubmissionTooLarge(f"source exceeds {self.max_source_bytes} bytes")
        if req.stdin is not None and len(req.stdin.encode("utf-8")) > self.max_stdin_bytes:
            raise SubmissionTooLarge(f"stdin exceeds {self.max_stdin_bytes} bytes")

    def submit(self, req: ExecutionRequest, job_id: Optional[str] = None) -> Admission:
        if job_id is not None and not valid_job_id(job_id):
            raise InvalidJobId(f"job id must be 1-64 chars of [A-Za-z0-9_-]: {job_id!r}")
        runtime = self.registry.resolve(req.language)
        self._check_sizes(req)
        budget = self.budgets.resolve(req.limits_override)

        job = ExecutionJob(
            job_id=job_id or new_job_id(),
            language=runtime.language,
            source=req.source,
            stdin=req.stdin,
            budget=budget,
            submitter=req.submitter,
        )
        try:
            decision, ticket, reason = self.queue.offer(job)
        except ValueError as e:
            raise DuplicateJobId(str(e)) from e
        if decision is Decision.REJECTED:
            log.warning("job_rejected", job_id=job.job_id, reason=reason, submitter=req.submitter)
            return Admission(decision=decision, job_id=job.job_id, reason=reason)

        log.info(
            "job_admitted", job_id=job.job_id, decision=decision.value,
            language=job.language.value, budget=budget.as_dict(),
        )
        return Admission(decision=decision, job_id=job.job_id, ticket=ticket)

    def cancel(self, job_id: str) -> bool:
        return self.queue.cancel(job_id)
