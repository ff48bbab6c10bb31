from __future__ import annotations
import heapq
import threading
import time
from collections import Counter
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from ..core.models import Decision, ExecutionJob, ExecutionResult, TerminalState

log = structlog.get_logger(__name__)

Execute = Callable[[ExecutionJob, threading.Event], ExecutionResult]


@dataclass(eq=False)
class Ticket:
    """A QueueSlot: the job, where its result will land, and its kill switch."""
    job: ExecutionJob
    future: "Future[ExecutionResult]" = field(default_factory=Future)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def job_id(self) -> str:
        return self.job.job_id


class ExecutionQueue:
    """
    Fixed pool of worker threads fed from one FIFO wait structure.

    Everything mutable (heap, waiting index, running index, counters) is
    guarded by a single Condition. Dispatch order is (arrival_ns, job_id);
    a cancelled entry stays in the heap as a tombstone and is skipped on pop.
    Once tombstones outnumber live entries the heap is rebuilt.
    """

    def __init__(self, execute: Execute, workers: int, capacity: int,
                 max_pending_per_submitter: int = 0):
        self._execute = execute
        self.workers = workers
        self.capacity = capacity
        self.max_pending_per_submitter = max_pending_per_submitter

        self._cond = threading.Condition()
        self._heap: List[Tuple[int, str, Ticket]] = []
        self._tombstones = 0
        self._waiting: Dict[str, Ticket] = {}
        self._running: Dict[str, Ticket] = {}
        self._pending_by_submitter: Counter = Counter()
        self._threads: List[threading.Thread] = []
        self._closed = False
        self._last_arrival = 0
        self._totals = Counter()

    # ------------ lifecycle ------------

    def start(self) -> None:
        with self._cond:
            if self._threads:
                return
            for i in range(self.workers):
                t = threading.Thread(target=self._worker, name=f"runbox-worker-{i}", daemon=True)
                self._threads.append(t)
                t.start()

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        with self._cond:
            self._closed = True
            for ticket in list(self._waiting.values()):
                self._drop_waiting(ticket, "shutdown")
            if cancel_running:
                for ticket in self._running.values():
                    ticket.cancel_event.set()
            self._cond.notify_all()
        if wait:
            for t in self._threads:
                t.join()

    # ------------ submission side ------------

    def offer(self, job: ExecutionJob) -> Tuple[Decision, Optional[Ticket], Optional[str]]:
        """Never blocks: admits, queues or rejects under the lock and returns."""
        with self._cond:
            if self._closed:
                return self._reject("shutting_down")
            if job.job_id in self._waiting or job.job_id in self._running:
                raise ValueError(f"duplicate job id {job.job_id}")
            if (self.max_pending_per_submitter and job.submitter is not None
                    and self._pending_by_submitter[job.submitter] >= self.max_pending_per_submitter):
                return self._reject("submitter_limit")

            idle = self.workers - len(self._running) - len(self._waiting)
            if idle > 0:
                decision = Decision.ACCEPTED
            elif len(self._waiting) < self.capacity:
                decision = Decision.QUEUED
            else:
                return self._reject("queue_full")

            # monotonic and taken under the lock, so a later offer never sorts earlier
            arrival = max(time.monotonic_ns(), self._last_arrival)
            self._last_arrival = arrival
            ticket = Ticket(job=replace(job, arrival_ns=arrival))
            heapq.heappush(self._heap, (arrival, job.job_id, ticket))
            self._waiting[job.job_id] = ticket
            if job.submitter is not None:
                self._pending_by_submitter[job.submitter] += 1
            self._totals[decision.value] += 1
            self._cond.notify()
            return decision, ticket, None

    def _reject(self, reason: str) -> Tuple[Decision, None, str]:
        self._totals["rejected"] += 1
        return Decision.REJECTED, None, reason

    def cancel(self, job_id: str) -> bool:
        """Queued: removed, never dispatched. Running: kill request. Unknown: False."""
        with self._cond:
            ticket = self._waiting.get(job_id)
            if ticket is not None:
                self._drop_waiting(ticket, "cancelled")
                log.info("job_cancelled", job_id=job_id, where="queue")
                return True
            ticket = self._running.get(job_id)
            if ticket is not None:
                ticket.cancel_event.set()
                log.info("job_cancelled", job_id=job_id, where="sandbox")
                return True
        return False

    def _drop_waiting(self, ticket: Ticket, detail: str) -> None:
        # caller holds the lock; the heap entry becomes a tombstone.
        # No sandbox was allocated, but the waiter still gets its one result.
        del self._waiting[ticket.job_id]
        self._release_submitter(ticket)
        self._totals["cancelled"] += 1
        self._tombstones += 1
        if self._tombstones > len(self._waiting):
            self._compact()
        if ticket.future.cancelled():
            # the waiter already went away (client disconnect)
            return
        ticket.future.set_result(ExecutionResult(
            job_id=ticket.job_id,
            state=TerminalState.RUNTIME_ERROR,
            detail=detail,
        ))

    def _compact(self) -> None:
        self._heap = [e for e in self._heap if self._waiting.get(e[1]) is e[2]]
        heapq.heapify(self._heap)
        self._tombstones = 0

    def _release_submitter(self, ticket: Ticket) -> None:
        sub = ticket.job.submitter
        if sub is not None:
            self._pending_by_submitter[sub] -= 1
            if self._pending_by_submitter[sub] <= 0:
                del self._pending_by_submitter[sub]

    # ------------ worker side ------------

    def _pop(self) -> Optional[Ticket]:
        while self._heap:
            _, job_id, ticket = heapq.heappop(self._heap)
            if self._waiting.get(job_id) is ticket:
                del self._waiting[job_id]
                return ticket
            self._tombstones -= 1
        return None

    def _next(self) -> Optional[Ticket]:
        with self._cond:
            while True:
                ticket = self._pop()
                if ticket is not None:
                    self._running[ticket.job_id] = ticket
                    return ticket
                if self._closed:
                    return None
                self._cond.wait()

    def _worker(self) -> None:
        while True:
            ticket = self._next()
            if ticket is None:
                return
            if not ticket.future.set_running_or_notify_cancel():
                # the waiter gave up between dispatch and start
                self._finish(ticket, "cancelled")
                continue
            log.info("job_dispatched", job_id=ticket.job_id, arrival_ns=ticket.job.arrival_ns)
            try:
                result = self._execute(ticket.job, ticket.cancel_event)
            except Exception as e:
                log.exception("sandbox_failure", job_id=ticket.job_id)
                result = ExecutionResult(
                    job_id=ticket.job_id,
                    state=TerminalState.SANDBOX_FAILURE,
                    detail=f"worker_error: {e}",
                )
            self._finish(ticket)
            ticket.future.set_result(result)

    def _finish(self, ticket: Ticket, outcome: str = "completed") -> None:
        with self._cond:
            self._running.pop(ticket.job_id, None)
            self._release_submitter(ticket)
            self._totals[outcome] += 1

    # ------------ introspection ------------

    def stats(self) -> Dict[str, int]:
        with self._cond:
            return {
                "workers": self.workers,
                "busy": len(self._running),
                "queued": len(self._waiting),
                "capacity": self.capacity,
                "accepted": self._totals["accepted"],
                "queued_total": self._totals["queued"],
                "rejected": self._totals["rejected"],
                "cancelled": self._totals["cancelled"],
                "completed": self._totals["completed"],
            }
