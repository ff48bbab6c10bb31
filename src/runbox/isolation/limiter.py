from __future__ import annotations
from pathlib import Path
from typing import Callable, Dict, List, Optional

import psutil
import structlog

from ..core.models import KillReason, ResourceBudget
from ..runner.rlimits import apply_rlimits
from .cgroups import CgroupLeaf, ensure_v2, resolve_base

log = structlog.get_logger(__name__)


class Limiter:
    """
    Applies one ResourceBudget to one sandbox.

    Lifecycle: prepare() before spawn, child_setup() runs in the child before
    exec, started(pid) right after spawn, check() on every supervisor tick,
    release() exactly once on teardown. `overhead` is the number of wrapper
    processes (unshare, ...) that the isolation layer adds to the tree.
    """

    def __init__(self, budget: ResourceBudget, *, nofile: int, max_file_bytes: int,
                 address_space_limit: bool, overhead: int = 0):
        self.budget = budget
        self.nofile = nofile
        self.max_file_bytes = max_file_bytes
        self.address_space_limit = address_space_limit
        self.overhead = overhead
        self._root: Optional[psutil.Process] = None
        self._seen: Dict[int, psutil.Process] = {}
        self._peak_rss = 0
        self._cpu_ms = 0

    def prepare(self, job_id: str) -> None:
        pass

    def _memory_rlimit(self) -> Optional[int]:
        return None

    def child_setup(self) -> None:
        apply_rlimits(
            self.budget.cpu_time_ms,
            self._memory_rlimit(),
            self.nofile,
            self.max_file_bytes,
        )

    def started(self, pid: int) -> None:
        try:
            self._root = psutil.Process(pid)
        except psutil.NoSuchProcess:
            self._root = None

    def _sample(self) -> List[psutil.Process]:
        """Walk the live process tree; remember every pid seen for teardown."""
        if self._root is None:
            return []
        try:
            procs = [self._root] + self._root.children(recursive=True)
        except psutil.NoSuchProcess:
            return []
        rss = 0
        cpu = 0.0
        alive = []
        for p in procs:
            try:
                if p.status() == psutil.STATUS_ZOMBIE:
                    continue
                rss += p.memory_info().rss
                t = p.cpu_times()
                cpu += t.user + t.system
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            self._seen[p.pid] = p
            alive.append(p)
        self._peak_rss = max(self._peak_rss, rss)
        self._cpu_ms = max(self._cpu_ms, int(cpu * 1000))
        return alive

    def check(self) -> Optional[KillReason]:
        return None

    def oom_killed(self) -> bool:
        return False

    def peak_memory(self) -> Optional[int]:
        return self._peak_rss or None

    def kill(self) -> None:
        for p in list(self._seen.values()):
            try:
                p.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

    def release(self) -> None:
        self.kill()
        self._seen.clear()


class RlimitLimiter(Limiter):
    """
    setrlimit in the child plus psutil sampling of the process tree.
    Memory and process count have a sampling gap of one tick.
    """

    def _memory_rlimit(self) -> Optional[int]:
        return self.budget.memory_bytes if self.address_space_limit else None

    def check(self) -> Optional[KillReason]:
        alive = self._sample()
        if not alive:
            return None
        if len(alive) - self.overhead > self.budget.max_processes:
            return KillReason.PIDS
        if self._peak_rss > self.budget.memory_bytes:
            return KillReason.MEMORY
        if self._cpu_ms > self.budget.cpu_time_ms:
            return KillReason.CPU_TIMEOUT
        return None


class CgroupLimiter(Limiter):
    """Kernel-enforced memory.max / pids.max in a per-job cgroup v2 leaf."""

    def __init__(self, budget: ResourceBudget, *, base: Optional[Path] = None, **kw):
        super().__init__(budget, **kw)
        self.base = base
        self.leaf: Optional[CgroupLeaf] = None

    def prepare(self, job_id: str) -> None:
        ensure_v2()
        self.leaf = CgroupLeaf.create(resolve_base(self.base), job_id, self.budget, extra_pids=self.overhead)
        log.debug("cgroup_leaf_ready", job_id=job_id, path=str(self.leaf.path))

    def child_setup(self) -> None:
        self.leaf.attach_self()
        super().child_setup()

    def check(self) -> Optional[KillReason]:
        if self.leaf is None:
            return None
        if self.leaf.oom_killed():
            return KillReason.MEMORY
        if self.leaf.pids_limited():
            return KillReason.PIDS
        used = self.leaf.cpu_usage_ms()
        if used is not None and used > self.budget.cpu_time_ms:
            return KillReason.CPU_TIMEOUT
        return None

    def oom_killed(self) -> bool:
        return bool(self.leaf and self.leaf.oom_killed())

    def peak_memory(self) -> Optional[int]:
        if self.leaf is None:
            return None
        return self.leaf.peak_memory()

    def kill(self) -> None:
        if self.leaf is not None:
            self.leaf.kill()

    def release(self) -> None:
        if self.leaf is not None:
            leaf, self.leaf = self.leaf, None
            leaf.kill()
            leaf.teardown()


def limiter_factory(settings) -> Callable[..., Limiter]:
    """Returns a callable building a fresh Limiter per job from the configured strategy."""
    common = {"nofile": settings.nofile, "max_file_bytes": settings.max_file_bytes}

    if settings.limiter_strategy == "cgroup":
        def make(budget: ResourceBudget, *, address_space_limit: bool, overhead: int = 0) -> Limiter:
            return CgroupLimiter(budget, base=settings.cgroup_base,
                                 address_space_limit=address_space_limit, overhead=overhead, **common)
    else:
        def make(budget: ResourceBudget, *, address_space_limit: bool, overhead: int = 0) -> Limiter:
            return RlimitLimiter(budget, address_space_limit=address_space_limit,
                                 overhead=overhead, **common)
    return make
