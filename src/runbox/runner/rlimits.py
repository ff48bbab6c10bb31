from __future__ import annotations
import math
import resource
from typing import Optional


def apply_rlimits(
    cpu_time_ms: int,
    memory_bytes: Optional[int],
    nofile: int,
    fsize_bytes: int,
) -> None:
    """
    Process-level ceilings, applied in the child between fork and exec.
    Nothing is swallowed: a limit that cannot be set fails the spawn.
    """
    cpu_s = max(1, math.ceil(cpu_time_ms / 1000))
    # soft -> SIGXCPU, hard one second later -> SIGKILL
    resource.setrlimit(resource.RLIMIT_CPU, (cpu_s, cpu_s + 1))
    resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
    resource.setrlimit(resource.RLIMIT_NOFILE, (nofile, nofile))
    resource.setrlimit(resource.RLIMIT_FSIZE, (fsize_bytes, fsize_bytes))
    if memory_bytes:
        resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
