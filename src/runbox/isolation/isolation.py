from __future__ import annotations
from pathlib import Path
from typing import List, Optional
import os, shutil, sys

from .cgroups import CGROOT
from .ns_chroot import wrap_with_ns, wrap_with_ns_chroot


class IsolationPipeline:
    """Composes the wrapper chain around a runtime command: [unshare [chroot]] [secwrap] cmd."""

    def __init__(self, strategy: str, allow_network: bool, rootfs: Optional[Path] = None,
                 seccomp_policy: Optional[Path] = None, private_tmp: bool = True):
        self.strategy = (strategy or "none").lower()
        self.allow_network = allow_network
        self.rootfs = rootfs
        self.seccomp_policy = seccomp_policy
        self.private_tmp = private_tmp

    @classmethod
    def from_settings(cls, s) -> "IsolationPipeline":
        policy = Path(s.seccomp_policy).resolve() if s.seccomp_enabled else None
        return cls(s.isolation_strategy, s.allow_network, s.rootfs, policy, s.private_tmp)

    @property
    def overhead(self) -> int:
        """
        Wrapper processes that may live next to the program: unshare's parent,
        plus one mount/mkdir helper of the setup shell before it execs.
        """
        return 2 if self.strategy == "ns" else 0

    @property
    def chrooted(self) -> bool:
        return self.strategy == "ns" and self.rootfs is not None

    def build(self, cmd: List[str], scratch: Path) -> List[str]:
        out = list(cmd)
        if self.seccomp_policy is not None:
            out = [sys.executable, "-m", "runbox.isolation.secwrap",
                   "--policy", str(self.seccomp_policy), "--"] + out
        if self.strategy == "ns":
            if self.rootfs is not None:
                out = wrap_with_ns_chroot(out, scratch, self.rootfs, self.allow_network)
            else:
                out = wrap_with_ns(out, scratch, self.allow_network, self.private_tmp)
        return out


def probe_capabilities(pipeline: IsolationPipeline, limiter_strategy: str) -> dict:
    """Environment facts for the stats endpoint and startup logs."""
    return {
        "strategy": pipeline.strategy,
        "limiter": limiter_strategy,
        "allow_network": pipeline.allow_network,
        "private_tmp": pipeline.private_tmp if pipeline.strategy == "ns" else False,
        "euid": os.geteuid() if hasattr(os, "geteuid") else None,
        "has_unshare": bool(shutil.which("unshare")),
        "cgroup_v2": (CGROOT / "cgroup.controllers").exists(),
        "rootfs": str(pipeline.rootfs) if pipeline.rootfs else None,
        "seccomp_policy": str(pipeline.seccomp_policy) if pipeline.seccomp_policy else None,
    }
