from __future__ import annotations
from pathlib import Path
from typing import Dict, Optional
import os, signal, time

from ..core.errors import SandboxSetupError
from ..core.models import ResourceBudget

CGROOT = Path("/sys/fs/cgroup")
CONTROLLERS = ("memory", "pids", "cpu")


def _write_then_check(p: Path, val: str | int):
    val = str(val)
    try:
        p.write_text(val)
        back = p.read_text().strip()
    except OSError as e:
        raise SandboxSetupError(f"[cgroup] cannot write {p}: {e}") from e
    if back != val:
        raise SandboxSetupError(f"[cgroup] write {p}='{val}' but read-back='{back}'")


def ensure_v2(root: Path = CGROOT):
    if not (root / "cgroup.controllers").exists():
        raise SandboxSetupError("cgroup v2 is required")


def _self_cgroup_base(root: Path = CGROOT) -> Path:
    # unified v2: '0::/<relative>'
    with open("/proc/self/cgroup") as f:
        rel = ""
        for line in f:
            if line.startswith("0::/"):
                rel = line.split("::", 1)[1].strip()
                break
    return (root / rel.lstrip("/")).resolve()


def resolve_base(configured: Optional[Path], root: Path = CGROOT) -> Path:
    """Parent of every per-job leaf: the configured base, or <own cgroup>/sbx."""
    if configured is not None:
        base = Path(configured)
        if not str(base).startswith(str(root)):
            raise SandboxSetupError(f"cgroup base must live under {root}, got {base}")
        return base
    return _self_cgroup_base(root) / "sbx"


def enable_controllers(node: Path):
    """Turn on memory/pids/cpu for children of `node` (node must hold no PIDs)."""
    cnt_file = node / "cgroup.controllers"
    if not cnt_file.exists():
        raise SandboxSetupError(f"{node} is not a cgroup v2 directory")
    have = set(cnt_file.read_text().split())
    missing = {"memory", "pids"} - have
    if missing:
        raise SandboxSetupError(f"cgroup controllers not delegated to {node}: {sorted(missing)}")
    enabled = set((node / "cgroup.subtree_control").read_text().split())
    want = [f"+{c}" for c in CONTROLLERS if c in have and c not in enabled]
    if not want:
        return
    if (node / "cgroup.procs").read_text().strip():
        raise SandboxSetupError(f"{node} has PIDs; cannot set subtree_control")
    try:
        (node / "cgroup.subtree_control").write_text(" ".join(want))
    except OSError as e:
        raise SandboxSetupError(f"cannot enable controllers on {node}: {e}") from e


def parse_kv(text: str) -> Dict[str, int]:
    """Parse flat-keyed files such as memory.events, pids.events or cpu.stat."""
    out: Dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1].lstrip("-").isdigit():
            out[parts[0]] = int(parts[1])
    return out


class CgroupLeaf:
    """One cgroup per job: memory.max, memory.swap.max, pids.max, oom.group."""

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def create(cls, base: Path, job_id: str, budget: ResourceBudget, extra_pids: int = 0) -> "CgroupLeaf":
        leaf = base / job_id
        try:
            base.mkdir(parents=True, exist_ok=True)
            enable_controllers(base)
            leaf.mkdir()
        except OSError as e:
            raise SandboxSetupError(f"cannot create cgroup leaf {leaf}: {e}") from e
        cg = cls(leaf)
        try:
            _write_then_check(leaf / "memory.max", budget.memory_bytes)
            if (leaf / "memory.swap.max").exists():
                _write_then_check(leaf / "memory.swap.max", 0)
            _write_then_check(leaf / "memory.oom.group", 1)
            _write_then_check(leaf / "pids.max", budget.max_processes + extra_pids)
        except SandboxSetupError:
            cg.teardown()
            raise
        return cg

    @property
    def procs_file(self) -> Path:
        return self.path / "cgroup.procs"

    def attach_self(self) -> None:
        # runs in the child before exec, so nothing it forks can escape
        with open(self.procs_file, "w") as f:
            f.write(str(os.getpid()))

    def _read(self, name: str) -> Optional[str]:
        try:
            return (self.path / name).read_text()
        except OSError:
            return None

    def events(self, name: str) -> Dict[str, int]:
        return parse_kv(self._read(name) or "")

    def oom_killed(self) -> bool:
        return self.events("memory.events").get("oom_kill", 0) > 0

    def pids_limited(self) -> bool:
        return self.events("pids.events").get("max", 0) > 0

    def cpu_usage_ms(self) -> Optional[int]:
        usec = self.events("cpu.stat").get("usage_usec")
        return None if usec is None else usec // 1000

    def peak_memory(self) -> Optional[int]:
        for name in ("memory.peak", "memory.current"):
            txt = self._read(name)
            if txt and txt.strip().isdigit():
                return int(txt.strip())
        return None

    def kill(self) -> None:
        kill_file = self.path / "cgroup.kill"
        if kill_file.exists():
            try:
                kill_file.write_text("1")
                return
            except OSError:
                pass
        for pid in (self._read("cgroup.procs") or "").split():
            try:
                os.kill(int(pid), signal.SIGKILL)
            except ProcessLookupError:
                pass

    def teardown(self) -> None:
        # leaf must be empty, best-effort retry
        for _ in range(20):
            try:
                self.path.rmdir()
                return
            except FileNotFoundError:
                return
            except OSError:
                self.kill()
                time.sleep(0.05)
        raise SandboxSetupError(f"cgroup leaf {self.path} still busy after kill")
