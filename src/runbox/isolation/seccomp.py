from __future__ import annotations
from pathlib import Path
from typing import List
import json

import yaml

from ..core.errors import SandboxSetupError


def load_syscall_list(policy_path: Path) -> List[str]:
    """
    Read the deny-list of syscalls from YAML or JSON, either a bare list or
    {"syscalls": [...]}. Duplicates are dropped, order kept.
    """
    if not policy_path or not policy_path.exists():
        raise SandboxSetupError(f"seccomp policy not found: {policy_path}")

    txt = policy_path.read_text(encoding="utf-8").strip()
    if not txt:
        return []

    try:
        if txt.startswith("{") or txt.startswith("["):
            data = json.loads(txt)
        else:
            data = yaml.safe_load(txt)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise SandboxSetupError(f"unreadable seccomp policy {policy_path}: {e}") from e

    if isinstance(data, dict):
        data = data.get("syscalls", [])
    if not isinstance(data, list):
        raise SandboxSetupError(f"seccomp policy {policy_path} must be a list of syscalls")
    return list(dict.fromkeys(str(x).strip() for x in data if str(x).strip()))


def install_filter(deny_syscalls: List[str]) -> None:
    """
    Load a deny-list filter into the current process:
    default ALLOW, every listed syscall kills the process.
    """
    try:
        import pyseccomp as seccomp
    except ImportError as e:
        raise SandboxSetupError("seccomp is enabled but pyseccomp is not installed") from e

    f = seccomp.SyscallFilter(seccomp.ALLOW)
    for name in deny_syscalls:
        try:
            f.add_rule(seccomp.KILL_PROCESS, name)
        except (RuntimeError, ValueError, OSError):
            # syscall unknown on this architecture
            continue
    f.load()
