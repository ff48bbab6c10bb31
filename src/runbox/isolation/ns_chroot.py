from __future__ import annotations
from pathlib import Path
from typing import List, Optional
import os, shlex, shutil

from ..core.errors import SandboxSetupError
from .secwrap import SETUP_FAILED

# where the scratch dir appears inside a rootfs
WORK_MOUNT = "/work"
# size of the per-job /tmp under strategy ns
TMP_SIZE = "16m"
# printed on stderr when a mount step fails, next to exit status SETUP_FAILED
NS_MARKER = "[runbox-ns]"


def _unshare_bin() -> str:
    unshare = shutil.which("unshare")
    if not unshare:
        raise SandboxSetupError("isolation strategy 'ns' needs util-linux unshare")
    return unshare


def unshare_flags(allow_network: bool) -> List[str]:
    # user ns first so an unprivileged service can create the others
    flags = ["--user", "--map-root-user", "--mount", "--pid", "--fork",
             "--kill-child", "--mount-proc", "--ipc", "--uts"]
    if not allow_network:
        flags.append("--net")
    return flags


def _setup_script(steps: List[str], final: str) -> str:
    on_fail = f"echo '{NS_MARKER} mount setup failed' >&2; exit {SETUP_FAILED}"
    return ";".join(
        ["set -e", f"trap {shlex.quote(on_fail)} EXIT"] + steps + ["trap - EXIT", f"exec {final}"]
    )


def wrap_with_ns(cmd: List[str], scratch: Path, allow_network: bool, private_tmp: bool = True) -> List[str]:
    """
    Private user/mount/pid/ipc/uts (and net) namespaces around `cmd`.

    Inside the mount namespace a fresh tmpfs covers the jobs dir and only this
    job's scratch dir is bound back, at its own path. Sibling jobs are not
    reachable by any path. With private_tmp, /tmp is a fresh tmpfs as well.
    Must be spawned with cwd=scratch.
    """
    unshare = _unshare_bin()
    scratch = Path(os.path.abspath(scratch))
    jobs = shlex.quote(str(scratch.parent))
    target = shlex.quote(str(scratch))

    steps = []
    if private_tmp:
        steps.append(f"mount -t tmpfs -o mode=1777,nosuid,nodev,size={TMP_SIZE} tmpfs /tmp")
    steps += [
        f"mkdir -p {jobs}",
        f"mount -t tmpfs -o mode=0755,nosuid,nodev,size=64k tmpfs {jobs}",
        f"mkdir {target}",
        # "." is still the real scratch dir under the new tmpfs; the path string
        # would now resolve to the empty mountpoint, so no canonicalizing
        f"mount --no-canonicalize --bind . {target}",
        f"cd {target}",
    ]
    script = _setup_script(steps, " ".join(map(shlex.quote, cmd)))
    return [unshare] + unshare_flags(allow_network) + ["--", "/bin/sh", "-c", script]


def wrap_with_ns_chroot(cmd: List[str], scratch: Path, rootfs: Path, allow_network: bool) -> List[str]:
    """
    Same namespaces, then bind the scratch dir on <rootfs>/work and chroot.
    The program sees the runtime image and /work, nothing of the host.
    """
    if not (rootfs / "bin").exists():
        raise SandboxSetupError(f"rootfs {rootfs} is not ready")
    mnt_work = shlex.quote(str(rootfs / WORK_MOUNT.lstrip("/")))
    mnt_proc = shlex.quote(str(rootfs / "proc"))
    inner = " ".join(map(shlex.quote, cmd))

    steps = [
        f"mount --bind {shlex.quote(str(scratch))} {mnt_work}",
        f"mount -o remount,bind,nosuid,nodev {mnt_work}",
        f"mount -t proc proc {mnt_proc}",
    ]
    final = f"chroot {shlex.quote(str(rootfs))} /bin/sh -c {shlex.quote(f'cd {WORK_MOUNT} && exec {inner}')}"
    # --mount-proc is replaced by the proc mount inside the rootfs
    flags = [f for f in unshare_flags(allow_network) if f != "--mount-proc"]
    return [_unshare_bin()] + flags + ["--", "/bin/sh", "-c", _setup_script(steps, final)]


def sandbox_path(scratch: Path, name: str, rootfs: Optional[Path]) -> Path:
    """Path of a scratch file as the sandboxed program sees it."""
    if rootfs is not None:
        return Path(WORK_MOUNT) / name
    return scratch / name
