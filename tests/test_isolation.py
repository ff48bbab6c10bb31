import json
import shlex
import sys
from pathlib import Path

import pytest

from runbox.core.errors import SandboxSetupError
from runbox.isolation import ns_chroot
from runbox.isolation.isolation import IsolationPipeline, probe_capabilities
from runbox.isolation.seccomp import load_syscall_list
from runbox.isolation.secwrap import SETUP_FAILED, main as secwrap_main

CMD = ["/usr/bin/python3", "-I", "/jobs/j1/main.py"]


@pytest.fixture
def fake_unshare(monkeypatch):
    monkeypatch.setattr(ns_chroot.shutil, "which", lambda name: f"/usr/bin/{name}")


def test_no_isolation_is_identity(tmp_path):
    p = IsolationPipeline("none", allow_network=False)
    assert p.build(CMD, tmp_path) == CMD
    assert p.overhead == 0
    assert not p.chrooted


def test_ns_wraps_with_unshare(fake_unshare, tmp_path):
    scratch = tmp_path / "jobs" / "j1"
    p = IsolationPipeline("ns", allow_network=False)
    argv = p.build(CMD, scratch)
    assert argv[0] == "/usr/bin/unshare"
    assert "--net" in argv
    assert "--pid" in argv and "--fork" in argv and "--kill-child" in argv
    assert argv[argv.index("--") + 1:-1] == ["/bin/sh", "-c"]
    assert argv[-1].endswith("exec /usr/bin/python3 -I /jobs/j1/main.py")
    assert p.overhead == 2


def test_ns_script_hides_sibling_jobs(fake_unshare, tmp_path):
    scratch = tmp_path / "jobs" / "j1"
    steps = IsolationPipeline("ns", allow_network=False).build(CMD, scratch)[-1].split(";")
    jobs = str(scratch.parent)
    assert steps[0] == "set -e"
    assert "mount -t tmpfs -o mode=1777,nosuid,nodev,size=16m tmpfs /tmp" in steps
    covered = steps.index(f"mount -t tmpfs -o mode=0755,nosuid,nodev,size=64k tmpfs {jobs}")
    bound = steps.index(f"mount --no-canonicalize --bind . {scratch}")
    # the job's own dir comes back only after the jobs dir is covered
    assert covered < bound < steps.index(f"cd {scratch}")


def test_ns_without_private_tmp(fake_unshare, tmp_path):
    script = IsolationPipeline("ns", allow_network=False, private_tmp=False).build(CMD, tmp_path / "j1")[-1]
    assert " /tmp;" not in script
    assert f"--bind . {tmp_path / 'j1'}" in script


def test_ns_with_network(fake_unshare, tmp_path):
    argv = IsolationPipeline("ns", allow_network=True).build(CMD, tmp_path)
    assert "--net" not in argv


def test_ns_without_unshare_fails(monkeypatch, tmp_path):
    monkeypatch.setattr(ns_chroot.shutil, "which", lambda name: None)
    with pytest.raises(SandboxSetupError):
        IsolationPipeline("ns", allow_network=False).build(CMD, tmp_path)


def test_chroot_needs_ready_rootfs(fake_unshare, tmp_path):
    p = IsolationPipeline("ns", allow_network=False, rootfs=tmp_path / "empty")
    with pytest.raises(SandboxSetupError):
        p.build(CMD, tmp_path / "scratch")


def test_chroot_script(fake_unshare, tmp_path):
    rootfs = tmp_path / "rootfs"
    (rootfs / "bin").mkdir(parents=True)
    scratch = tmp_path / "jobs" / "j1"
    p = IsolationPipeline("ns", allow_network=False, rootfs=rootfs)
    assert p.chrooted
    argv = p.build(["python3", "-I", "/work/main.py"], scratch)
    assert "--mount-proc" not in argv
    script = argv[-1]
    assert f"mount --bind {scratch} {rootfs}/work" in script
    assert f"exec chroot {rootfs}" in script
    assert "cd /work && exec python3 -I /work/main.py" in script


def test_sandbox_path():
    assert ns_chroot.sandbox_path(Path("/jobs/j1"), "main.py", None) == Path("/jobs/j1/main.py")
    assert ns_chroot.sandbox_path(Path("/jobs/j1"), "main.py", Path("/rootfs")) == Path("/work/main.py")


def test_seccomp_wrapper_sits_inside_namespaces(fake_unshare, tmp_path):
    policy = tmp_path / "deny.yaml"
    p = IsolationPipeline("ns", allow_network=False, seccomp_policy=policy)
    script = p.build(CMD, tmp_path / "j1")[-1]
    wrapped = [sys.executable, "-m", "runbox.isolation.secwrap", "--policy", str(policy), "--"] + CMD
    assert script.endswith("exec " + " ".join(shlex.quote(a) for a in wrapped))


def test_from_settings(settings):
    s = settings.model_copy(update={"seccomp_enabled": True})
    p = IsolationPipeline.from_settings(s)
    assert p.seccomp_policy == Path(s.seccomp_policy).resolve()
    assert IsolationPipeline.from_settings(settings).seccomp_policy is None


def test_probe_capabilities(settings):
    caps = probe_capabilities(IsolationPipeline.from_settings(settings), "rlimit")
    assert caps["strategy"] == "none"
    assert caps["limiter"] == "rlimit"
    assert "cgroup_v2" in caps and "has_unshare" in caps


def test_policy_yaml_and_json(tmp_path):
    y = tmp_path / "p.yaml"
    y.write_text("syscalls:\n  - ptrace\n  - mount\n  - ptrace\n")
    assert load_syscall_list(y) == ["ptrace", "mount"]

    j = tmp_path / "p.json"
    j.write_text(json.dumps(["bpf", " ", "setns"]))
    assert load_syscall_list(j) == ["bpf", "setns"]


def test_shipped_policy_parses():
    policy = Path(__file__).resolve().parent.parent / "conf" / "seccomp.min.yaml"
    names = load_syscall_list(policy)
    assert "ptrace" in names and "unshare" in names


@pytest.mark.parametrize("content", ["{not json", "syscalls: 3\n"])
def test_bad_policy(tmp_path, content):
    p = tmp_path / "bad"
    p.write_text(content)
    with pytest.raises(SandboxSetupError):
        load_syscall_list(p)


def test_missing_policy(tmp_path):
    with pytest.raises(SandboxSetupError):
        load_syscall_list(tmp_path / "nope.yaml")


def test_secwrap_reports_setup_failure(tmp_path, capsys):
    with pytest.raises(SystemExit) as ei:
        secwrap_main(["--policy", str(tmp_path / "nope.yaml"), "--", "true"])
    assert ei.value.code == SETUP_FAILED
    assert capsys.readouterr().err.startswith("[runbox-secwrap]")
