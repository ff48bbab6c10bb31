from __future__ import annotations
import os, shutil, signal, stat, subprocess, sys, threading, time
from pathlib import Path
from typing import Optional

import structlog

from ..core.errors import SandboxSetupError
from ..isolation.limiter import Limiter
from ..runner.output import CappedStream, StdinFeeder
from .base import ExecSpec

log = structlog.get_logger(__name__)

# how long teardown waits for the group to die and pipes to drain
DRAIN_TIMEOUT_S = 2.0


def _force_remove(func, path, exc_info):
    # user code may leave read-only dirs behind
    parent = os.path.dirname(path)
    os.chmod(parent, stat.S_IRWXU)
    if os.path.isdir(path) and not os.path.islink(path):
        os.chmod(path, stat.S_IRWXU)
    func(path)


class SandboxHandle:
    """
    Owns one live execution context: scratch dir, process group, limiter state.

    close() is the single teardown path and runs its body exactly once no
    matter how many exit paths call it.
    """

    def __init__(self, job_id: str, jobs_dir: Path, limiter: Limiter):
        self.job_id = job_id
        self.jobs_dir = jobs_dir
        self.scratch = jobs_dir / job_id
        self.limiter = limiter
        self.proc: Optional[subprocess.Popen] = None
        self.stdout: Optional[CappedStream] = None
        self.stderr: Optional[CappedStream] = None
        self._feeder: Optional[StdinFeeder] = None
        self.overflow = threading.Event()
        self.exited = threading.Event()
        self.max_rss: Optional[int] = None
        self.started_at: Optional[float] = None
        self.ended_at: Optional[float] = None
        self._closed = False
        self._lock = threading.Lock()
        self._scratch_created = False

    def __enter__(self) -> "SandboxHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------ lifecycle ------------

    def open(self) -> None:
        try:
            self.jobs_dir.mkdir(parents=True, exist_ok=True)
            self.scratch.mkdir(mode=0o700)
        except OSError as e:
            raise SandboxSetupError(f"cannot create scratch dir {self.scratch}: {e}") from e
        self._scratch_created = True
        self.limiter.prepare(self.job_id)

    def write_file(self, name: str, text: str) -> Path:
        p = self.scratch / name
        try:
            p.write_text(text, encoding="utf-8")
        except OSError as e:
            raise SandboxSetupError(f"cannot write {p}: {e}") from e
        return p

    def spawn(self, spec: ExecSpec, max_output_bytes: int) -> None:
        limiter = self.limiter

        def _preexec():
            # own session so the whole tree dies with one killpg
            os.setsid()
            limiter.child_setup()

        try:
            self.proc = subprocess.Popen(
                spec.argv,
                stdin=subprocess.PIPE if spec.stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(spec.workdir),
                env=spec.env,
                close_fds=True,
                preexec_fn=_preexec,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise SandboxSetupError(f"spawn failed: {e}") from e

        self.started_at = time.monotonic()
        limiter.started(self.proc.pid)
        self.stdout = CappedStream(self.proc.stdout, max_output_bytes, self.overflow.set, "stdout").start()
        self.stderr = CappedStream(self.proc.stderr, max_output_bytes, self.overflow.set, "stderr").start()
        if spec.stdin is not None:
            self._feeder = StdinFeeder(self.proc.stdin, spec.stdin).start()
        threading.Thread(target=self._reap, name=f"runbox-reap-{self.job_id}", daemon=True).start()

    def _reap(self) -> None:
        try:
            _, status, usage = os.wait4(self.proc.pid, 0)
            self.proc.returncode = os.waitstatus_to_exitcode(status)
            self.max_rss = usage.ru_maxrss * 1024
        except ChildProcessError:
            log.warning("reap_lost", job_id=self.job_id, pid=self.proc.pid)
        finally:
            self.ended_at = time.monotonic()
            self.exited.set()

    def wait_exit(self, timeout: float) -> bool:
        return self.exited.wait(timeout)

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode if self.proc is not None else None

    def kill(self) -> None:
        """SIGKILL the process group and anything the limiter tracks."""
        if self.proc is not None:
            try:
                os.killpg(self.proc.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass
        self.limiter.kill()

    def drain(self) -> None:
        """Kill stragglers, wait for the leader and let both readers hit EOF."""
        if self.proc is None:
            return
        self.kill()
        self.exited.wait(DRAIN_TIMEOUT_S)
        for s in (self.stdout, self.stderr):
            if s is not None and not s.join(DRAIN_TIMEOUT_S):
                log.warning("stream_drain_timeout", job_id=self.job_id, stream=s.name)
        if self._feeder is not None:
            self._feeder.join(DRAIN_TIMEOUT_S)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True

        try:
            self.drain()
        finally:
            if self.proc is not None:
                for pipe in (self.proc.stdin, self.proc.stdout, self.proc.stderr):
                    if pipe is not None:
                        try:
                            pipe.close()
                        except OSError:
                            pass
            try:
                self.limiter.release()
            except Exception:
                log.exception("limiter_release_failed", job_id=self.job_id)
            if self._scratch_created:
                try:
                    if sys.version_info >= (3, 12):
                        shutil.rmtree(self.scratch, onexc=_force_remove)
                    else:
                        shutil.rmtree(self.scratch, onerror=_force_remove)
                except OSError:
                    log.exception("scratch_cleanup_failed", job_id=self.job_id, path=str(self.scratch))
