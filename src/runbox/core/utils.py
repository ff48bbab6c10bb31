from __future__ import annotations
import re, secrets, time
from typing import Optional

# job ids name the scratch dir, so they must be a single safe path segment
JOB_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


def new_job_id() -> str:
    return f"{int(time.time())}-{secrets.token_hex(5)}"


def valid_job_id(job_id: str) -> bool:
    return bool(JOB_ID_RE.match(job_id))


def exit_code_from_returncode(rc: Optional[int]) -> Optional[int]:
    """Popen reports a signal death as -signo; callers see the shell form 128+signo."""
    if rc is None:
        return None
    if rc < 0:
        return 128 + (-rc)
    return rc


def tail_text(data: bytes, n: int = 4096) -> str:
    return data[-n:].decode("utf-8", errors="replace")
