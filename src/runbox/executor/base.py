from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class ExecSpec:
    argv: List[str]
    workdir: Path
    env: Dict[str, str]
    stdin: Optional[bytes]
    wall_timeout_ms: int


SAFE_PATH = "/usr/local/bin:/usr/bin:/bin"


def sandbox_env(home: str, extra: Dict[str, str]) -> Dict[str, str]:
    """Scrubbed environment: nothing of the service's own env leaks in."""
    env = {
        "PATH": SAFE_PATH,
        "HOME": home,
        "TMPDIR": home,
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
    }
    env.update(extra)
    return env
