from __future__ import annotations
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional
import os

import yaml
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import BUDGET_FIELDS

ENV_PREFIX = "RUNBOX_"

DEFAULT_LIMITS: Dict[str, int] = {
    "cpu_time_ms": 2000,
    "wall_time_ms": 5000,
    "memory_bytes": 128 * 1024 * 1024,
    "max_output_bytes": 64 * 1024,
    "max_processes": 16,
}
CAP_LIMITS: Dict[str, int] = {
    "cpu_time_ms": 10_000,
    "wall_time_ms": 20_000,
    "memory_bytes": 512 * 1024 * 1024,
    "max_output_bytes": 1024 * 1024,
    "max_processes": 64,
}
FLOOR_LIMITS: Dict[str, int] = {
    "cpu_time_ms": 100,
    "wall_time_ms": 100,
    "memory_bytes": 32 * 1024 * 1024,
    "max_output_bytes": 1,
    "max_processes": 1,
}


class Settings(BaseSettings):
    """Service configuration: RUNBOX_* env over conf/sandbox.yaml over defaults."""

    # ---- paths ----
    jobs_dir: Path = Path("/tmp/runbox/jobs")
    limits_file: Path = Path("conf/limits.yaml")

    # ---- pool / queue ----
    workers: int = 4
    queue_capacity: int = 32
    max_pending_per_submitter: int = 0
    poll_interval_ms: int = 50

    # ---- isolation ----
    # "none" is for development only: no mount, pid or network separation
    isolation_strategy: Literal["none", "ns"] = "ns"
    allow_network: bool = False
    rootfs: Optional[Path] = None
    private_tmp: bool = True
    limiter_strategy: Literal["rlimit", "cgroup"] = "rlimit"
    cgroup_base: Optional[Path] = None
    seccomp_enabled: bool = False
    seccomp_policy: Path = Path("conf/seccomp.min.yaml")
    nofile: int = 64
    max_file_bytes: int = 16 * 1024 * 1024

    # ---- payload ----
    max_source_bytes: int = 256 * 1024
    max_stdin_bytes: int = 1024 * 1024

    # ---- runtimes ----
    languages: List[str] = ["python", "node", "bash"]
    runtimes: Dict[str, str] = {"python": "python3", "node": "node", "bash": "bash"}

    # ---- budgets (read from conf/limits.yaml) ----
    default_limits: Dict[str, int] = dict(DEFAULT_LIMITS)
    cap_limits: Dict[str, int] = dict(CAP_LIMITS)
    floor_limits: Dict[str, int] = dict(FLOOR_LIMITS)

    # ---- http ----
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:3010"]

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    @field_validator("poll_interval_ms")
    @classmethod
    def _tick_bounded(cls, v: int) -> int:
        # one tick is the detection latency of every limit
        if not 1 <= v <= 100:
            raise ValueError("poll_interval_ms must be within 1..100")
        return v

    @field_validator("workers")
    @classmethod
    def _workers_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("workers must be >= 1")
        return v

    @field_validator("queue_capacity", "max_pending_per_submitter")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("default_limits", "cap_limits", "floor_limits")
    @classmethod
    def _known_limit_keys(cls, v: Dict[str, int]) -> Dict[str, int]:
        unknown = set(v) - set(BUDGET_FIELDS)
        if unknown:
            raise ValueError(f"unknown limit keys: {sorted(unknown)}")
        return v

    @model_validator(mode="after")
    def _check_budget_tables(self) -> "Settings":
        defaults = {**DEFAULT_LIMITS, **self.default_limits}
        caps = {**CAP_LIMITS, **self.cap_limits}
        floors = {**FLOOR_LIMITS, **self.floor_limits}
        for key in BUDGET_FIELDS:
            if floors[key] > caps[key]:
                raise ValueError(f"floor for {key} is above its cap")
            if not floors[key] <= defaults[key]:
                raise ValueError(f"default for {key} is below its floor")
        self.default_limits, self.cap_limits, self.floor_limits = defaults, caps, floors
        if self.seccomp_enabled and self.rootfs is not None:
            raise ValueError("seccomp is applied inside the sandbox and cannot be combined with rootfs")
        return self


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def _flatten(sandbox: Dict[str, Any], limits: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in ("jobs_dir", "limits_file", "workers", "queue_capacity",
                "max_pending_per_submitter", "poll_interval_ms", "allow_network",
                "rootfs", "nofile", "max_file_bytes", "max_source_bytes",
                "max_stdin_bytes", "languages", "runtimes", "log_level",
                "private_tmp", "cors_origins"):
        if key in sandbox:
            out[key] = sandbox[key]

    iso = sandbox.get("isolation") or {}
    if "strategy" in iso:
        out["isolation_strategy"] = iso["strategy"]
    lim = sandbox.get("limiter") or {}
    if "strategy" in lim:
        out["limiter_strategy"] = lim["strategy"]
    cg = sandbox.get("cgroup") or {}
    if "base" in cg:
        out["cgroup_base"] = cg["base"]
    sec = sandbox.get("seccomp") or {}
    if "enabled" in sec:
        out["seccomp_enabled"] = sec["enabled"]
    if "policy" in sec:
        out["seccomp_policy"] = sec["policy"]

    for section, key in (("defaults", "default_limits"), ("caps", "cap_limits"), ("floors", "floor_limits")):
        if limits.get(section):
            out[key] = limits[section]
    return out


def load_settings(conf_path: Optional[Path] = None) -> Settings:
    # 0) conf/sandbox.yaml (or RUNBOX_CONF)
    path = Path(conf_path or os.environ.get(f"{ENV_PREFIX}CONF", "conf/sandbox.yaml"))
    sandbox = _read_yaml(path)

    # 1) conf/limits.yaml, path from env / sandbox.yaml / default
    limits_path = Path(
        os.environ.get(f"{ENV_PREFIX}LIMITS_FILE")
        or sandbox.get("limits_file")
        or Settings.model_fields["limits_file"].default
    )
    limits = _read_yaml(limits_path)

    # 2) RUNBOX_* env wins over YAML
    values = {
        k: v for k, v in _flatten(sandbox, limits).items()
        if f"{ENV_PREFIX}{k.upper()}" not in os.environ
    }
    return Settings(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
