import pytest

from runbox.core.errors import InvalidBudget
from runbox.core.settings import CAP_LIMITS, DEFAULT_LIMITS, FLOOR_LIMITS
from runbox.services.budget import BudgetPolicy


@pytest.fixture
def policy():
    return BudgetPolicy(DEFAULT_LIMITS, CAP_LIMITS, FLOOR_LIMITS)


def test_no_override_gives_defaults(policy):
    assert policy.resolve(None).as_dict() == DEFAULT_LIMITS
    assert policy.resolve({}).as_dict() == DEFAULT_LIMITS


def test_partial_override_keeps_other_defaults(policy):
    b = policy.resolve({"wall_time_ms": 3000})
    assert b.wall_time_ms == 3000
    assert b.cpu_time_ms == DEFAULT_LIMITS["cpu_time_ms"]
    assert b.memory_bytes == DEFAULT_LIMITS["memory_bytes"]


def test_camel_case_names_accepted(policy):
    b = policy.resolve({"cpuTimeMs": 500, "maxProcesses": 2})
    assert b.cpu_time_ms == 500
    assert b.max_processes == 2


def test_above_cap_is_clamped(policy):
    b = policy.resolve({"memory_bytes": 10 * 1024 ** 3, "wall_time_ms": 10 ** 9})
    assert b.memory_bytes == CAP_LIMITS["memory_bytes"]
    assert b.wall_time_ms == CAP_LIMITS["wall_time_ms"]


def test_at_floor_is_fine(policy):
    assert policy.resolve({"cpu_time_ms": FLOOR_LIMITS["cpu_time_ms"]}).cpu_time_ms == FLOOR_LIMITS["cpu_time_ms"]


@pytest.mark.parametrize("override", [
    {"cpu_time_ms": 0},
    {"wall_time_ms": -1},
    {"memory_bytes": 1024},
    {"max_processes": 0},
])
def test_below_floor_rejected(policy, override):
    with pytest.raises(InvalidBudget):
        policy.resolve(override)


@pytest.mark.parametrize("override", [
    {"cpu_time_ms": "1000"},
    {"cpu_time_ms": 1.5},
    {"cpu_time_ms": True},
    {"cpu_time_ms": float("inf")},
])
def test_non_integer_rejected(policy, override):
    with pytest.raises(InvalidBudget):
        policy.resolve(override)


def test_integral_float_accepted(policy):
    assert policy.resolve({"cpu_time_ms": 1500.0}).cpu_time_ms == 1500


def test_unknown_field_rejected(policy):
    with pytest.raises(InvalidBudget) as ei:
        policy.resolve({"gpu_ms": 10})
    assert "gpu_ms" in str(ei.value)


def test_none_values_ignored(policy):
    assert policy.resolve({"cpu_time_ms": None}).cpu_time_ms == DEFAULT_LIMITS["cpu_time_ms"]


def test_default_above_cap_is_clamped():
    caps = {**CAP_LIMITS, "wall_time_ms": 1000}
    p = BudgetPolicy(DEFAULT_LIMITS, caps, FLOOR_LIMITS)
    assert p.resolve().wall_time_ms == 1000


def test_from_settings_uses_configured_tables(settings):
    s = settings.model_copy(update={"default_limits": {**DEFAULT_LIMITS, "cpu_time_ms": 700}})
    assert BudgetPolicy.from_settings(s).resolve().cpu_time_ms == 700
