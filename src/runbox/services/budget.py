from __future__ import annotations
from typing import Any, Dict, Mapping, Optional

from ..core.errors import InvalidBudget
from ..core.models import BUDGET_ALIASES, BUDGET_FIELDS, ResourceBudget


class BudgetPolicy:
    """
    Resolves a caller's partial limits override into a full ResourceBudget.

    Unspecified fields take the default; anything above the hard cap is
    clamped; anything below the floor is rejected.
    """

    def __init__(self, defaults: Mapping[str, int], caps: Mapping[str, int], floors: Mapping[str, int]):
        self.defaults = ResourceBudget(**{k: int(defaults[k]) for k in BUDGET_FIELDS})
        self.caps = ResourceBudget(**{k: int(caps[k]) for k in BUDGET_FIELDS})
        self.floors = ResourceBudget(**{k: int(floors[k]) for k in BUDGET_FIELDS})

    @classmethod
    def from_settings(cls, s) -> "BudgetPolicy":
        return cls(s.default_limits, s.cap_limits, s.floor_limits)

    def resolve(self, override: Optional[Mapping[str, Any]] = None) -> ResourceBudget:
        values: Dict[str, int] = {
            k: min(v, getattr(self.caps, k)) for k, v in self.defaults.as_dict().items()
        }
        for key, raw in (override or {}).items():
            name = BUDGET_ALIASES.get(key, key)
            if name not in BUDGET_FIELDS:
                raise InvalidBudget(f"unknown limit: {key}")
            if raw is None:
                continue
            if isinstance(raw, float) and raw.is_integer():
                raw = int(raw)
            if isinstance(raw, bool) or not isinstance(raw, int):
                raise InvalidBudget(f"{key} must be an integer, got {raw!r}")
            value = raw
            floor = getattr(self.floors, name)
            if value < floor:
                raise InvalidBudget(f"{key}={value} is below the minimum of {floor}")
            values[name] = min(value, getattr(self.caps, name))
        return ResourceBudget(**values)
