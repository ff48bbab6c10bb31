from __future__ import annotations
from pathlib import Path
from typing import Dict, List, Tuple

from ..core.models import Language, ResourceBudget


class Runtime:
    """Fixed launch configuration for one supported language."""

    language: Language
    entry: str = "main"
    # False for runtimes that reserve large virtual ranges up front (V8)
    address_space_limit: bool = True
    # stderr text a runtime prints when it dies for lack of memory
    oom_markers: Tuple[str, ...] = ()
    env: Dict[str, str] = {}

    def __init__(self, binary: str):
        self.binary = binary

    def command(self, entry: Path, budget: ResourceBudget) -> List[str]:
        raise NotImplementedError
