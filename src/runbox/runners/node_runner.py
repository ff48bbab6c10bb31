from pathlib import Path

from ..core.models import Language, ResourceBudget
from .base import Runtime


class NodeRuntime(Runtime):
    language = Language.NODE
    entry = "main.js"
    address_space_limit = False
    oom_markers = ("JavaScript heap out of memory",)

    def command(self, entry: Path, budget: ResourceBudget):
        heap_mb = max(16, budget.memory_bytes // (1024 * 1024))
        return [self.binary, f"--max-old-space-size={heap_mb}", str(entry)]
