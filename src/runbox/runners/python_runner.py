from pathlib import Path

from ..core.models import Language, ResourceBudget
from .base import Runtime


class PythonRuntime(Runtime):
    language = Language.PYTHON
    entry = "main.py"
    oom_markers = ("MemoryError",)
    env = {"PYTHONUNBUFFERED": "1", "PYTHONDONTWRITEBYTECODE": "1"}

    def command(self, entry: Path, budget: ResourceBudget):
        # -I: ignore PYTHON* env and user site-packages
        return [self.binary, "-I", str(entry)]
