from pathlib import Path

from ..core.models import Language, ResourceBudget
from .base import Runtime


class BashRuntime(Runtime):
    language = Language.BASH
    entry = "main.sh"

    def command(self, entry: Path, budget: ResourceBudget):
        return [self.binary, "--noprofile", "--norc", str(entry)]
