from __future__ import annotations
import shutil
from typing import Dict, List, Optional, Type

import structlog

from ..core.errors import UnsupportedLanguage
from ..core.models import Language
from .base import Runtime
from .bash_runner import BashRuntime
from .node_runner import NodeRuntime
from .python_runner import PythonRuntime

log = structlog.get_logger(__name__)

RUNTIME_CLASSES: Dict[Language, Type[Runtime]] = {
    Language.PYTHON: PythonRuntime,
    Language.NODE: NodeRuntime,
    Language.BASH: BashRuntime,
}


class RuntimeRegistry:
    """The closed set of languages this deployment can run."""

    def __init__(self, runtimes: Dict[Language, Runtime]):
        self._runtimes = dict(runtimes)

    @classmethod
    def from_settings(cls, settings, check_binaries: Optional[bool] = None) -> "RuntimeRegistry":
        if check_binaries is None:
            # inside a rootfs the binaries live in the image, not on the host
            check_binaries = settings.rootfs is None
        runtimes: Dict[Language, Runtime] = {}
        for name in settings.languages:
            try:
                lang = Language(name)
            except ValueError:
                raise ValueError(f"unknown language in configuration: {name!r}")
            binary = settings.runtimes.get(lang.value, lang.value)
            if check_binaries:
                resolved = shutil.which(binary)
                if not resolved:
                    log.warning("runtime_unavailable", language=lang.value, binary=binary)
                    continue
                binary = resolved
            runtimes[lang] = RUNTIME_CLASSES[lang](binary)
        return cls(runtimes)

    def resolve(self, name: str) -> Runtime:
        try:
            lang = Language(str(name).lower())
        except ValueError:
            raise UnsupportedLanguage(f"unsupported language: {name!r}")
        rt = self._runtimes.get(lang)
        if rt is None:
            raise UnsupportedLanguage(f"language not available: {lang.value}")
        return rt

    def get(self, lang: Language) -> Runtime:
        return self.resolve(lang.value)

    def languages(self) -> List[str]:
        return [lang.value for lang in self._runtimes]
