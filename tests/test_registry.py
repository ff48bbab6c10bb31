import sys
from pathlib import Path

import pytest

from conftest import make_budget
from runbox.core.errors import UnsupportedLanguage
from runbox.core.models import Language
from runbox.runners.bash_runner import BashRuntime
from runbox.runners.node_runner import NodeRuntime
from runbox.runners.python_runner import PythonRuntime
from runbox.runners.registry import RuntimeRegistry


def test_resolve_known_language(registry):
    rt = registry.resolve("python")
    assert isinstance(rt, PythonRuntime)
    assert rt.binary == sys.executable
    assert registry.resolve("PYTHON") is rt
    assert registry.get(Language.PYTHON) is rt


@pytest.mark.parametrize("name", ["cobol", "", "py", None])
def test_resolve_unknown_language(registry, name):
    with pytest.raises(UnsupportedLanguage):
        registry.resolve(name)


def test_missing_binary_is_left_out(settings):
    s = settings.model_copy(update={
        "languages": ["python", "node"],
        "runtimes": {"python": sys.executable, "node": "/nonexistent/node-binary"},
    })
    reg = RuntimeRegistry.from_settings(s)
    assert reg.languages() == ["python"]
    with pytest.raises(UnsupportedLanguage):
        reg.resolve("node")


def test_binaries_not_checked_inside_rootfs(settings):
    s = settings.model_copy(update={
        "languages": ["node"], "runtimes": {"node": "/usr/bin/node"}, "rootfs": Path("/srv/rootfs"),
    })
    reg = RuntimeRegistry.from_settings(s)
    assert reg.resolve("node").binary == "/usr/bin/node"


def test_unknown_configured_language(settings):
    s = settings.model_copy(update={"languages": ["python", "fortran"]})
    with pytest.raises(ValueError):
        RuntimeRegistry.from_settings(s)


def test_python_command():
    cmd = PythonRuntime("/usr/bin/python3").command(Path("/w/main.py"), make_budget())
    assert cmd == ["/usr/bin/python3", "-I", "/w/main.py"]


def test_node_heap_follows_memory_budget():
    rt = NodeRuntime("/usr/bin/node")
    cmd = rt.command(Path("/w/main.js"), make_budget(memory_bytes=256 * 1024 * 1024))
    assert cmd[0] == "/usr/bin/node"
    assert cmd[-1] == "/w/main.js"
    heap = [a for a in cmd if a.startswith("--max-old-space-size=")]
    assert len(heap) == 1
    assert 0 < int(heap[0].split("=")[1]) <= 256
    # V8 reserves address space up front; RLIMIT_AS would break it
    assert rt.address_space_limit is False


def test_bash_command():
    cmd = BashRuntime("/bin/bash").command(Path("/w/main.sh"), make_budget())
    assert cmd == ["/bin/bash", "--noprofile", "--norc", "/w/main.sh"]
