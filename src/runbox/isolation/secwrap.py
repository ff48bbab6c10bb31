from __future__ import annotations
import argparse
import os
import sys
from pathlib import Path

from .seccomp import install_filter, load_syscall_list

# exit status when the filter cannot be installed (reported as SandboxFailure)
SETUP_FAILED = 121


def main(argv=None):
    ap = argparse.ArgumentParser(prog="runbox-secwrap")
    ap.add_argument("--policy", required=True)
    ap.add_argument("cmd", nargs=argparse.REMAINDER)
    args = ap.parse_args(argv)

    cmd = args.cmd[1:] if args.cmd[:1] == ["--"] else args.cmd
    if not cmd:
        ap.error("missing command after --")

    try:
        install_filter(load_syscall_list(Path(args.policy)))
    except Exception as e:
        print(f"[runbox-secwrap] {e}", file=sys.stderr)
        sys.exit(SETUP_FAILED)

    # exec the user program, filter stays attached across execve
    os.execvp(cmd[0], cmd)


if __name__ == "__main__":
    main()
