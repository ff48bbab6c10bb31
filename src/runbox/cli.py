from __future__ import annotations
import argparse
import json
import sys
from pathlib import Path

from .core.errors import SubmissionError
from .core.models import ExecutionRequest, TerminalState
from .core.settings import load_settings
from .logging import setup_logging

LIMIT_FLAGS = {
    "cpu_ms": "cpu_time_ms",
    "wall_ms": "wall_time_ms",
    "memory": "memory_bytes",
    "max_output": "max_output_bytes",
    "max_procs": "max_processes",
}


def _serve(args) -> int:
    import uvicorn

    uvicorn.run("runbox.api.app:app", host=args.host, port=args.port, log_level="info")
    return 0


def _run(args) -> int:
    from .services.execution_service import ExecutionService

    settings = load_settings(args.conf)
    # stdout carries the result document
    setup_logging("WARNING" if not args.verbose else settings.log_level, stream=sys.stderr)
    source = Path(args.file).read_text(encoding="utf-8")
    stdin = Path(args.stdin).read_text(encoding="utf-8") if args.stdin else None
    override = {field: getattr(args, flag) for flag, field in LIMIT_FLAGS.items()
                if getattr(args, flag) is not None}

    svc = ExecutionService(settings.model_copy(update={"workers": 1, "queue_capacity": 0}))
    with svc:
        try:
            admission = svc.submit(ExecutionRequest(
                language=args.language, source=source, stdin=stdin, limits_override=override or None,
            ))
        except SubmissionError as e:
            print(json.dumps({"error": e.code, "detail": str(e)}), file=sys.stderr)
            return 2
        result = admission.result()

    print(json.dumps(result.to_wire(), indent=2, ensure_ascii=False))
    return 1 if result.state is TerminalState.SANDBOX_FAILURE else 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="runbox", description="Sandboxed code execution service")
    sub = ap.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)
    serve.set_defaults(func=_serve)

    run = sub.add_parser("run", help="execute one file in a sandbox and print the result")
    run.add_argument("file")
    run.add_argument("--language", "-l", default="python")
    run.add_argument("--stdin")
    run.add_argument("--conf", type=Path)
    run.add_argument("--verbose", "-v", action="store_true")
    for flag in LIMIT_FLAGS:
        run.add_argument(f"--{flag.replace('_', '-')}", dest=flag, type=int)
    run.set_defaults(func=_run)
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
