"""steptrace entry point: run an ESTree JSON program and print its step trace."""

from __future__ import annotations
import argparse
import json
import logging
import sys
from typing import Any, List, Optional

from heap import RunResult
from interpreter import MAX_CALL_DEPTH, MAX_OPS, Interpreter, TracebackFormatter


def load_program(filename: str) -> Any:
    if filename == "-":
        return json.load(sys.stdin)
    with open(filename, "r", encoding="utf-8") as handle:
        return json.load(handle)


def print_trace(result: RunResult, follow: bool) -> None:
    printed = 0
    for index, step in enumerate(result.steps):
        print(f"{index:4d}  line {step.state.current_line:<4d} {step.label}")
        if follow:
            for text in step.state.console[printed:]:
                print(f"      > {text}")
            printed = len(step.state.console)
    final = result.final_state
    if not follow and final is not None and final.console:
        print("console:")
        for text in final.console:
            print(f"  {text}")


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Step-recording interpreter for a JavaScript subset")
    parser.add_argument("program", help="ESTree JSON file (with loc info), or - for stdin")
    parser.add_argument("--max-ops", type=int, default=MAX_OPS, help="Operation budget before the run is stopped")
    parser.add_argument("--max-depth", type=int, default=MAX_CALL_DEPTH, help="Maximum call depth")
    parser.add_argument("--json", action="store_true", help="Dump the full run result as JSON")
    parser.add_argument("--follow", action="store_true", help="Interleave console output with the steps that produced it")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, ...)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))

    try:
        program = load_program(args.program)
    except OSError as exc:
        print(f"Failed to read {args.program}: {exc}", file=sys.stderr)
        return 1
    except json.JSONDecodeError as exc:
        print(f"Invalid JSON in {args.program}: {exc}", file=sys.stderr)
        return 1

    interpreter = Interpreter(max_ops=args.max_ops, max_call_depth=args.max_depth)
    result = interpreter.run(program)

    if args.json:
        print(result.to_json(indent=2))
    else:
        print_trace(result, args.follow)

    if result.error is not None:
        formatter = TracebackFormatter(interpreter)
        error = interpreter.last_error
        print(formatter.format_text(error), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
