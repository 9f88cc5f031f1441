"""LOOP entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import LoopExtensionError, load_runtime_services
from host import DEFAULT_TICK, HostLoop
from interpreter import DEFAULT_BUDGET, Execution, ExecutionState, Interpreter, Status, TracebackFormatter
from lexer import LoopLexError, LoopParseError
from parser import parse_source


def _report_failure(interpreter: Interpreter, status: Status, *, verbose: bool, traceback_json: bool) -> None:
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(status.error, verbose=verbose), file=sys.stderr)
    if traceback_json:
        print(formatter.to_json(status.error), file=sys.stderr)


def _list_builtins(interpreter: Interpreter) -> None:
    for name in sorted(interpreter.builtins.table):
        builtin = interpreter.builtins.table[name]
        kind = "suspends" if builtin.suspends else "instant"
        line = f"  {name:<16} {kind}"
        if builtin.doc:
            line += f"  {builtin.doc}"
        print(line)


def run_repl(interpreter: Interpreter, *, verbose: bool, tick: float, realtime: bool) -> int:
    print("\x1b[38;2;153;221;255mLOOP\033[0m REPL. Enter statements, blank line to run buffer, :builtins to list builtins.")
    buffer: List[str] = []

    def _run(source_text: str) -> None:
        try:
            program = parse_source(source_text, "<repl>")
        except (LoopLexError, LoopParseError) as error:
            print(str(error), file=sys.stderr)
            return
        status = HostLoop(Execution(interpreter, program), tick=tick, realtime=realtime).run()
        if status.state is ExecutionState.FAILED:
            _report_failure(interpreter, status, verbose=verbose, traceback_json=False)

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m...\033[0m "
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()
        if not buffer and stripped in (":quit", ":exit"):
            break
        if not buffer and stripped == ":builtins":
            _list_builtins(interpreter)
            continue

        if not buffer and stripped != "" and not stripped.endswith(":"):
            try:
                parse_source(line, "<repl>")
            except (LoopLexError, LoopParseError):
                # If a single line does not parse, treat it as the start of multi-line input
                buffer.append(line)
                continue
            _run(line)
            continue

        if stripped == "" and buffer:
            source_text = "\n".join(buffer)
            buffer.clear()
            _run(source_text)
            continue

        if stripped != "" or buffer:
            buffer.append(line)
    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="LOOP reference interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Keep the full state log and emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension (.py) or extension list (.loopx); repeatable")
    parser.add_argument("--budget", type=int, default=DEFAULT_BUDGET, help="Instructions per tick before a budget pause")
    parser.add_argument("--tick", type=float, default=DEFAULT_TICK, help="Seconds of host time per tick")
    parser.add_argument("--realtime", action="store_true", help="Sleep for each tick instead of using a virtual clock")
    args = parser.parse_args(argv)

    if args.budget < 1:
        print("--budget must be >= 1", file=sys.stderr)
        return 1
    if args.tick <= 0:
        print("--tick must be positive", file=sys.stderr)
        return 1

    try:
        services = load_runtime_services(args.ext)
    except LoopExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    try:
        interpreter = Interpreter(services=services, budget=args.budget, verbose=args.verbose)
    except LoopExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(interpreter, verbose=args.verbose, tick=args.tick, realtime=args.realtime)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    try:
        program = parse_source(source_text, filename)
    except (LoopLexError, LoopParseError) as error:
        print(str(error), file=sys.stderr)
        return 1

    status = HostLoop(Execution(interpreter, program), tick=args.tick, realtime=args.realtime).run()
    if status.state is ExecutionState.FAILED:
        _report_failure(interpreter, status, verbose=args.verbose, traceback_json=args.traceback_json)
        return 1
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
