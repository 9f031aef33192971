"""Interactive prompt for the QASM interpreter.

    qasm-repl [--input FILE] [--dbg] [--history PATH]
"""
from __future__ import annotations
import argparse
import logging
import os
import sys
from typing import Callable, List, Optional

# Windows doesn't ship readline; the prompt then works without history
try:
    import readline
except ImportError:
    readline = None

from qasm_engine import EngineError
from qasm_interpreter import Interpreter, InterpreterError, LoadError

logger = logging.getLogger(__name__)

PROLOGUE = "QASM REPL - interactive OpenQASM interpreter (:help for directives)\n"
PROMPT = "|Q> "
BLOCK_PROMPT = "... "
DEFAULT_HISTORY = os.path.join("~", ".qasm_repl_history")
HISTORY_SIZE = 1000
LOG_ENV = "QASM_REPL_LOG"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qasm-repl", description="Interactive OpenQASM interpreter")
    parser.add_argument("-i", "--input", help="QASM script to run before the prompt opens")
    parser.add_argument("--dbg", action="store_true", help="print debug representations of errors")
    parser.add_argument("--history", default=DEFAULT_HISTORY,
                        help="history file for interpreter commands (default: %(default)s)")
    return parser


def configure_logging():
    level = os.environ.get(LOG_ENV, "WARNING").upper()
    logging.basicConfig(level=getattr(logging, level, logging.WARNING),
                        format="%(levelname)s %(name)s: %(message)s")


def _load_history(path: str):
    if readline is None:
        return
    readline.set_history_length(HISTORY_SIZE)
    try:
        readline.read_history_file(path)
    except OSError as e:
        logger.debug("No history loaded from %s: %s", path, e)


def _save_history(path: str):
    if readline is None:
        return
    try:
        readline.write_history_file(path)
    except OSError as e:
        logger.warning("Could not save history to %s: %s", path, e)


def run(interpreter: Interpreter, read: Callable[[str], str] = input) -> int:
    """Read lines until :quit or end of input."""
    while interpreter.running:
        prompt = BLOCK_PROMPT if interpreter.continuation else PROMPT
        try:
            line = read(prompt)
        except KeyboardInterrupt:
            print()
            interpreter.interrupt()
            continue
        except EOFError:
            print()
            break
        interpreter.feed(line)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    interpreter = Interpreter(debug=args.dbg)
    print(PROLOGUE)

    if args.input:
        try:
            interpreter.load(args.input)
        except LoadError as err:
            interpreter.report(err)
            return 1
        except (InterpreterError, EngineError) as err:
            interpreter.report(err)
        if not interpreter.running:
            return 0

    history = os.path.expanduser(args.history)
    _load_history(history)
    try:
        return run(interpreter)
    finally:
        _save_history(history)


if __name__ == "__main__":
    sys.exit(main())
