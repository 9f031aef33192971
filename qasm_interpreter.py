"""Directive language, tags and loop blocks on top of the simulation engine.

Lines starting with ``:`` are directives; anything else is an OpenQASM
statement that is queued on the current session without being executed.
"""
from __future__ import annotations
import logging
import sys
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, TextIO, Tuple

from qasm_engine import Engine, EngineError, EngineState

logger = logging.getLogger(__name__)

MARKER = ":"
END_DIRECTIVE = "end"
MAX_NESTING = 64

HELP = """QASM REPL directives

USAGE:
    :DIRECTIVE [ARG] [:DIRECTIVE [ARG]...]
    Lines without the ':' marker are OpenQASM statements. They are queued,
    not executed, until :go.

DIRECTIVES:
    loop N      Repeat the following lines N times, up to the matching :end
                (or the rest of the line when more directives follow)
    end         Close the innermost :loop block
    tags TAG    Save the current state under TAG
    goto TAG    Replace the current state with a copy of TAG
    untag TAG   Forget TAG
    list        Show saved tags
    class       Show the classical registers
    polar       Show the quantum amplitudes in polar form
    prob        Show the quantum outcome probabilities
    ops         Show the queued operations (* marks pending ones)
    go          Run the queued operations
    reset       Clear the current state
    names       Show register aliases
    load FILE   Run the lines of FILE
    help        Show this reference
    quit        Exit the interpreter
"""


class InterpreterError(Exception):
    """Base class for errors raised while dispatching a line."""


class UnknownCommand(InterpreterError):
    pass


class BadArgument(InterpreterError):
    pass


class UnknownTag(InterpreterError):
    pass


class LoopError(InterpreterError):
    pass


class NotExecuted(InterpreterError):
    pass


class LoadError(InterpreterError):
    pass


@dataclass(frozen=True)
class Command:
    name: str
    args: Tuple[str, ...] = ()


# directive -> kind of its single argument (None: no argument)
DIRECTIVES: Dict[str, Optional[str]] = {
    "loop": "count",
    END_DIRECTIVE: None,
    "tags": "name",
    "goto": "name",
    "untag": "name",
    "list": None,
    "class": None,
    "polar": None,
    "prob": None,
    "ops": None,
    "go": None,
    "reset": None,
    "names": None,
    "load": "path",
    "help": None,
    "quit": None,
}


def is_directive(line: str) -> bool:
    return line.lstrip().startswith(MARKER)


def split_directives(line: str) -> List[List[str]]:
    """Lexically split a directive line into ``[name, *args]`` groups."""
    groups: List[List[str]] = []
    for token in line.split():
        if token.startswith(MARKER):
            groups.append([token[len(MARKER):]])
        elif groups:
            groups[-1].append(token)
        else:
            raise UnknownCommand(f"Directive lines must start with '{MARKER}'")
    return groups


def _check_args(name: str, kind: Optional[str], args: List[str]) -> Tuple[str, ...]:
    if kind is None:
        if args:
            raise BadArgument(f"{MARKER}{name} takes no arguments")
        return ()
    if kind == "path":
        if not args:
            raise BadArgument(f"{MARKER}{name} requires a file path")
        return (" ".join(args),)
    if len(args) != 1:
        raise BadArgument(f"{MARKER}{name} takes exactly one {kind}, got {len(args)}")
    if kind == "count":
        try:
            count = int(args[0])
        except ValueError:
            raise BadArgument(f"Loop count must be an integer, got '{args[0]}'") from None
        if count < 0:
            raise BadArgument(f"Loop count must be non-negative, got {count}")
    return (args[0],)


def parse_directives(line: str) -> List[Command]:
    """Parse a marker-prefixed line into commands, validating every argument."""
    commands = []
    for name, *args in split_directives(line):
        if name not in DIRECTIVES:
            raise UnknownCommand(f"Unknown command '{MARKER}{name}'")
        commands.append(Command(name, _check_args(name, DIRECTIVES[name], args)))
    return commands


# ----------------------------------------------------------------------------
# Snapshots and session
# ----------------------------------------------------------------------------
class SnapshotStore:
    """Named deep copies of engine state. Re-tagging overwrites."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._tags: Dict[str, EngineState] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._tags

    def __len__(self) -> int:
        return len(self._tags)

    def tag(self, name: str, state: EngineState):
        self._tags[name] = self._engine.snapshot(state)
        logger.debug("Tag %s created", name)

    def restore(self, name: str) -> EngineState:
        if name not in self._tags:
            raise UnknownTag(f"No tag named '{name}'")
        logger.debug("Restoring tag %s", name)
        return self._engine.restore(self._tags[name])

    def remove(self, name: str):
        if self._tags.pop(name, None) is None:
            raise UnknownTag(f"No tag named '{name}'")
        logger.debug("Tag %s removed", name)

    def names(self) -> List[str]:
        return list(self._tags)


class Session:
    """The live engine state plus its tags; the only caller of Engine.execute."""

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine if engine is not None else Engine()
        self.state = self.engine.new_state()
        self.snapshots = SnapshotStore(self.engine)

    def statement(self, text: str):
        self.engine.parse_statement(self.state, text)

    def go(self):
        self.engine.execute(self.state)

    def reset(self):
        self.state = self.engine.new_state()

    def tag(self, name: str):
        self.snapshots.tag(name, self.state)

    def goto(self, name: str):
        self.state = self.snapshots.restore(name)

    def untag(self, name: str):
        self.snapshots.remove(name)

    def _require_executed(self, view: str):
        if self.state.dirty:
            raise NotExecuted(f"Pending operations not executed; run {MARKER}go before {MARKER}{view}")

    def classical(self) -> str:
        return self.engine.render_classical(self.state)

    def polar(self) -> str:
        self._require_executed("polar")
        return self.engine.render_polar(self.state)

    def prob(self) -> str:
        self._require_executed("prob")
        return self.engine.render_prob(self.state)

    def ops(self) -> str:
        return self.engine.render_ops(self.state)

    def names(self) -> str:
        return self.engine.render_names(self.state)

    def tags(self) -> str:
        names = self.snapshots.names()
        return "Tags: " + (", ".join(names) if names else "(none)")


# ----------------------------------------------------------------------------
# Line processing
# ----------------------------------------------------------------------------
@dataclass
class LoopBlock:
    count: int
    lines: List[str] = field(default_factory=list)
    # nested :loop blocks currently open inside this capture
    depth: int = 0


@dataclass
class _Reader:
    """Accumulation state of one line source: an open loop or brace block."""

    loop: Optional[LoopBlock] = None
    statement: List[str] = field(default_factory=list)

    @property
    def idle(self) -> bool:
        return self.loop is None and not self.statement


def _open_braces(lines: List[str]) -> int:
    code = [ln.split("//", 1)[0] for ln in lines]
    return sum(ln.count("{") - ln.count("}") for ln in code)


class Interpreter:
    def __init__(self, session: Optional[Session] = None, out: Optional[TextIO] = None,
                 err: Optional[TextIO] = None, debug: bool = False):
        self.session = session if session is not None else Session()
        self.out = out
        self.err = err
        self.debug = debug
        self.running = True
        self._reader = _Reader()
        self._depth = 0
        self._handlers = {
            "tags": lambda cmd: self.session.tag(cmd.args[0]),
            "goto": lambda cmd: self.session.goto(cmd.args[0]),
            "untag": lambda cmd: self.session.untag(cmd.args[0]),
            "list": lambda cmd: self._emit(self.session.tags()),
            "class": lambda cmd: self._emit(self.session.classical()),
            "polar": lambda cmd: self._emit(self.session.polar()),
            "prob": lambda cmd: self._emit(self.session.prob()),
            "ops": lambda cmd: self._emit(self.session.ops()),
            "names": lambda cmd: self._emit(self.session.names()),
            "go": lambda cmd: self.session.go(),
            "reset": lambda cmd: self.session.reset(),
            "load": lambda cmd: self.load(cmd.args[0]),
            "help": lambda cmd: self._emit(HELP),
            "quit": lambda cmd: self.quit(),
        }

    @property
    def continuation(self) -> bool:
        """True while a loop block or a multi-line statement is being captured."""
        return not self._reader.idle

    def feed(self, line: str) -> bool:
        """Process one line, reporting errors. Returns False once quit was requested."""
        try:
            self.execute(line)
        except (InterpreterError, EngineError) as err:
            self.report(err)
        return self.running

    def execute(self, line: str):
        self._consume(self._reader, line)

    def interrupt(self):
        """Drop any partially captured loop block or statement."""
        self._reader = _Reader()

    def quit(self):
        self.running = False

    def load(self, path: str):
        try:
            source = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as err:
            raise LoadError(f"Cannot read '{path}': {err}") from err
        logger.debug("Loading %s", path)
        with self._nested("Loads"):
            reader = _Reader()
            for lineno, line in enumerate(source.splitlines(), start=1):
                if not self.running:
                    return
                try:
                    self._consume(reader, line)
                except (InterpreterError, EngineError) as err:
                    self.report(err, where=f"{path}:{lineno}")
            if not reader.idle:
                raise LoopError(f"Unterminated block at end of '{path}'")

    def report(self, err: Exception, where: Optional[str] = None):
        stream = self.err if self.err is not None else sys.stderr
        prefix = f"{where}: " if where else ""
        if self.debug:
            print(f"{prefix}{err!r}", file=stream)
            traceback.print_exception(type(err), err, err.__traceback__, file=stream)
        else:
            print(f"{prefix}{type(err).__name__}: {err}", file=stream)

    def _emit(self, text: str):
        print(text, file=self.out if self.out is not None else sys.stdout)

    @contextmanager
    def _nested(self, what: str) -> Iterator[None]:
        if self._depth >= MAX_NESTING:
            raise LoopError(f"{what} nested deeper than {MAX_NESTING} levels")
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1

    def _consume(self, reader: _Reader, line: str):
        if reader.loop is not None:
            self._capture(reader, line)
            return
        if reader.statement:
            reader.statement.append(line)
            if _open_braces(reader.statement) <= 0:
                text = "\n".join(reader.statement)
                reader.statement = []
                self.session.statement(text)
            return
        text = line.strip()
        if not text:
            return
        if is_directive(text):
            self._run(reader, parse_directives(text))
        elif _open_braces([line]) > 0:
            reader.statement = [line]
        else:
            self.session.statement(line)

    def _capture(self, reader: _Reader, line: str):
        block = reader.loop
        groups = split_directives(line) if is_directive(line) else []
        names = [g[0] for g in groups]
        if names and names[0] == END_DIRECTIVE:
            if block.depth == 0:
                try:
                    trailing = parse_directives(line)[1:]
                except InterpreterError as err:
                    raise type(err)(f"{err}; the {MARKER}loop block is still open") from err
                reader.loop = None
                self._replay(block)
                if trailing:
                    self._run(reader, trailing)
                return
            block.depth -= 1
        elif names and names[-1] == "loop":
            block.depth += 1
        block.lines.append(line)

    def _replay(self, block: LoopBlock):
        logger.debug("Replaying %d line(s) %d time(s)", len(block.lines), block.count)
        with self._nested("Loop blocks"):
            for _ in range(block.count):
                reader = _Reader()
                for line in block.lines:
                    if not self.running:
                        return
                    self._consume(reader, line)
                if not reader.idle:
                    raise LoopError("Unterminated block inside loop")

    def _run(self, reader: _Reader, commands: List[Command]):
        for i, cmd in enumerate(commands):
            if not self.running:
                return
            if cmd.name == "loop":
                count = int(cmd.args[0])
                rest = commands[i + 1:]
                if not rest:
                    reader.loop = LoopBlock(count)
                    logger.debug("Capturing loop block x%d", count)
                    return
                with self._nested("Loop blocks"):
                    for _ in range(count):
                        inner = _Reader()
                        self._run(inner, rest)
                        if not inner.idle:
                            raise LoopError(f"Inline {MARKER}loop cannot open a block")
                return
            if cmd.name == END_DIRECTIVE:
                raise LoopError(f"{MARKER}{END_DIRECTIVE} without a matching {MARKER}loop")
            self._handlers[cmd.name](cmd)
