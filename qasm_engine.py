from __future__ import annotations
import ast
import copy
import logging
import math
import operator
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

Array = np.ndarray
_EPS = 1e-12
MAX_QUBITS = 24


class EngineError(Exception):
    """Base class for failures raised by the simulation engine."""


class ParseError(EngineError):
    pass


class ExecError(EngineError):
    pass


# ----------------------------------------------------------------------------
# Utilities
# ----------------------------------------------------------------------------

def _validate_qubits(n_qubits: int, qs: Sequence[int]):
    for q in qs:
        if not (0 <= q < n_qubits):
            raise IndexError(f"Qubit index {q} out of range for {n_qubits} qubits")


def _as_tuple(x: Iterable[int]) -> Tuple[int, ...]:
    return tuple(int(v) for v in x)


def _apply_matrix(tensor: Array, axes: Sequence[int], U: Array) -> Array:
    # the first target is the least significant bit of the matrix index
    k = len(axes)
    src = tuple(reversed(axes))
    front = np.moveaxis(tensor, src, tuple(range(k)))
    shape = front.shape
    out = (U @ front.reshape((1 << k, -1))).reshape(shape)
    return np.moveaxis(out, tuple(range(k)), src)


# ----------------------------------------------------------------------------
# Simulator
# ----------------------------------------------------------------------------
class QuantumSimulator:
    def __init__(self, num_qubits: int, num_clbits: int = 0,
                 rng: Optional[np.random.Generator] = None, seed: Optional[int] = None):
        if num_qubits < 0:
            raise ValueError("num_qubits must be >= 0")
        self.num_qubits = int(num_qubits)
        self.dim = 1 << self.num_qubits
        self.dtype = np.complex128  # fixed double precision
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        # |0...0> statevector
        self.state: Array = np.zeros(self.dim, dtype=self.dtype)
        self.state[0] = 1.0 + 0.0j
        self.creg: List[int] = [0] * int(num_clbits)

    # ----------------------------- Numerics ---------------------------------
    def _axis_of(self, q: int) -> int:
        # LSB-on-the-right convention: qubit 0 corresponds to the last axis
        return self.num_qubits - 1 - int(q)

    def _as_tensor(self) -> Array:
        return self.state.reshape((2,) * self.num_qubits)

    def _store(self, tensor: Array):
        self.state = np.ascontiguousarray(tensor, dtype=self.dtype).reshape(self.dim)

    def _normalize_(self):
        norm2 = float(np.vdot(self.state, self.state).real)
        if abs(norm2 - 1.0) > 1e-15 and norm2 > _EPS:
            self.state /= math.sqrt(norm2)
        # prune tiny numerical noise
        self.state.real[np.abs(self.state.real) < _EPS] = 0.0
        self.state.imag[np.abs(self.state.imag) < _EPS] = 0.0

    # -------------------------- Unitary application -------------------------
    def apply_unitary(self, targets: Sequence[int], U: Array):
        """Apply arbitrary k-qubit unitary U to the given targets."""
        t = _as_tuple(targets)
        k = len(t)
        if k == 0:
            return
        _validate_qubits(self.num_qubits, t)
        if len(set(t)) != k:
            raise ValueError("targets must be distinct")
        m = 1 << k
        U = np.asarray(U, dtype=self.dtype)
        if U.shape != (m, m):
            raise ValueError(f"U must be {(m, m)} for k={k}, got {U.shape}")

        axes = tuple(self._axis_of(q) for q in t)
        self._store(_apply_matrix(self._as_tensor(), axes, U))
        self._normalize_()

    def apply_controlled_unitary(
        self,
        controls: Sequence[int],
        targets: Sequence[int],
        U: Array,
        ctrl_state: Optional[Sequence[int]] = None,
    ):
        """Apply U to targets conditioned on control bits matching ctrl_state.
        By default, ctrl_state is all 1s. Supports any #controls and any k."""
        c = _as_tuple(controls)
        t = _as_tuple(targets)
        _validate_qubits(self.num_qubits, (*c, *t))
        if set(c) & set(t):
            raise ValueError("controls and targets must be disjoint")
        if ctrl_state is None:
            ctrl_state = (1,) * len(c)
        ctrl_state = _as_tuple(ctrl_state)
        if len(ctrl_state) != len(c):
            raise ValueError("ctrl_state length must match number of controls")

        k = len(t)
        m = 1 << k
        U = np.asarray(U, dtype=self.dtype)
        if U.shape != (m, m):
            raise ValueError(f"U must be {(m, m)} for k={k}, got {U.shape}")

        psi = self._as_tensor()
        ax_c = tuple(self._axis_of(q) for q in c)
        index: List[object] = [slice(None)] * self.num_qubits
        for ax, bit in zip(ax_c, ctrl_state):
            index[ax] = int(bit)
        # integer indexing drops the control axes from the block
        ax_t = tuple(
            self._axis_of(q) - sum(1 for a in ax_c if a < self._axis_of(q)) for q in t
        )
        block = psi[tuple(index)]
        psi[tuple(index)] = _apply_matrix(block, ax_t, U)
        self._normalize_()

    # ---------------------------- Standard gates ----------------------------
    # Base single-qubit rotations
    @staticmethod
    def Ux(theta: float) -> Array:
        c, s = math.cos(theta / 2), math.sin(theta / 2)
        return np.array([[c, -1j * s], [-1j * s, c]], dtype=np.complex128)

    @staticmethod
    def Uy(theta: float) -> Array:
        c, s = math.cos(theta / 2), math.sin(theta / 2)
        return np.array([[c, -s], [s, c]], dtype=np.complex128)

    @staticmethod
    def Uz(theta: float) -> Array:
        a = theta / 2
        return np.array([[np.exp(-1j * a), 0], [0, np.exp(1j * a)]], dtype=np.complex128)

    # General 1-qubit U3(θ, φ, λ)
    @staticmethod
    def U3(theta: float, phi: float, lam: float) -> Array:
        c = math.cos(theta / 2)
        s = math.sin(theta / 2)
        return np.array(
            [[c, -np.exp(1j * lam) * s], [np.exp(1j * phi) * s, np.exp(1j * (phi + lam)) * c]],
            dtype=np.complex128,
        )

    @staticmethod
    def Up(lam: float) -> Array:
        return np.array([[1, 0], [0, np.exp(1j * lam)]], dtype=np.complex128)

    # Common 1q gates
    def I(self, q: int):
        self.apply_unitary([q], np.eye(2, dtype=self.dtype))

    def H(self, q: int):
        inv = 1.0 / math.sqrt(2.0)
        self.apply_unitary([q], np.array([[inv, inv], [inv, -inv]], dtype=self.dtype))

    def S(self, q: int):
        self.apply_unitary([q], np.array([[1, 0], [0, 1j]], dtype=self.dtype))

    def Sdg(self, q: int):
        self.apply_unitary([q], np.array([[1, 0], [0, -1j]], dtype=self.dtype))

    def T(self, q: int):
        self.apply_unitary([q], np.array([[1, 0], [0, np.exp(1j * math.pi / 4)]], dtype=self.dtype))

    def Tdg(self, q: int):
        self.apply_unitary([q], np.array([[1, 0], [0, np.exp(-1j * math.pi / 4)]], dtype=self.dtype))

    def SX(self, q: int):
        self.apply_unitary([q], 0.5 * np.array([[1 + 1j, 1 - 1j], [1 - 1j, 1 + 1j]], dtype=self.dtype))

    def X(self, q: int):
        self.apply_unitary([q], np.array([[0, 1], [1, 0]], dtype=self.dtype))

    def Y(self, q: int):
        self.apply_unitary([q], np.array([[0, -1j], [1j, 0]], dtype=self.dtype))

    def Z(self, q: int):
        self.apply_unitary([q], np.array([[1, 0], [0, -1]], dtype=self.dtype))

    def RX(self, q: int, theta: float):
        self.apply_unitary([q], self.Ux(theta))

    def RY(self, q: int, theta: float):
        self.apply_unitary([q], self.Uy(theta))

    def RZ(self, q: int, theta: float):
        self.apply_unitary([q], self.Uz(theta))

    def P(self, q: int, lam: float):
        self.apply_unitary([q], self.Up(lam))

    def U(self, q: int, theta: float, phi: float, lam: float):
        self.apply_unitary([q], self.U3(theta, phi, lam))

    # Two-qubit gates
    def SWAP(self, q1: int, q2: int):
        U = np.array([[1, 0, 0, 0], [0, 0, 1, 0], [0, 1, 0, 0], [0, 0, 0, 1]], dtype=self.dtype)
        self.apply_unitary([q1, q2], U)

    def ISWAP(self, q1: int, q2: int):
        U = np.array([[1, 0, 0, 0], [0, 0, 1j, 0], [0, 1j, 0, 0], [0, 0, 0, 1]], dtype=self.dtype)
        self.apply_unitary([q1, q2], U)

    def RXX(self, q1: int, q2: int, theta: float):
        a = theta / 2
        I4 = np.eye(4, dtype=self.dtype)
        XX = np.kron(np.array([[0, 1], [1, 0]], dtype=self.dtype), np.array([[0, 1], [1, 0]], dtype=self.dtype))
        self.apply_unitary([q1, q2], (math.cos(a) * I4) - 1j * math.sin(a) * XX)

    def RYY(self, q1: int, q2: int, theta: float):
        a = theta / 2
        I4 = np.eye(4, dtype=self.dtype)
        Y = np.array([[0, -1j], [1j, 0]], dtype=self.dtype)
        YY = np.kron(Y, Y)
        self.apply_unitary([q1, q2], (math.cos(a) * I4) - 1j * math.sin(a) * YY)

    def RZZ(self, q1: int, q2: int, theta: float):
        a = theta / 2
        e = np.exp(-1j * a)
        ed = np.exp(1j * a)
        U = np.diag([e, ed, ed, e]).astype(self.dtype)
        self.apply_unitary([q1, q2], U)

    # Controlled gates
    def CX(self, c: int, t: int):
        self.apply_controlled_unitary([c], [t], np.array([[0, 1], [1, 0]], dtype=self.dtype))

    def CY(self, c: int, t: int):
        self.apply_controlled_unitary([c], [t], np.array([[0, -1j], [1j, 0]], dtype=self.dtype))

    def CZ(self, c: int, t: int):
        self.apply_controlled_unitary([c], [t], np.array([[1, 0], [0, -1]], dtype=self.dtype))

    def CH(self, c: int, t: int):
        inv = 1.0 / math.sqrt(2.0)
        self.apply_controlled_unitary([c], [t], np.array([[inv, inv], [inv, -inv]], dtype=self.dtype))

    def CP(self, c: int, t: int, lam: float):
        self.apply_controlled_unitary([c], [t], self.Up(lam))

    def CRX(self, c: int, t: int, theta: float):
        self.apply_controlled_unitary([c], [t], self.Ux(theta))

    def CRY(self, c: int, t: int, theta: float):
        self.apply_controlled_unitary([c], [t], self.Uy(theta))

    def CRZ(self, c: int, t: int, theta: float):
        self.apply_controlled_unitary([c], [t], self.Uz(theta))

    def Toffoli(self, c1: int, c2: int, t: int):
        self.apply_controlled_unitary([c1, c2], [t], np.array([[0, 1], [1, 0]], dtype=self.dtype))

    def CSWAP(self, c: int, q1: int, q2: int):
        U = np.array([[1, 0, 0, 0], [0, 0, 1, 0], [0, 1, 0, 0], [0, 0, 0, 1]], dtype=self.dtype)
        self.apply_controlled_unitary([c], [q1, q2], U)

    # ------------------------------ Measurement -----------------------------
    def measure(self, q: int, cbit: Optional[int] = None) -> int:
        _validate_qubits(self.num_qubits, (q,))
        # moveaxis returns a view, so the projection below writes through to self.state
        moved = np.moveaxis(self._as_tensor(), self._axis_of(q), -1)
        p1 = float((np.abs(moved[..., 1]) ** 2).sum())
        p1 = min(max(p1, 0.0), 1.0)
        outcome = int(self.rng.random() < p1)
        moved[..., 1 - outcome] = 0.0
        self._normalize_()
        if cbit is not None and 0 <= cbit < len(self.creg):
            self.creg[cbit] = outcome
        return outcome

    def reset(self, q: int):
        # Projectively reset to |0>
        if self.measure(q):
            self.X(q)

    def probs(self) -> Array:
        p = np.abs(self.state) ** 2
        s = float(p.sum())
        return p / (s if s > _EPS else 1.0)


# ----------------------------------------------------------------------------
# Gate table: name -> (#params, #qubits, applier(sim, *qubits, *params))
# ----------------------------------------------------------------------------
Applier = Callable[..., None]

_U2: Applier = lambda sim, q, phi, lam: sim.U(q, math.pi / 2, phi, lam)

GATES: Dict[str, Tuple[int, int, Applier]] = {
    "id": (0, 1, QuantumSimulator.I),
    "x": (0, 1, QuantumSimulator.X),
    "y": (0, 1, QuantumSimulator.Y),
    "z": (0, 1, QuantumSimulator.Z),
    "h": (0, 1, QuantumSimulator.H),
    "s": (0, 1, QuantumSimulator.S),
    "sdg": (0, 1, QuantumSimulator.Sdg),
    "t": (0, 1, QuantumSimulator.T),
    "tdg": (0, 1, QuantumSimulator.Tdg),
    "sx": (0, 1, QuantumSimulator.SX),
    "rx": (1, 1, QuantumSimulator.RX),
    "ry": (1, 1, QuantumSimulator.RY),
    "rz": (1, 1, QuantumSimulator.RZ),
    "p": (1, 1, QuantumSimulator.P),
    "u1": (1, 1, QuantumSimulator.P),
    "u2": (2, 1, _U2),
    "u3": (3, 1, QuantumSimulator.U),
    "u": (3, 1, QuantumSimulator.U),
    "U": (3, 1, QuantumSimulator.U),
    "cx": (0, 2, QuantumSimulator.CX),
    "CX": (0, 2, QuantumSimulator.CX),
    "cy": (0, 2, QuantumSimulator.CY),
    "cz": (0, 2, QuantumSimulator.CZ),
    "ch": (0, 2, QuantumSimulator.CH),
    "cp": (1, 2, QuantumSimulator.CP),
    "cu1": (1, 2, QuantumSimulator.CP),
    "crx": (1, 2, QuantumSimulator.CRX),
    "cry": (1, 2, QuantumSimulator.CRY),
    "crz": (1, 2, QuantumSimulator.CRZ),
    "swap": (0, 2, QuantumSimulator.SWAP),
    "iswap": (0, 2, QuantumSimulator.ISWAP),
    "rxx": (1, 2, QuantumSimulator.RXX),
    "ryy": (1, 2, QuantumSimulator.RYY),
    "rzz": (1, 2, QuantumSimulator.RZZ),
    "ccx": (0, 3, QuantumSimulator.Toffoli),
    "cswap": (0, 3, QuantumSimulator.CSWAP),
}


# ----------------------------------------------------------------------------
# Session state
# ----------------------------------------------------------------------------
@dataclass(frozen=True)
class Register:
    name: str
    offset: int
    size: int


@dataclass(frozen=True)
class Condition:
    creg: str
    offset: int
    size: int
    value: int


@dataclass(frozen=True)
class Operation:
    name: str
    qubits: Tuple[int, ...] = ()
    params: Tuple[float, ...] = ()
    clbits: Tuple[int, ...] = ()
    condition: Optional[Condition] = None


@dataclass(frozen=True)
class GateMacro:
    name: str
    params: Tuple[str, ...]
    qargs: Tuple[str, ...]
    # (gate name, parameter expressions, formal qubit names)
    body: Tuple[Tuple[str, Tuple[str, ...], Tuple[str, ...]], ...]


def _vacuum() -> Array:
    return np.ones(1, dtype=np.complex128)


@dataclass
class EngineState:
    """Registers, queued operations and the result of the last execution."""

    qregs: Dict[str, Register] = field(default_factory=dict)
    cregs: Dict[str, Register] = field(default_factory=dict)
    macros: Dict[str, GateMacro] = field(default_factory=dict)
    ops: List[Operation] = field(default_factory=list)
    executed: int = 0
    dirty: bool = False
    amplitudes: Array = field(default_factory=_vacuum)
    cbits: List[int] = field(default_factory=list)

    @property
    def num_qubits(self) -> int:
        return sum(r.size for r in self.qregs.values())

    @property
    def num_clbits(self) -> int:
        return sum(r.size for r in self.cregs.values())

    @property
    def pending(self) -> List[Operation]:
        return self.ops[self.executed:]


# ----------------------------------------------------------------------------
# Parameter expressions
# ----------------------------------------------------------------------------
_BINOPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: operator.pow,
}
_UNOPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}
_FUNCS = {
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "exp": math.exp,
    "ln": math.log,
    "sqrt": math.sqrt,
}


def _eval_node(node: ast.AST, env: Dict[str, float]) -> float:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return float(node.value)
    if isinstance(node, ast.Name):
        if node.id == "pi":
            return math.pi
        if node.id in env:
            return env[node.id]
        raise ParseError(f"Unknown parameter '{node.id}'")
    if isinstance(node, ast.BinOp) and type(node.op) in _BINOPS:
        result = _BINOPS[type(node.op)](_eval_node(node.left, env), _eval_node(node.right, env))
        if isinstance(result, complex):
            raise ParseError("Expression has no real value")
        return result
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNOPS:
        return _UNOPS[type(node.op)](_eval_node(node.operand, env))
    if (isinstance(node, ast.Call) and isinstance(node.func, ast.Name)
            and node.func.id in _FUNCS and len(node.args) == 1 and not node.keywords):
        return _FUNCS[node.func.id](_eval_node(node.args[0], env))
    raise ParseError("Unsupported expression")


def evaluate(expr: str, env: Optional[Dict[str, float]] = None) -> float:
    """Evaluate an OpenQASM parameter expression such as ``pi/2`` or ``-2*theta^2``."""
    source = expr.strip().replace("^", "**")
    try:
        tree = ast.parse(source, mode="eval")
        return float(_eval_node(tree.body, env or {}))
    except SyntaxError as e:
        raise ParseError(f"Bad expression '{expr.strip()}'") from e
    except (ZeroDivisionError, ValueError, OverflowError, TypeError) as e:
        raise ParseError(f"Cannot evaluate '{expr.strip()}': {e}") from e
    except (RecursionError, MemoryError) as e:
        raise ParseError("Expression too deeply nested") from e


# ----------------------------------------------------------------------------
# Statement parser
# ----------------------------------------------------------------------------
_COMMENT = re.compile(r"//[^\n]*")
_HEADER = re.compile(r"^OPENQASM\s+[\d.]+$")
_INCLUDE = re.compile(r'^include\s+"[^"]*"$')
_REG_DECL = re.compile(r"^(qreg|creg)\s+([A-Za-z_]\w*)\s*\[\s*(\d+)\s*\]$")
_GATE_DEF = re.compile(r"^gate\s+([A-Za-z_]\w*)\s*(?:\(([^)]*)\))?\s*([^{]*)\{(.*)\}$", re.S)
_MEASURE = re.compile(r"^measure\s+(.+?)\s*->\s*(.+)$", re.S)
_RESET = re.compile(r"^reset\s+(.+)$", re.S)
_BARRIER = re.compile(r"^barrier\b")
_IF = re.compile(r"^if\s*\(\s*([A-Za-z_]\w*)\s*==\s*(\d+)\s*\)\s*(.+)$", re.S)
_GATE_CALL = re.compile(r"^([A-Za-z_]\w*)\s*(?:\((.*)\))?\s*(.*)$", re.S)
_ARG = re.compile(r"^([A-Za-z_]\w*)\s*(?:\[\s*(\d+)\s*\])?$")
_IDENT = re.compile(r"^[A-Za-z_]\w*$")


def split_statements(text: str) -> List[str]:
    """Split source text into statements on ';' and closing braces of blocks."""
    text = _COMMENT.sub("", text)
    out: List[str] = []
    buf: List[str] = []
    depth = 0
    for ch in text:
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth < 0:
                raise ParseError("Unbalanced '}'")
            if depth == 0:
                buf.append(ch)
                out.append("".join(buf))
                buf = []
                continue
        elif ch == ";" and depth == 0:
            out.append("".join(buf))
            buf = []
            continue
        buf.append(ch)
    if depth:
        raise ParseError("Unterminated '{' block")
    out.append("".join(buf))
    return [s.strip() for s in out if s.strip()]


def _split_commas(s: str) -> List[str]:
    parts, buf, depth = [], [], 0
    for ch in s:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(buf).strip())
            buf = []
        else:
            buf.append(ch)
    tail = "".join(buf).strip()
    if tail or parts:
        parts.append(tail)
    return parts


class _StatementParser:
    """Parses statements against staged copies of the register tables.

    Nothing reaches the EngineState until every statement of the text parsed.
    """

    def __init__(self, state: EngineState):
        self.qregs = dict(state.qregs)
        self.cregs = dict(state.cregs)
        self.macros = dict(state.macros)
        self.ops: List[Operation] = []
        self.declared = False

    def commit(self, state: EngineState):
        state.qregs = self.qregs
        state.cregs = self.cregs
        state.macros = self.macros
        state.ops.extend(self.ops)
        if self.declared or self.ops:
            state.dirty = True

    def statement(self, stmt: str):
        stmt = " ".join(stmt.split()) if "{" not in stmt else stmt.strip()
        if _HEADER.match(stmt) or _INCLUDE.match(stmt):
            return
        m = _REG_DECL.match(stmt)
        if m:
            self.declare(m.group(1), m.group(2), int(m.group(3)))
            return
        m = _GATE_DEF.match(stmt)
        if m:
            self.define(m.group(1), m.group(2) or "", m.group(3), m.group(4))
            return
        m = _IF.match(stmt)
        if m:
            reg = self.cregs.get(m.group(1))
            if reg is None:
                raise ParseError(f"Unknown classical register '{m.group(1)}'")
            cond = Condition(reg.name, reg.offset, reg.size, int(m.group(2)))
            self.operation(m.group(3).strip(), cond)
            return
        self.operation(stmt, None)

    # ---------------------------- declarations -----------------------------
    def declare(self, kind: str, name: str, size: int):
        if name in self.qregs or name in self.cregs:
            raise ParseError(f"Register '{name}' already declared")
        if size < 1:
            raise ParseError(f"Register '{name}' must have at least one bit")
        table = self.qregs if kind == "qreg" else self.cregs
        offset = sum(r.size for r in table.values())
        table[name] = Register(name, offset, size)
        self.declared = True

    def define(self, name: str, params: str, qargs: str, body: str):
        if name in GATES or name in self.macros:
            raise ParseError(f"Gate '{name}' already defined")
        formal_params = tuple(p for p in _split_commas(params) if p)
        formal_qargs = tuple(_split_commas(qargs.strip()))
        for ident in formal_params + formal_qargs:
            if not _IDENT.match(ident):
                raise ParseError(f"Bad identifier '{ident}' in gate '{name}'")
        if not formal_qargs:
            raise ParseError(f"Gate '{name}' needs at least one qubit argument")
        items = []
        for stmt in split_statements(body):
            if _BARRIER.match(stmt):
                continue
            m = _GATE_CALL.match(stmt)
            if not m:
                raise ParseError(f"Bad statement '{stmt}' in gate '{name}'")
            gate = m.group(1)
            exprs = tuple(_split_commas(m.group(2) or ""))
            args = tuple(_split_commas(m.group(3)))
            self._check_arity(gate, len(exprs), len(args))
            for arg in args:
                if arg not in formal_qargs:
                    raise ParseError(f"Unknown qubit '{arg}' in gate '{name}'")
            items.append((gate, exprs, args))
        self.macros[name] = GateMacro(name, formal_params, formal_qargs, tuple(items))
        logger.debug("Defined gate %s(%s) %s", name, ", ".join(formal_params), ", ".join(formal_qargs))

    # ----------------------------- operations ------------------------------
    def operation(self, stmt: str, cond: Optional[Condition]):
        m = _MEASURE.match(stmt)
        if m:
            qubits = self._resolve(m.group(1), self.qregs, "quantum")
            clbits = self._resolve(m.group(2), self.cregs, "classical")
            if len(qubits) != len(clbits):
                raise ParseError("Register size mismatch in measure")
            for q, c in zip(qubits, clbits):
                self.ops.append(Operation("measure", (q,), (), (c,), cond))
            return
        m = _RESET.match(stmt)
        if m:
            for q in self._resolve(m.group(1), self.qregs, "quantum"):
                self.ops.append(Operation("reset", (q,), (), (), cond))
            return
        if _BARRIER.match(stmt):
            for arg in _split_commas(stmt[len("barrier"):]):
                self._resolve(arg, self.qregs, "quantum")
            return
        m = _GATE_CALL.match(stmt)
        if not m or not m.group(3):
            raise ParseError(f"Cannot parse statement '{stmt}'")
        gate = m.group(1)
        exprs = _split_commas(m.group(2) or "")
        arg_texts = _split_commas(m.group(3))
        self._check_arity(gate, len(exprs), len(arg_texts))
        params = [evaluate(e) for e in exprs]
        args = [self._resolve(a, self.qregs, "quantum") for a in arg_texts]
        for qubits in self._broadcast(args):
            self.apply(gate, tuple(params), qubits, cond)

    def apply(self, gate: str, params: Tuple[float, ...], qubits: Tuple[int, ...],
              cond: Optional[Condition]):
        if len(set(qubits)) != len(qubits):
            raise ParseError(f"Duplicate qubit arguments for '{gate}'")
        if gate in GATES:
            self.ops.append(Operation(gate, qubits, params, (), cond))
            return
        macro = self.macros[gate]
        env = dict(zip(macro.params, params))
        mapping = dict(zip(macro.qargs, qubits))
        for name, exprs, args in macro.body:
            values = tuple(evaluate(e, env) for e in exprs)
            self.apply(name, values, tuple(mapping[a] for a in args), cond)

    def _check_arity(self, gate: str, n_params: int, n_qubits: int):
        if gate in GATES:
            want_params, want_qubits, _ = GATES[gate]
        elif gate in self.macros:
            want_params, want_qubits = len(self.macros[gate].params), len(self.macros[gate].qargs)
        else:
            raise ParseError(f"Unknown gate '{gate}'")
        if n_params != want_params:
            raise ParseError(f"Gate '{gate}' takes {want_params} parameter(s), got {n_params}")
        if n_qubits != want_qubits:
            raise ParseError(f"Gate '{gate}' takes {want_qubits} qubit(s), got {n_qubits}")

    @staticmethod
    def _resolve(arg: str, table: Dict[str, Register], kind: str) -> List[int]:
        m = _ARG.match(arg.strip())
        if not m:
            raise ParseError(f"Bad {kind} argument '{arg.strip()}'")
        reg = table.get(m.group(1))
        if reg is None:
            raise ParseError(f"Unknown {kind} register '{m.group(1)}'")
        if m.group(2) is None:
            return list(range(reg.offset, reg.offset + reg.size))
        idx = int(m.group(2))
        if idx >= reg.size:
            raise ParseError(f"Index {idx} out of range for {reg.name}[{reg.size}]")
        return [reg.offset + idx]

    @staticmethod
    def _broadcast(args: List[List[int]]) -> List[Tuple[int, ...]]:
        sizes = {len(a) for a in args if len(a) > 1}
        if len(sizes) > 1:
            raise ParseError("Register size mismatch in gate arguments")
        width = sizes.pop() if sizes else 1
        return [tuple(a[i] if len(a) > 1 else a[0] for a in args) for i in range(width)]


# ----------------------------------------------------------------------------
# Rendering helpers
# ----------------------------------------------------------------------------
def _ket(index: int, n: int) -> str:
    return f"|{index:0{n}b}>" if n else "|>"


def _alias(index: int, table: Dict[str, Register]) -> str:
    for reg in table.values():
        if reg.offset <= index < reg.offset + reg.size:
            return f"{reg.name}[{index - reg.offset}]"
    return f"#{index}"


def describe(op: Operation, state: EngineState) -> str:
    text = op.name
    if op.params:
        text += "(" + ", ".join(f"{p:.4g}" for p in op.params) + ")"
    text += " " + ", ".join(_alias(q, state.qregs) for q in op.qubits)
    if op.clbits:
        text += " -> " + ", ".join(_alias(c, state.cregs) for c in op.clbits)
    if op.condition is not None:
        text = f"if({op.condition.creg}=={op.condition.value}) " + text
    return text


# ----------------------------------------------------------------------------
# Engine facade
# ----------------------------------------------------------------------------
class Engine:
    """Parses statements into an EngineState queue and executes it.

    The engine owns the random generator; every ``execute`` draws fresh
    outcomes from it.
    """

    def __init__(self, seed: Optional[int] = None, rng: Optional[np.random.Generator] = None):
        self.rng = rng if rng is not None else np.random.default_rng(seed)

    @staticmethod
    def new_state() -> EngineState:
        return EngineState()

    def parse_statement(self, state: EngineState, text: str):
        parser = _StatementParser(state)
        for stmt in split_statements(text):
            parser.statement(stmt)
        parser.commit(state)
        logger.debug("Queued %d operation(s) from %r", len(parser.ops), text)

    def execute(self, state: EngineState):
        n = state.num_qubits
        if n > MAX_QUBITS:
            raise ExecError(f"Register width {n} exceeds the limit of {MAX_QUBITS} qubits")
        try:
            sim = QuantumSimulator(n, num_clbits=state.num_clbits, rng=self.rng)
            for op in state.ops:
                self._apply(sim, op)
        except MemoryError as e:
            raise ExecError(f"Out of memory simulating {n} qubits") from e
        except (ValueError, IndexError) as e:
            raise ExecError(str(e)) from e
        state.amplitudes = sim.state.copy()
        state.cbits = list(sim.creg)
        state.executed = len(state.ops)
        state.dirty = False
        logger.debug("Executed %d operation(s) on %d qubit(s)", len(state.ops), n)

    @staticmethod
    def _apply(sim: QuantumSimulator, op: Operation):
        cond = op.condition
        if cond is not None:
            value = sum(sim.creg[cond.offset + i] << i for i in range(cond.size))
            if value != cond.value:
                return
        if op.name == "measure":
            sim.measure(op.qubits[0], op.clbits[0])
        elif op.name == "reset":
            sim.reset(op.qubits[0])
        else:
            GATES[op.name][2](sim, *op.qubits, *op.params)

    @staticmethod
    def snapshot(state: EngineState) -> EngineState:
        return copy.deepcopy(state)

    @staticmethod
    def restore(snapshot: EngineState) -> EngineState:
        return copy.deepcopy(snapshot)

    # ------------------------------ Rendering -------------------------------
    @staticmethod
    def render_classical(state: EngineState) -> str:
        width = state.num_clbits
        bits = (list(state.cbits) + [0] * width)[:width]
        value = sum(b << i for i, b in enumerate(bits))
        lines = [f"CReg: {value}"]
        for reg in state.cregs.values():
            chunk = bits[reg.offset:reg.offset + reg.size]
            lines.append(f"  {reg.name}[{reg.size}] = {''.join(str(b) for b in reversed(chunk))}")
        return "\n".join(lines)

    @staticmethod
    def render_polar(state: EngineState) -> str:
        amps = state.amplitudes
        n = int(len(amps)).bit_length() - 1
        lines = ["QReg polar:"]
        for i, amp in enumerate(amps):
            if abs(amp) ** 2 > _EPS:
                lines.append(f"  {_ket(i, n)}: {abs(amp):.4f} @ {np.angle(amp):+.4f}")
        return "\n".join(lines)

    @staticmethod
    def render_prob(state: EngineState) -> str:
        amps = state.amplitudes
        n = int(len(amps)).bit_length() - 1
        lines = ["QReg probabilities:"]
        for i, pr in enumerate(np.abs(amps) ** 2):
            if pr > _EPS:
                lines.append(f"  {_ket(i, n)}: {pr:.6f}")
        return "\n".join(lines)

    @staticmethod
    def render_ops(state: EngineState) -> str:
        if not state.ops:
            return "Operations: (none)"
        lines = [f"Operations: {len(state.ops)} queued, {len(state.pending)} pending"]
        for i, op in enumerate(state.ops):
            mark = "*" if i >= state.executed else " "
            lines.append(f"{mark} {i:>3}  {describe(op, state)}")
        return "\n".join(lines)

    @staticmethod
    def render_names(state: EngineState) -> str:
        lines = []
        for title, table in (("QReg", state.qregs), ("CReg", state.cregs)):
            lines.append(f"{title}:")
            if not table:
                lines.append("  (none)")
            for reg in table.values():
                lines.append(f"  {reg.name}[{reg.size}] -> {reg.offset}..{reg.offset + reg.size - 1}")
        return "\n".join(lines)
