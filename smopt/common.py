"""Stack machine instructions, their textual form and shared option types."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Union

__all__ = [
    "ParseError",
    "JumpMode",
    "Op",
    "SymKind",
    "Sym",
    "PatKind",
    "Pat",
    "Const",
    "StringLit",
    "Array",
    "Elem",
    "Store",
    "Load",
    "BinOp",
    "Patt",
    "SExp",
    "Closure",
    "LDA",
    "Dup",
    "Drop",
    "LabelMode",
    "Jmp",
    "Label",
    "Call",
    "STI",
    "STA",
    "CallC",
    "Begin",
    "End",
    "Global",
    "PublicVal",
    "PublicVar",
    "PublicFun",
    "Ctx",
    "DataGraphOptimFlags",
    "FlowOptimFlags",
    "LinInst",
    "FlowInst",
    "Decl",
    "Inst",
    "is_linear",
    "is_flow",
    "is_decl",
    "parse_inst",
]

_I32_MIN = -(2**31)
_I32_MAX = 2**31 - 1
_U16_MAX = 2**16 - 1
_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1


class ParseError(ValueError):
    """Raised when a line of stack machine code cannot be parsed."""


def _wrap_i32(value: int) -> int:
    return (value - _I32_MIN) % 2**32 + _I32_MIN


class JumpMode(Enum):
    UNCONDITIONAL = "unconditional"
    ZERO = "z"
    NONZERO = "nz"

    def rev(self) -> JumpMode:
        """Return the mode that jumps exactly when this one does not."""
        if self is JumpMode.ZERO:
            return JumpMode.NONZERO
        if self is JumpMode.NONZERO:
            return JumpMode.ZERO
        return JumpMode.UNCONDITIONAL


class Op(Enum):
    PLUS = "+"
    MINUS = "-"
    MUL = "*"
    DIV = "/"
    MOD = "%"
    EQ = "=="
    GT = ">"
    GT_EQ = ">="
    LT = "<"
    LT_EQ = "<="
    NOT_EQ = "!="
    AND = "&&"

    def eval(self, lhs: int, rhs: int) -> int:
        """Evaluate the operator on two 32-bit signed integers."""
        match self:
            case Op.PLUS:
                return _wrap_i32(lhs + rhs)
            case Op.MINUS:
                return _wrap_i32(lhs - rhs)
            case Op.MUL:
                return _wrap_i32(lhs * rhs)
            case Op.DIV | Op.MOD:
                if rhs == 0:
                    raise ZeroDivisionError(f"{lhs} {self.value} 0")
                if lhs == _I32_MIN and rhs == -1:
                    raise OverflowError(f"{lhs} {self.value} {rhs} overflows")
                quotient = abs(lhs) // abs(rhs)
                if (lhs < 0) != (rhs < 0):
                    quotient = -quotient
                return quotient if self is Op.DIV else lhs - rhs * quotient
            case Op.EQ:
                return int(lhs == rhs)
            case Op.GT:
                return int(lhs > rhs)
            case Op.GT_EQ:
                return int(lhs >= rhs)
            case Op.LT:
                return int(lhs < rhs)
            case Op.LT_EQ:
                return int(lhs <= rhs)
            case Op.NOT_EQ:
                return int(lhs != rhs)
            case Op.AND:
                return int(lhs != 0 and rhs != 0)
        raise AssertionError(self)

    def __str__(self) -> str:
        return self.value


class SymKind(IntEnum):
    ARG = 0
    LOC = 1
    GLB = 2
    ACC = 3


@dataclass(frozen=True, order=True)
class Sym:
    """A variable: argument, local, global or closure slot."""

    kind: SymKind
    value: int | str

    @classmethod
    def arg(cls, index: int) -> Sym:
        return cls(SymKind.ARG, index)

    @classmethod
    def loc(cls, index: int) -> Sym:
        return cls(SymKind.LOC, index)

    @classmethod
    def glb(cls, name: str) -> Sym:
        return cls(SymKind.GLB, name)

    @classmethod
    def acc(cls, index: int) -> Sym:
        return cls(SymKind.ACC, index)

    def __str__(self) -> str:
        match self.kind:
            case SymKind.ARG:
                return f"arg[{self.value}]"
            case SymKind.LOC:
                return f"loc[{self.value}]"
            case SymKind.ACC:
                return f"acc[{self.value}]"
        return str(self.value)


class PatKind(Enum):
    TAG = "Tag"
    ARRAY = "Array"
    SEXP = "Sexp"
    STRING = "String"
    UNBOXED = "UnBoxed"
    CLOSURE = "Closure"
    BOXED = "Boxed"


@dataclass(frozen=True)
class Pat:
    """A pattern checked by PATT; only TAG carries a tag and an arity."""

    kind: PatKind
    tag: str | None = None
    args: int = 0

    @classmethod
    def of_tag(cls, tag: str, args: int) -> Pat:
        return cls(PatKind.TAG, tag, args)

    def __str__(self) -> str:
        if self.kind is PatKind.TAG:
            return f"Tag ({self.tag}, {self.args})"
        return self.kind.value


# Linear instructions


@dataclass(frozen=True)
class Const:
    value: int

    def __str__(self) -> str:
        return f"CONST {self.value}"


@dataclass(frozen=True)
class StringLit:
    value: str

    def __str__(self) -> str:
        return f"STRING {self.value}"


@dataclass(frozen=True)
class Array:
    size: int

    def __str__(self) -> str:
        return f"ARRAY {self.size}"


@dataclass(frozen=True)
class Elem:
    def __str__(self) -> str:
        return "ELEM"


@dataclass(frozen=True)
class Store:
    sym: Sym

    def __str__(self) -> str:
        return f"ST {self.sym}"


@dataclass(frozen=True)
class Load:
    sym: Sym

    def __str__(self) -> str:
        return f"LD {self.sym}"


@dataclass(frozen=True)
class BinOp:
    op: Op

    def __str__(self) -> str:
        return f"BINOP {self.op}"


@dataclass(frozen=True)
class Patt:
    pat: Pat

    def __str__(self) -> str:
        return f"PATT {self.pat}"


@dataclass(frozen=True)
class SExp:
    tag: str
    args: int

    def __str__(self) -> str:
        return f"SEXP {self.tag}, {self.args}"


@dataclass(frozen=True)
class Closure:
    name: str
    captures: int

    def __str__(self) -> str:
        return f"CLOSURE {self.name}, {self.captures}"


@dataclass(frozen=True)
class LDA:
    sym: Sym

    def __str__(self) -> str:
        return f"LDA {self.sym}"


@dataclass(frozen=True)
class Dup:
    def __str__(self) -> str:
        return "DUP"


@dataclass(frozen=True)
class Drop:
    def __str__(self) -> str:
        return "DROP"


# Control flow instructions


class LabelMode(Enum):
    DROP_BARRIER = "1"
    RETRIEVE_STACK = "0"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Jmp:
    mode: JumpMode
    label: str

    def is_conditional(self) -> bool:
        return self.mode is not JumpMode.UNCONDITIONAL

    def __str__(self) -> str:
        if self.mode is JumpMode.UNCONDITIONAL:
            return f"JMP {self.label}"
        return f"CJMP {self.mode.value}, {self.label}"


@dataclass(frozen=True)
class Label:
    name: str
    mode: LabelMode = LabelMode.DROP_BARRIER

    def __str__(self) -> str:
        return f"LABEL {self.name}, {self.mode}"


@dataclass(frozen=True)
class Call:
    name: str
    args: int

    def __str__(self) -> str:
        return f"CALL {self.name}, {self.args}"


@dataclass(frozen=True)
class STI:
    def __str__(self) -> str:
        return "STI"


@dataclass(frozen=True)
class STA:
    def __str__(self) -> str:
        return "STA"


@dataclass(frozen=True)
class CallC:
    args: int

    def __str__(self) -> str:
        return f"CALLC {self.args}"


@dataclass(frozen=True)
class Begin:
    name: str
    args: int
    locs: int
    clos: int

    def __str__(self) -> str:
        return f"BEGIN {self.name}, {self.args}, {self.locs}, {self.clos}"


@dataclass(frozen=True)
class End:
    def __str__(self) -> str:
        return "END"


# Declarations


@dataclass(frozen=True)
class Global:
    name: str

    def __str__(self) -> str:
        return f"GLOBAL {self.name}"


@dataclass(frozen=True)
class PublicVal:
    unit: str
    name: str

    def __str__(self) -> str:
        return f"PUBLIC Val ({self.unit}, {self.name})"


@dataclass(frozen=True)
class PublicVar:
    unit: str
    name: str

    def __str__(self) -> str:
        return f"PUBLIC Var ({self.unit}, {self.name})"


@dataclass(frozen=True)
class PublicFun:
    unit: str
    name: str
    args: int

    def __str__(self) -> str:
        return f"PUBLIC Fun ({self.unit}, {self.name}, {self.args})"


LinInst = Union[
    Const, StringLit, Array, Elem, Store, Load, BinOp, Patt, SExp, Closure, LDA, Dup, Drop
]
FlowInst = Union[Jmp, Label, Call, STI, STA, CallC, Begin, End]
Decl = Union[Global, PublicVal, PublicVar, PublicFun]
Inst = Union[LinInst, FlowInst, Decl]

_LINEAR_TYPES = (Const, StringLit, Array, Elem, Store, Load, BinOp, Patt, SExp, Closure, LDA, Dup, Drop)
_FLOW_TYPES = (Jmp, Label, Call, STI, STA, CallC, Begin, End)
_DECL_TYPES = (Global, PublicVal, PublicVar, PublicFun)


def is_linear(inst: object) -> bool:
    """True for instructions that only touch the stack and variables."""
    return isinstance(inst, _LINEAR_TYPES)


def is_flow(inst: object) -> bool:
    """True for instructions that take part in the control flow graph."""
    return isinstance(inst, _FLOW_TYPES)


def is_decl(inst: object) -> bool:
    """True for unit-level declarations."""
    return isinstance(inst, _DECL_TYPES)


@dataclass
class Ctx:
    """Shared state for generating fresh labels."""

    free_label: int = 0

    def fresh_label(self) -> str:
        label = f"Lfresh_{self.free_label}"
        self.free_label += 1
        return label


@dataclass(frozen=True)
class DataGraphOptimFlags:
    elim_dead_code: bool = False
    elim_stores: bool = False
    const_prop: bool = False
    tag_eval: bool = False


@dataclass(frozen=True)
class FlowOptimFlags:
    elim_dead_code: bool = False
    jump_on_const: bool = False
    merge_blocks: bool = False
    liveliness_analysis: bool = False
    tail_call: bool = False
    data_flags: DataGraphOptimFlags = field(default_factory=DataGraphOptimFlags)
    passes: int = 1


_SEPARATORS = re.compile(r"[,()\[\]\s]+")
_UNSIGNED = re.compile(r"\+?[0-9]+")
_SIGNED = re.compile(r"[+-]?[0-9]+")


class _Tokens:
    def __init__(self, code: str) -> None:
        self.code = code
        self._iter = iter([t for t in _SEPARATORS.split(code) if t])

    def word(self) -> str:
        try:
            return next(self._iter)
        except StopIteration:
            raise ParseError(f"missing operand in {self.code!r}") from None

    def peek_word(self) -> str | None:
        return next(self._iter, None)

    def unsigned(self, limit: int) -> int:
        return self._number(_UNSIGNED, 0, limit)

    def i32(self) -> int:
        return self._number(_SIGNED, _I32_MIN, _I32_MAX)

    def _number(self, pattern: re.Pattern[str], low: int, high: int) -> int:
        token = self.word()
        if not pattern.fullmatch(token):
            raise ParseError(f"invalid number {token!r} in {self.code!r}")
        value = int(token)
        if not low <= value <= high:
            raise ParseError(f"number {token!r} out of range in {self.code!r}")
        return value

    def quoted(self) -> str:
        token = self.word()
        if len(token) >= 2 and token.startswith('"') and token.endswith('"'):
            return token[1:-1]
        raise ParseError(f"expected quoted tag, got {token!r} in {self.code!r}")

    def sym(self) -> Sym:
        head = self.word()
        match head:
            case "arg":
                return Sym.arg(self.unsigned(_U16_MAX))
            case "loc":
                return Sym.loc(self.unsigned(_U16_MAX))
            case "acc":
                return Sym.acc(self.unsigned(_U16_MAX))
        return Sym.glb(head)


_PATTERNS = {
    "Array": PatKind.ARRAY,
    "Sexp": PatKind.SEXP,
    "Strin": PatKind.STRING,
    "UnBox": PatKind.UNBOXED,
    "Closu": PatKind.CLOSURE,
    "Boxed": PatKind.BOXED,
}


def parse_inst(code: str) -> Inst:
    """Parse one line of stack machine code into an instruction."""
    tokens = _Tokens(code)
    head = tokens.word()
    match head:
        case "BEGIN":
            name = tokens.word()
            return Begin(
                name,
                tokens.unsigned(_U32_MAX),
                tokens.unsigned(_U32_MAX),
                tokens.unsigned(_U32_MAX),
            )
        case "END":
            return End()
        case "LD":
            return Load(tokens.sym())
        case "ST":
            return Store(tokens.sym())
        case "LDA":
            return LDA(tokens.sym())
        case "STI":
            return STI()
        case "STA":
            return STA()
        case "DUP":
            return Dup()
        case "DROP":
            return Drop()
        case "LABEL":
            # The mode written in input code carries no information.
            return Label(tokens.word(), LabelMode.DROP_BARRIER)
        case "CONST":
            return Const(tokens.i32())
        case "STRING":
            if not code.startswith("STRING "):
                raise ParseError(f"malformed string literal: {code!r}")
            return StringLit(code[len("STRING "):])
        case "ARRAY":
            return Array(tokens.unsigned(_U64_MAX))
        case "BINOP":
            symbol = tokens.peek_word()
            try:
                return BinOp(Op(symbol))
            except ValueError:
                raise ParseError(f"unknown binary op: {symbol!r}") from None
        case "JMP":
            return Jmp(JumpMode.UNCONDITIONAL, tokens.word())
        case "CJMP":
            mode_token = tokens.peek_word()
            if mode_token == "z":
                mode = JumpMode.ZERO
            elif mode_token == "nz":
                mode = JumpMode.NONZERO
            else:
                raise ParseError(f"unknown jump command: {code!r}")
            return Jmp(mode, tokens.word())
        case "ELEM":
            return Elem()
        case "PATT":
            kind = tokens.word()
            if kind == "Tag":
                tag = tokens.quoted()
                return Patt(Pat.of_tag(tag, tokens.unsigned(_U64_MAX)))
            if kind not in _PATTERNS:
                raise ParseError(f"unknown pattern {kind!r} in {code!r}")
            return Patt(Pat(_PATTERNS[kind]))
        case "SEXP":
            tag = tokens.quoted()
            return SExp(tag, tokens.unsigned(_U64_MAX))
        case "CALL":
            name = tokens.word()
            return Call(name, tokens.unsigned(_U64_MAX))
        case "CLOSURE":
            name = tokens.word()
            return Closure(name, tokens.unsigned(_U64_MAX))
        case "CALLC":
            return CallC(tokens.unsigned(_U64_MAX))
        case "PUBLIC":
            kind = tokens.word()
            if kind == "Val":
                return PublicVal(tokens.word(), tokens.word())
            if kind == "Var":
                return PublicVar(tokens.word(), tokens.word())
            if kind == "Fun":
                unit = tokens.word()
                name = tokens.word()
                return PublicFun(unit, name, tokens.unsigned(_U64_MAX))
            raise ParseError(f"unknown public: {code!r}")
        case "GLOBAL":
            return Global(tokens.word())
    raise ParseError(f"unknown command: {head}")