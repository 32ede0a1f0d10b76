
"""
Defines the core data types for the tide runtime.

This module provides the source spans, the error hierarchy, the expression
nodes produced by the parser and the compiled Block that the evaluator runs.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


# =================================================================
# Spans
# =================================================================

@dataclass(frozen=True)
class Span:
    """A half-open range of global offsets into the engine's source buffer."""
    start: int
    end: int

    @classmethod
    def unknown(cls) -> 'Span':
        return cls(0, 0)

    def is_unknown(self) -> bool:
        return self.start == 0 and self.end == 0

    def merge(self, other: 'Span') -> 'Span':
        if self.is_unknown():
            return other
        if other.is_unknown():
            return self
        return Span(min(self.start, other.start), max(self.end, other.end))


# =================================================================
# Errors
# =================================================================

class ShellError(Exception):
    """Base class for every error a tide evaluation can report."""
    kind = "ShellError"

    def __init__(self, msg: str, span: Optional[Span] = None, label: Optional[str] = None, help: Optional[str] = None):
        super().__init__(msg)
        self.msg = msg
        self.span = span or Span.unknown()
        self.label = label
        self.help = help
        # Call frames collected while the error unwinds, outermost first.
        self.trace: List[str] = []

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.msg!r}, span={self.span})"


class ParseError(ShellError):
    kind = "ParseError"


class MergeFault(ShellError):
    """The base state changed underneath a working set; the delta cannot be applied."""
    kind = "MergeFault"


class EvalError(ShellError):
    kind = "EvalError"


class ExternalCommandError(EvalError):
    kind = "ExternalCommandError"


class RenderError(ShellError):
    kind = "RenderError"


class ControlFlow(Exception):
    """Base for non-error unwinding (return/break/continue)."""
    def __init__(self, span: Optional[Span] = None):
        super().__init__()
        self.span = span or Span.unknown()


class ReturnSignal(ControlFlow):
    def __init__(self, value: Any = None, span: Optional[Span] = None):
        super().__init__(span)
        self.value = value


class BreakSignal(ControlFlow):
    pass


class ContinueSignal(ControlFlow):
    pass


# =================================================================
# Runtime values that are not plain Python objects
# =================================================================

@dataclass
class Closure:
    """A block paired with the stack it was created on."""
    block_id: int
    captures: Any = None

    def __repr__(self) -> str:
        return f"<Closure {self.block_id}>"


# =================================================================
# Expression nodes
# =================================================================

class Expr:
    """Marker base class for everything the parser puts into a pipeline."""
    span: Span


@dataclass
class Literal(Expr):
    value: Any
    span: Span = field(default_factory=Span.unknown)


@dataclass
class VarRef(Expr):
    var_id: int
    name: str
    cell_path: Tuple[Any, ...] = ()
    span: Span = field(default_factory=Span.unknown)


@dataclass
class VarDecl(Expr):
    var_id: int
    name: str
    span: Span = field(default_factory=Span.unknown)


@dataclass
class BinaryOp(Expr):
    op: str
    lhs: Expr
    rhs: Expr
    span: Span = field(default_factory=Span.unknown)


@dataclass
class UnaryOp(Expr):
    op: str
    operand: Expr
    span: Span = field(default_factory=Span.unknown)


@dataclass
class Assignment(Expr):
    var_id: int
    name: str
    rhs: Expr
    span: Span = field(default_factory=Span.unknown)


@dataclass
class ListExpr(Expr):
    items: List[Expr]
    span: Span = field(default_factory=Span.unknown)


@dataclass
class RecordExpr(Expr):
    pairs: List[Tuple[str, Expr]]
    span: Span = field(default_factory=Span.unknown)


@dataclass
class RangeExpr(Expr):
    start: Expr
    end: Expr
    span: Span = field(default_factory=Span.unknown)


@dataclass
class Subexpression(Expr):
    block_id: int
    span: Span = field(default_factory=Span.unknown)


@dataclass
class BlockArg(Expr):
    """A block passed to a keyword such as `if` or `for`; run on the caller's stack."""
    block_id: int
    span: Span = field(default_factory=Span.unknown)


@dataclass
class ClosureExpr(Expr):
    block_id: int
    span: Span = field(default_factory=Span.unknown)


@dataclass
class CellPathExpr(Expr):
    members: Tuple[Any, ...]
    span: Span = field(default_factory=Span.unknown)


@dataclass
class Call:
    """A resolved command invocation. Argument evaluation is done by the command."""
    decl_id: int
    head: Span
    positional: List[Expr] = field(default_factory=list)
    named: Dict[str, Optional[Expr]] = field(default_factory=dict)
    span: Span = field(default_factory=Span.unknown)

    def has_flag(self, name: str) -> bool:
        return name in self.named

    async def req(self, engine_state, stack, pos: int) -> Any:
        from tide.tide_interpreter import eval_expression
        if pos >= len(self.positional):
            raise EvalError(f"Missing required positional argument #{pos + 1}", span=self.head)
        return await eval_expression(engine_state, stack, self.positional[pos])

    async def opt(self, engine_state, stack, pos: int, default: Any = None) -> Any:
        from tide.tide_interpreter import eval_expression
        if pos >= len(self.positional):
            return default
        return await eval_expression(engine_state, stack, self.positional[pos])

    async def rest(self, engine_state, stack, start: int) -> List[Any]:
        from tide.tide_interpreter import eval_expression
        return [await eval_expression(engine_state, stack, e) for e in self.positional[start:]]

    async def get_flag(self, engine_state, stack, name: str, default: Any = None) -> Any:
        from tide.tide_interpreter import eval_expression
        if name not in self.named:
            return default
        expr = self.named[name]
        if expr is None:
            return True
        return await eval_expression(engine_state, stack, expr)


@dataclass
class CallExpr(Expr):
    call: Call
    span: Span = field(default_factory=Span.unknown)


@dataclass
class ExternalCall(Expr):
    head: Expr
    args: List[Expr]
    span: Span = field(default_factory=Span.unknown)


@dataclass
class Pipeline:
    elements: List[Expr]


@dataclass(frozen=True)
class Block:
    """A compiled, immutable unit of source, referenced by id from EngineState."""
    pipelines: Tuple[Pipeline, ...] = ()
    signature: Any = None
    span: Span = field(default_factory=Span.unknown)
    source_name: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.pipelines
