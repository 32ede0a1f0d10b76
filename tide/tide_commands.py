"""
The command contract shared by every built-in and user-defined command,
plus the core language commands (`let`, `def`, `if`, `for`, ...).
"""
from __future__ import annotations

import os
import platform
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional

from tide.tide_datatypes import (
    BlockArg, BreakSignal, Call, CallExpr, Closure, ContinueSignal, EvalError,
    ReturnSignal, ShellError, VarDecl,
)
from tide.tide_stream import ExternalStream, PipelineData

__version__ = "0.4.0"


# ===================================================================
# 1. Signatures
# ===================================================================

@dataclass
class Param:
    name: str
    shape: str = "any"
    desc: str = ""
    type_name: str = "any"
    default: Any = None
    var_id: Optional[int] = None


@dataclass
class Flag:
    long: str
    short: Optional[str] = None
    shape: Optional[str] = None  # None means a switch
    desc: str = ""
    type_name: str = "bool"
    var_id: Optional[int] = None


class Signature:
    """Declared positional parameters and flags of a command.

    Shapes tell the parser how to read an argument: `any` (a single value),
    `block`, `closure`, `condition` (row condition or closure),
    `expression` (an infix expression ending before `{`), `else`, `catch`.
    """
    def __init__(self, name: str, usage: str = "", category: str = "default"):
        self.name = name
        self.usage = usage
        self.category = category
        self.required_positional: List[Param] = []
        self.optional_positional: List[Param] = []
        self.rest_positional: Optional[Param] = None
        self.named: List[Flag] = []
        self.input_type = "any"
        self.output_type = "any"

    @classmethod
    def build(cls, name: str) -> 'Signature':
        return cls(name)

    def required(self, name: str, shape: str = "any", desc: str = "", type_name: str = "any") -> 'Signature':
        self.required_positional.append(Param(name, shape, desc, type_name))
        return self

    def optional(self, name: str, shape: str = "any", desc: str = "", default: Any = None,
                 type_name: str = "any") -> 'Signature':
        self.optional_positional.append(Param(name, shape, desc, type_name, default))
        return self

    def rest(self, name: str, shape: str = "any", desc: str = "", type_name: str = "any") -> 'Signature':
        self.rest_positional = Param(name, shape, desc, type_name)
        return self

    def switch(self, long: str, desc: str = "", short: Optional[str] = None) -> 'Signature':
        self.named.append(Flag(long, short, None, desc))
        return self

    def named_flag(self, long: str, shape: str = "any", desc: str = "", short: Optional[str] = None,
                   type_name: str = "any") -> 'Signature':
        self.named.append(Flag(long, short, shape, desc, type_name))
        return self

    def in_out(self, input_type: str, output_type: str) -> 'Signature':
        self.input_type = input_type
        self.output_type = output_type
        return self

    def set_category(self, category: str) -> 'Signature':
        self.category = category
        return self

    def all_positional(self) -> List[Param]:
        return self.required_positional + self.optional_positional

    def find_flag(self, text: str) -> Optional[Flag]:
        if text.startswith("--"):
            name = text[2:]
            return next((f for f in self.named if f.long == name), None)
        name = text[1:]
        return next((f for f in self.named if f.short == name), None)

    def __str__(self) -> str:
        parts = [p.name for p in self.required_positional]
        parts += [f"{p.name}?" for p in self.optional_positional]
        if self.rest_positional is not None:
            parts.append(f"...{self.rest_positional.name}")
        for f in self.named:
            flag = f"--{f.long}"
            if f.short:
                flag += f"(-{f.short})"
            if f.shape is not None:
                flag += f": {f.type_name}"
            parts.append(flag)
        return f"{self.name} [{', '.join(parts)}]"


# ===================================================================
# 2. The command contract
# ===================================================================

class Command(ABC):
    """One declaration: a unique name, a signature and run behaviour."""
    name: str = ""
    usage: str = ""
    category: str = "default"
    is_parser_keyword: bool = False

    def signature(self) -> Signature:
        return Signature(self.name, self.usage, self.category)

    @abstractmethod
    async def run(self, engine_state, stack, call: Call, input: PipelineData) -> PipelineData:
        raise NotImplementedError

    def is_custom(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class CustomCommand(Command):
    """A command declared in source with `def`."""
    category = "custom"

    def __init__(self, name: str, signature: Signature, block_id: Optional[int] = None,
                 env: bool = False, usage: str = ""):
        self.name = name
        self.usage = usage
        self._signature = signature
        self.block_id = block_id
        self.env = env

    def signature(self) -> Signature:
        return self._signature

    def is_custom(self) -> bool:
        return True

    async def run(self, engine_state, stack, call, input):
        from tide.tide_interpreter import eval_block, eval_expression
        if self.block_id is None:
            raise EvalError(f"Command `{self.name}` has no body", span=call.head)
        block = engine_state.get_block(self.block_id)
        sig = self._signature
        callee = stack.child()

        params = sig.all_positional()
        for i, param in enumerate(params):
            if i < len(call.positional):
                value = await eval_expression(engine_state, stack, call.positional[i])
            else:
                value = param.default
            if param.var_id is not None:
                callee.add_var(param.var_id, value)
        if sig.rest_positional is not None and sig.rest_positional.var_id is not None:
            rest = [await eval_expression(engine_state, stack, e) for e in call.positional[len(params):]]
            callee.add_var(sig.rest_positional.var_id, rest)
        for flag in sig.named:
            if flag.var_id is None:
                continue
            if flag.shape is None:
                callee.add_var(flag.var_id, call.has_flag(flag.long))
            else:
                callee.add_var(flag.var_id, await call.get_flag(engine_state, stack, flag.long))

        try:
            result = await eval_block(engine_state, callee, block, input)
        except ReturnSignal as r:
            result = PipelineData.value(r.value)
        if self.env:
            for name, value in callee.env_vars.items():
                stack.add_env_var(name, value)
            for name in callee.hidden_env:
                stack.remove_env_var(name)
        return result


class Alias(Command):
    """Parse-time token substitution; never run directly."""
    category = "core"

    def __init__(self, name: str, tokens: tuple, usage: str = ""):
        self.name = name
        self.tokens = tokens
        self.usage = usage or "Alias"

    async def run(self, engine_state, stack, call, input):
        raise EvalError(f"Alias `{self.name}` was not expanded", span=call.head)


class KnownExternal(Command):
    """An external program with a declared signature (`extern`)."""
    category = "external"

    def __init__(self, name: str, signature: Signature, usage: str = ""):
        self.name = name
        self.usage = usage
        self._signature = signature

    def signature(self) -> Signature:
        return self._signature

    async def run(self, engine_state, stack, call, input):
        from tide.tide_interpreter import run_external
        args = []
        for expr in call.positional:
            args.append(await _eval(engine_state, stack, expr))
        for flag, expr in call.named.items():
            args.append(f"--{flag}")
            if expr is not None:
                args.append(await _eval(engine_state, stack, expr))
        return await run_external(engine_state, stack, self.name, args, input, call.span)


async def _eval(engine_state, stack, expr):
    from tide.tide_interpreter import eval_expression
    return await eval_expression(engine_state, stack, expr)


async def run_block_arg(engine_state, stack, expr, input: PipelineData) -> PipelineData:
    """Run a BlockArg on the caller's stack, or call a closure value."""
    from tide.tide_interpreter import eval_block, run_closure
    if isinstance(expr, BlockArg):
        return await eval_block(engine_state, stack, engine_state.get_block(expr.block_id), input)
    value = await _eval(engine_state, stack, expr)
    if isinstance(value, Closure):
        return await run_closure(engine_state, value, [], input)
    raise EvalError(f"Expected a block, found {describe_value(value)}", span=getattr(expr, "span", None))


async def drain(engine_state, stack, data: PipelineData) -> None:
    """Finish a pipeline whose result is not used: externals print, values drop."""
    from tide.tide_stack import set_last_exit_code
    if isinstance(data, ExternalStream):
        code = await data.print(engine_state, stack)
        set_last_exit_code(stack, code)


def describe_value(value: Any) -> str:
    import datetime
    match value:
        case None:
            return "nothing"
        case bool():
            return "bool"
        case int():
            return "int"
        case float():
            return "float"
        case str():
            return "string"
        case bytes() | bytearray():
            return "binary"
        case datetime.datetime():
            return "date"
        case datetime.timedelta():
            return "duration"
        case Closure():
            return "closure"
        case dict():
            cols = ", ".join(f"{k}: {describe_value(v)}" for k, v in value.items())
            return f"record<{cols}>"
        case list():
            if value and all(isinstance(v, dict) for v in value):
                cols = ", ".join(f"{k}: {describe_value(v)}" for k, v in value[0].items())
                return f"table<{cols}>"
            kinds = {describe_value(v) for v in value}
            inner = kinds.pop() if len(kinds) == 1 else "any"
            return f"list<{inner}>"
    return type(value).__name__


# ===================================================================
# 3. Core language commands
# ===================================================================

class _Keyword(Command):
    category = "core"
    is_parser_keyword = True

    async def run(self, engine_state, stack, call, input):
        return PipelineData.empty()


class Def(_Keyword):
    name = "def"
    usage = "Define a custom command."

    def signature(self):
        return (Signature.build(self.name).required("def_name", "string", "command name")
                .required("block", "block", "body").set_category(self.category))


class DefEnv(Def):
    name = "def-env"
    usage = "Define a custom command that can change the caller's environment."


class ExportDef(Def):
    name = "export def"
    usage = "Define and export a custom command from a module."


class ExportDefEnv(Def):
    name = "export def-env"
    usage = "Define and export an environment-changing command from a module."


class Module(_Keyword):
    name = "module"
    usage = "Define a module of commands."


class Use(_Keyword):
    name = "use"
    usage = "Make a module's commands visible by name."


class AliasKeyword(_Keyword):
    name = "alias"
    usage = "Define a shorthand for a command line."


class ExportAlias(AliasKeyword):
    name = "export alias"


class Extern(_Keyword):
    name = "extern"
    usage = "Declare the signature of an external command."


class Let(_Keyword):
    name = "let"
    usage = "Create an immutable variable."

    async def run(self, engine_state, stack, call, input):
        decl = call.positional[0]
        assert isinstance(decl, VarDecl)
        value = await call.req(engine_state, stack, 1)
        stack.add_var(decl.var_id, value)
        return PipelineData.empty()


class Mut(Let):
    name = "mut"
    usage = "Create a mutable variable."


class Const(Let):
    name = "const"
    usage = "Create a constant."


class For(_Keyword):
    name = "for"
    usage = "Loop over a list or range."

    async def run(self, engine_state, stack, call, input):
        decl = call.positional[0]
        items = await call.req(engine_state, stack, 1)
        if isinstance(items, dict):
            items = [{"name": k, "value": v} for k, v in items.items()]
        elif not isinstance(items, list):
            items = [items]
        block = call.positional[2]
        for item in items:
            stack.add_var(decl.var_id, item)
            try:
                data = await run_block_arg(engine_state, stack, block, PipelineData.empty())
                await drain(engine_state, stack, data)
            except BreakSignal:
                break
            except ContinueSignal:
                continue
        return PipelineData.empty()


def _max_loop_iters() -> int:
    raw = os.environ.get("TIDE_MAX_LOOP_ITERS")
    try:
        return int(raw) if raw else 1_000_000
    except ValueError:
        return 1_000_000


class Loop(_Keyword):
    name = "loop"
    usage = "Run a block until `break`."

    def signature(self):
        return Signature.build(self.name).required("block", "block").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        limit = _max_loop_iters()
        for _ in range(limit):
            try:
                data = await run_block_arg(engine_state, stack, call.positional[0], PipelineData.empty())
                await drain(engine_state, stack, data)
            except BreakSignal:
                return PipelineData.empty()
            except ContinueSignal:
                continue
        raise EvalError(f"loop exceeded {limit} iterations", span=call.head, help="set TIDE_MAX_LOOP_ITERS")


class While(_Keyword):
    name = "while"
    usage = "Run a block while a condition holds."

    def signature(self):
        return (Signature.build(self.name).required("cond", "expression").required("block", "block")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        limit = _max_loop_iters()
        for _ in range(limit):
            cond = await call.req(engine_state, stack, 0)
            if not isinstance(cond, bool):
                raise EvalError(f"while condition must be a bool, found {describe_value(cond)}",
                                span=call.positional[0].span)
            if not cond:
                return PipelineData.empty()
            try:
                data = await run_block_arg(engine_state, stack, call.positional[1], PipelineData.empty())
                await drain(engine_state, stack, data)
            except BreakSignal:
                return PipelineData.empty()
            except ContinueSignal:
                continue
        raise EvalError(f"while exceeded {limit} iterations", span=call.head, help="set TIDE_MAX_LOOP_ITERS")


class If(Command):
    name = "if"
    usage = "Conditionally run a block."
    category = "core"

    def signature(self):
        return (Signature.build(self.name).required("cond", "expression").required("then_block", "block")
                .optional("else_expression", "else").set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        from tide.tide_interpreter import eval_call
        cond = await call.req(engine_state, stack, 0)
        if not isinstance(cond, bool):
            raise EvalError(f"if condition must be a bool, found {describe_value(cond)}",
                            span=call.positional[0].span)
        if cond:
            return await run_block_arg(engine_state, stack, call.positional[1], input)
        if len(call.positional) > 2:
            other = call.positional[2]
            if isinstance(other, CallExpr):
                return await eval_call(engine_state, stack, other.call, input)
            return await run_block_arg(engine_state, stack, other, input)
        return PipelineData.empty()


class Break(Command):
    name = "break"
    usage = "Leave the innermost loop."
    category = "core"

    async def run(self, engine_state, stack, call, input):
        raise BreakSignal(call.head)


class Continue(Command):
    name = "continue"
    usage = "Skip to the next loop iteration."
    category = "core"

    async def run(self, engine_state, stack, call, input):
        raise ContinueSignal(call.head)


class Return(Command):
    name = "return"
    usage = "Return early from a custom command or script."
    category = "core"

    def signature(self):
        return Signature.build(self.name).optional("return_value").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        raise ReturnSignal(await call.opt(engine_state, stack, 0), call.head)


class Do(Command):
    name = "do"
    usage = "Run a closure, passing input and arguments."
    category = "core"

    def signature(self):
        return (Signature.build(self.name).required("closure", "closure").rest("rest")
                .switch("ignore-errors", "ignore errors raised by the closure", "i")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        from tide.tide_interpreter import run_closure
        closure = await call.req(engine_state, stack, 0)
        if not isinstance(closure, Closure):
            raise EvalError(f"do expects a closure, found {describe_value(closure)}", span=call.head)
        args = await call.rest(engine_state, stack, 1)
        try:
            data = await run_closure(engine_state, closure, args, input)
            if call.has_flag("ignore-errors"):
                return PipelineData.value(await data.into_value())
            return data
        except ShellError:
            if call.has_flag("ignore-errors"):
                return PipelineData.empty()
            raise


class Try(Command):
    name = "try"
    usage = "Run a block, running the catch closure if it errors."
    category = "core"

    def signature(self):
        return (Signature.build(self.name).required("try_block", "block").optional("catch_closure", "catch")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        from tide.tide_interpreter import run_closure
        try:
            data = await run_block_arg(engine_state, stack, call.positional[0], input)
            return PipelineData.value(await data.into_value())
        except ShellError as e:
            if len(call.positional) < 2:
                return PipelineData.empty()
            handler = await call.req(engine_state, stack, 1)
            err = {"msg": e.msg, "kind": e.kind}
            return await run_closure(engine_state, handler, [err], PipelineData.value(err))


class Echo(Command):
    name = "echo"
    usage = "Return the given values as a list (or the single value)."
    category = "core"

    def signature(self):
        return Signature.build(self.name).rest("rest").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        values = await call.rest(engine_state, stack, 0)
        if not values:
            return PipelineData.empty()
        if len(values) == 1:
            return PipelineData.value(values[0])
        return PipelineData.value(values)


class Ignore(Command):
    name = "ignore"
    usage = "Consume the input and return nothing."
    category = "core"

    async def run(self, engine_state, stack, call, input):
        await input.into_value()
        return PipelineData.empty()


class Describe(Command):
    name = "describe"
    usage = "Describe the type of the input value."
    category = "core"

    async def run(self, engine_state, stack, call, input):
        if isinstance(input, ExternalStream):
            return PipelineData.value("raw input")
        return PipelineData.value(describe_value(await input.into_value()))


class Debug(Command):
    name = "debug"
    usage = "Render the input value in its debug form."
    category = "core"

    async def run(self, engine_state, stack, call, input):
        from tide.tide_printer import Printer
        return PipelineData.value(Printer(engine_state.config).debug(await input.into_value()))


class ErrorMake(Command):
    name = "error make"
    usage = "Raise an error from a record with a `msg` field."
    category = "core"

    def signature(self):
        return Signature.build(self.name).required("error_struct").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        spec = await call.req(engine_state, stack, 0)
        if not isinstance(spec, dict) or "msg" not in spec:
            raise EvalError("error make expects a record with a `msg` field", span=call.head)
        label = spec.get("label")
        text = label.get("text") if isinstance(label, dict) else label
        raise EvalError(str(spec["msg"]), span=call.span, label=text, help=spec.get("help"))


class Metadata(Command):
    name = "metadata"
    usage = "Get the source span of an expression."
    category = "core"

    def signature(self):
        return Signature.build(self.name).optional("expression").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        span = call.positional[0].span if call.positional else call.head
        return PipelineData.value({"span": {"start": span.start, "end": span.end}})


class Version(Command):
    name = "version"
    usage = "Version and build information."
    category = "core"

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value({
            "version": __version__,
            "python_version": platform.python_version(),
            "os": sys.platform,
            "features": ", ".join(sorted(getattr(engine_state, "features", ()))),
            "plugins": list(engine_state.plugins),
        })


class Help(Command):
    name = "help"
    usage = "Show help for a command, or list every command."
    category = "core"

    def signature(self):
        return Signature.build(self.name).rest("rest", "any", "command name").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        words = [str(w) for w in await call.rest(engine_state, stack, 0)]
        if not words:
            return PipelineData.value(_command_table(engine_state))
        name = " ".join(words)
        decl_id = engine_state.find_decl(name)
        if decl_id is None:
            raise EvalError(f"Command `{name}` not found", span=call.span, help="run `help commands`")
        decl = engine_state.get_decl(decl_id)
        sig = decl.signature()
        lines = [decl.usage or "", "", f"Usage:\n  > {sig}"]
        if sig.named:
            lines.append("\nFlags:")
            for f in sig.named:
                short = f", -{f.short}" if f.short else ""
                lines.append(f"  --{f.long}{short} - {f.desc}")
        return PipelineData.value("\n".join(lines).strip())


def _command_table(engine_state) -> List[dict]:
    rows = []
    for name in engine_state.visible_decl_names():
        decl = engine_state.get_decl(engine_state.find_decl(name))
        rows.append({"name": name, "category": decl.signature().category or decl.category,
                     "usage": decl.usage})
    return rows


class HelpCommands(Command):
    name = "help commands"
    usage = "List every visible command."
    category = "core"

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value(_command_table(engine_state))


class HelpModules(Command):
    name = "help modules"
    usage = "List every module."
    category = "core"

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value([
            {"name": m.name, "commands": [n for n, _ in m.decls]} for m in engine_state.modules
        ])


class OverlayList(Command):
    name = "overlay list"
    usage = "List the active overlays."
    category = "core"

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value([o.name for o in engine_state.overlays])


class Source(Command):
    name = "source"
    usage = "Run a script file in the current scope."
    category = "core"
    is_parser_keyword = True

    async def run(self, engine_state, stack, call, input):
        return await run_block_arg(engine_state, stack, call.positional[1], input)

