"""
Evaluates parsed Blocks against an EngineState and a Stack.

Everything is async: commands may await subprocesses, HTTP requests or
stream reads.
"""
from __future__ import annotations

import asyncio
import operator
import os
import re
import sys
from typing import Any, Dict, List, Optional

from tide.tide_datatypes import (
    Assignment, BinaryOp, Block, BlockArg, Call, CallExpr, CellPathExpr, Closure,
    ClosureExpr, ControlFlow, EvalError, Expr, ExternalCall, ExternalCommandError,
    ListExpr, Literal, Pipeline, RangeExpr, RecordExpr, ReturnSignal, ShellError,
    Span, Subexpression, UnaryOp, VarDecl, VarRef,
)
from tide.tide_stack import Stack, set_last_exit_code
from tide.tide_state import ENV_VARIABLE_ID, IN_VARIABLE_ID, IT_VARIABLE_ID, EngineState
from tide.tide_stream import (
    EmptyData, ExitCode, ExternalStream, PipelineData, RawStream,
)


def _dbg(*args):
    if os.environ.get("TIDE_DEBUG"):
        print("[DBG]", *args, file=sys.stderr)


# ===================================================================
# 1. Blocks and pipelines
# ===================================================================

async def eval_block(engine_state: EngineState, stack: Stack, block: Block, input: PipelineData,
                     redirect_stdout: bool = False, redirect_stderr: bool = False) -> PipelineData:
    """Run every pipeline of `block`; the last pipeline's data is returned.

    Input feeds only the first pipeline. Earlier pipelines are finished in
    place: external output is printed (or, when redirected, collected and
    dropped) and LAST_EXIT_CODE updated; plain values are discarded.
    """
    result: PipelineData = PipelineData.empty()
    count = len(block.pipelines)
    for idx, pipeline in enumerate(block.pipelines):
        data = await eval_pipeline(engine_state, stack, pipeline, input if idx == 0 else PipelineData.empty())
        if idx < count - 1:
            await _finish(engine_state, stack, data, redirect_stdout, redirect_stderr)
        else:
            result = data
    return result


async def eval_block_with_early_return(engine_state: EngineState, stack: Stack, block: Block,
                                       input: PipelineData, redirect_stdout: bool = False,
                                       redirect_stderr: bool = False) -> PipelineData:
    """Like eval_block, but a `return` ends the block with its value."""
    try:
        return await eval_block(engine_state, stack, block, input, redirect_stdout, redirect_stderr)
    except ReturnSignal as r:
        return PipelineData.value(r.value)


async def _finish(engine_state, stack, data: PipelineData, redirect_stdout: bool, redirect_stderr: bool) -> None:
    if not isinstance(data, ExternalStream):
        return
    if redirect_stdout:
        await data.into_value()
        code = await data.exit_code.resolve() if data.exit_code is not None else 0
    else:
        code = await data.print(engine_state, stack)
    set_last_exit_code(stack, code)


async def eval_pipeline(engine_state: EngineState, stack: Stack, pipeline: Pipeline,
                        input: PipelineData) -> PipelineData:
    data = input
    for element in pipeline.elements:
        data = await eval_element(engine_state, stack, element, data)
    return data


async def eval_element(engine_state, stack, element: Expr, input: PipelineData) -> PipelineData:
    if isinstance(element, CallExpr):
        return await eval_call(engine_state, stack, element.call, input)
    if isinstance(element, ExternalCall):
        return await eval_external(engine_state, stack, element, input)
    if not isinstance(input, EmptyData):
        stack.add_var(IN_VARIABLE_ID, await input.into_value())
    return PipelineData.value(await eval_expression(engine_state, stack, element))


async def eval_call(engine_state: EngineState, stack: Stack, call: Call, input: PipelineData) -> PipelineData:
    decl = engine_state.get_decl(call.decl_id)
    _dbg("CALL", decl.name, f"args={len(call.positional)}", f"flags={list(call.named)}")
    try:
        result = await decl.run(engine_state, stack, call, input)
    except ShellError as e:
        e.trace.insert(0, decl.name)
        raise
    except ControlFlow:
        raise
    except Exception as e:
        err = EvalError(f"{type(e).__name__}: {e}", span=call.head, label=f"while running `{decl.name}`")
        err.trace.append(decl.name)
        raise err from e
    if result is None:
        return PipelineData.empty()
    if not isinstance(result, PipelineData):
        return PipelineData.value(result)
    return result


# ===================================================================
# 2. Expressions
# ===================================================================

async def eval_expression(engine_state: EngineState, stack: Stack, expr: Expr) -> Any:
    match expr:
        case Literal(value=value):
            return value
        case VarRef(var_id=var_id, name=name, cell_path=path, span=span):
            return follow_cell_path(_read_var(engine_state, stack, var_id, name, span), path, span)
        case VarDecl(var_id=var_id):
            return var_id
        case BinaryOp():
            return await _eval_binary(engine_state, stack, expr)
        case UnaryOp(op=op, operand=operand, span=span):
            value = await eval_expression(engine_state, stack, operand)
            if op == "not":
                if not isinstance(value, bool):
                    raise EvalError(f"`not` expects a bool, found {type(value).__name__}", span=span)
                return not value
            if op == "-":
                return -value
            raise EvalError(f"Unknown unary operator `{op}`", span=span)
        case Assignment(var_id=var_id, rhs=rhs):
            stack.set_var(var_id, await eval_expression(engine_state, stack, rhs))
            return None
        case ListExpr(items=items):
            return [await eval_expression(engine_state, stack, item) for item in items]
        case RecordExpr(pairs=pairs):
            return {key: await eval_expression(engine_state, stack, value) for key, value in pairs}
        case RangeExpr(start=start, end=end, span=span):
            lo = await eval_expression(engine_state, stack, start)
            hi = await eval_expression(engine_state, stack, end)
            if not isinstance(lo, int) or not isinstance(hi, int) or isinstance(lo, bool) or isinstance(hi, bool):
                raise EvalError("Ranges need integer bounds", span=span)
            step = 1 if hi >= lo else -1
            return list(range(lo, hi + step, step))
        case Subexpression(block_id=block_id):
            block = engine_state.get_block(block_id)
            data = await eval_block(engine_state, stack, block, PipelineData.empty())
            return await data.into_value()
        case BlockArg(block_id=block_id) | ClosureExpr(block_id=block_id):
            return Closure(block_id, stack)
        case CellPathExpr(members=members):
            return list(members)
        case CallExpr(call=call):
            data = await eval_call(engine_state, stack, call, PipelineData.empty())
            return await data.into_value()
        case ExternalCall():
            data = await eval_external(engine_state, stack, expr, PipelineData.empty())
            return await data.into_value()
    raise EvalError(f"Cannot evaluate {type(expr).__name__}", span=getattr(expr, "span", None))


def _read_var(engine_state, stack: Stack, var_id: int, name: str, span: Span) -> Any:
    if var_id == ENV_VARIABLE_ID:
        return {**engine_state.env_vars, **stack.get_env_vars()}
    if var_id in (IN_VARIABLE_ID, IT_VARIABLE_ID):
        return stack.get_var(var_id) if stack.has_var(var_id) else None
    try:
        return stack.get_var(var_id)
    except KeyError:
        raise EvalError(f"Variable not found: ${name}", span=span) from None


def follow_cell_path(value: Any, path, span: Optional[Span] = None) -> Any:
    for member in path:
        if isinstance(value, dict):
            if member not in value:
                raise EvalError(f"Cannot find column `{member}`", span=span)
            value = value[member]
        elif isinstance(value, list):
            if isinstance(member, int):
                if member >= len(value):
                    raise EvalError(f"Row number {member} is too large (length {len(value)})", span=span)
                value = value[member]
            else:
                value = [follow_cell_path(row, (member,), span) for row in value]
        elif isinstance(value, str) and isinstance(member, int):
            raise EvalError("Strings do not have rows; use `str substring`", span=span)
        else:
            raise EvalError(f"Cannot access `{member}` on a {type(value).__name__}", span=span)
    return value


_ARITH = {
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "//": operator.floordiv,
    "mod": operator.mod,
    "**": operator.pow,
}

_COMPARE = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


async def _eval_binary(engine_state, stack, expr: BinaryOp) -> Any:
    op = expr.op
    lhs = await eval_expression(engine_state, stack, expr.lhs)

    if op in ("and", "or"):
        if not isinstance(lhs, bool):
            raise EvalError(f"`{op}` expects bools, found {type(lhs).__name__}", span=expr.lhs.span)
        if (op == "and" and not lhs) or (op == "or" and lhs):
            return lhs
        rhs = await eval_expression(engine_state, stack, expr.rhs)
        if not isinstance(rhs, bool):
            raise EvalError(f"`{op}` expects bools, found {type(rhs).__name__}", span=expr.rhs.span)
        return rhs

    rhs = await eval_expression(engine_state, stack, expr.rhs)
    try:
        return binary_op(op, lhs, rhs)
    except ZeroDivisionError:
        raise EvalError("Division by zero", span=expr.rhs.span) from None
    except (TypeError, ValueError):
        raise EvalError(
            f"Type mismatch during operation: {type(lhs).__name__} {op} {type(rhs).__name__}",
            span=expr.span,
        ) from None


def binary_op(op: str, lhs: Any, rhs: Any) -> Any:
    if op == "+":
        if isinstance(lhs, str) != isinstance(rhs, str):
            raise TypeError("mixed string arithmetic")
        if isinstance(lhs, dict) and isinstance(rhs, dict):
            return {**lhs, **rhs}
        return lhs + rhs
    if op == "++":
        if isinstance(lhs, list):
            return lhs + (rhs if isinstance(rhs, list) else [rhs])
        if isinstance(lhs, str) and isinstance(rhs, str):
            return lhs + rhs
        raise TypeError("`++` needs lists or strings")
    if op == "xor":
        if not isinstance(lhs, bool) or not isinstance(rhs, bool):
            raise TypeError("xor expects bools")
        return lhs != rhs
    if op in _ARITH:
        if isinstance(lhs, str) and op != "*":
            raise TypeError("string arithmetic")
        return _ARITH[op](lhs, rhs)
    if op in _COMPARE:
        if op in ("==", "!="):
            return _COMPARE[op](lhs, rhs)
        if lhs is None or rhs is None:
            raise TypeError("comparison with nothing")
        return _COMPARE[op](lhs, rhs)
    if op in ("=~", "!~"):
        found = re.search(str(rhs), str(lhs)) is not None
        return found if op == "=~" else not found
    if op in ("in", "not-in"):
        found = lhs in rhs
        return found if op == "in" else not found
    if op == "starts-with":
        return str(lhs).startswith(str(rhs))
    if op == "ends-with":
        return str(lhs).endswith(str(rhs))
    raise ValueError(f"unknown operator {op}")


# ===================================================================
# 3. Closures
# ===================================================================

async def run_closure(engine_state: EngineState, closure: Closure, args: List[Any],
                      input: PipelineData) -> PipelineData:
    """Call a closure on a child of the stack it captured.

    Positional arguments bind to declared parameters; the first argument (or
    the piped value) is also available as `$it` and `$in`.
    """
    if not isinstance(closure, Closure):
        raise EvalError(f"Expected a closure, found {type(closure).__name__}")
    block = engine_state.get_block(closure.block_id)
    parent = closure.captures if isinstance(closure.captures, Stack) else Stack()
    callee = parent.child()

    sig = block.signature
    params = sig.all_positional() if sig is not None else []
    for i, param in enumerate(params):
        if param.var_id is not None:
            callee.add_var(param.var_id, args[i] if i < len(args) else param.default)
    if sig is not None and sig.rest_positional is not None and sig.rest_positional.var_id is not None:
        callee.add_var(sig.rest_positional.var_id, list(args[len(params):]))

    if args:
        callee.add_var(IT_VARIABLE_ID, args[0])
    if not isinstance(input, EmptyData):
        value = await input.into_value()
        callee.add_var(IN_VARIABLE_ID, value)
        if not args:
            callee.add_var(IT_VARIABLE_ID, value)
        input = PipelineData.value(value)
    elif args:
        callee.add_var(IN_VARIABLE_ID, args[0])

    try:
        return await eval_block(engine_state, callee, block, input)
    except ReturnSignal as r:
        return PipelineData.value(r.value)


async def call_closure(engine_state, closure: Closure, *args: Any) -> Any:
    """Call a closure with the first argument piped in; returns a plain value."""
    input = PipelineData.value(args[0]) if args else PipelineData.empty()
    data = await run_closure(engine_state, closure, list(args), input)
    return await data.into_value()


# ===================================================================
# 4. External commands
# ===================================================================

async def eval_external(engine_state, stack, external: ExternalCall, input: PipelineData) -> PipelineData:
    name = await eval_expression(engine_state, stack, external.head)
    args = [await eval_expression(engine_state, stack, a) for a in external.args]
    return await run_external(engine_state, stack, str(name), args, input, external.span)


def _external_args(values: List[Any]) -> List[str]:
    out: List[str] = []
    for v in values:
        if isinstance(v, list):
            out.extend(_external_args(v))
        elif isinstance(v, bool):
            out.append("true" if v else "false")
        elif v is None:
            continue
        else:
            out.append(str(v))
    return out


def _env_string(value: Any) -> str:
    if isinstance(value, list):
        return os.pathsep.join(str(v) for v in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def external_env(engine_state, stack: Stack) -> Dict[str, str]:
    env = dict(os.environ)
    merged = {**engine_state.env_vars, **stack.get_env_vars()}
    for key, value in merged.items():
        if value is None or isinstance(value, (dict, Closure)):
            continue
        env[key] = _env_string(value)
    return env


async def run_external(engine_state, stack: Stack, name: str, args: List[Any],
                       input: PipelineData, span: Span) -> PipelineData:
    """Spawn an external program; its output comes back as an ExternalStream."""
    argv = _external_args(args)
    cwd = stack.get_env_var("PWD") or None
    if cwd is not None and not os.path.isdir(cwd):
        cwd = None
    feed = not isinstance(input, EmptyData)
    _dbg("EXTERNAL", name, argv, f"cwd={cwd}")
    try:
        proc = await asyncio.create_subprocess_exec(
            name, *argv,
            stdin=asyncio.subprocess.PIPE if feed else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=external_env(engine_state, stack),
        )
    except FileNotFoundError:
        raise ExternalCommandError(f"Command `{name}` not found", span=span,
                                   label="not a built-in, custom or external command",
                                   help="check the spelling or your PATH") from None
    except PermissionError:
        raise ExternalCommandError(f"Command `{name}` is not executable", span=span) from None
    except OSError as e:
        raise ExternalCommandError(f"Could not run `{name}`: {e}", span=span) from None

    feeder = asyncio.ensure_future(_feed_stdin(engine_state, proc, input)) if feed else None

    async def wait() -> int:
        code = await proc.wait()
        if feeder is not None:
            await feeder
        return code

    return PipelineData.external_stream(
        stdout=RawStream(proc.stdout, span=span),
        stderr=RawStream(proc.stderr, span=span),
        exit_code=ExitCode(wait),
        span=span,
        trim_end_newline=True,
    )


async def _feed_stdin(engine_state, proc, input: PipelineData) -> None:
    writer = proc.stdin
    try:
        if isinstance(input, ExternalStream) and input.stdout is not None:
            async for chunk in input.stdout:
                writer.write(chunk)
                await writer.drain()
        else:
            value = await input.into_value()
            if value is not None:
                writer.write(_value_to_bytes(engine_state, value))
                await writer.drain()
    except (BrokenPipeError, ConnectionResetError):
        pass
    finally:
        try:
            writer.close()
        except (BrokenPipeError, ConnectionResetError):
            pass


def _value_to_bytes(engine_state, value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        return ("\n".join(str(v) for v in value) + "\n").encode("utf-8")
    from tide.tide_printer import Printer
    return (Printer(engine_state.config).pformat(value) + "\n").encode("utf-8")
