"""
The evaluation pipeline: parse a chunk of source against a working set,
commit it, run it and report the outcome.
"""
from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any, Literal, Optional, Union

from tide.tide_context import create_default_context
from tide.tide_datatypes import (
    BreakSignal, ContinueSignal, ControlFlow, EvalError, MergeFault, ReturnSignal, ShellError, Span,
)
from tide.tide_interpreter import _dbg, eval_block, eval_block_with_early_return
from tide.tide_parser import parse
from tide.tide_stack import LAST_EXIT_CODE, Stack, create_stack, set_last_exit_code
from tide.tide_state import EngineState, StateWorkingSet
from tide.tide_stream import ExternalStream, PipelineData, enable_vt_processing, print_if_stream


_CONTROL_KEYWORDS = {ReturnSignal: "return", BreakSignal: "break", ContinueSignal: "continue"}


def create_engine_state() -> EngineState:
    return create_default_context()


# ===================================================================
# 1. Diagnostics
# ===================================================================

def _location(working_set: StateWorkingSet, span: Span) -> Optional[tuple]:
    """(file name, file text, 1-based line, 1-based column) for a span."""
    if span.is_unknown():
        return None
    f = working_set.file_for_span(span)
    if f is None:
        return None
    text = working_set.source_text(f)
    offset = min(max(span.start - f.start, 0), len(text))
    line = text.count("\n", 0, offset) + 1
    col = offset - (text.rfind("\n", 0, offset) + 1) + 1
    return f.name, text, line, col


def _source_context(text: str, line: int, col: int, width: int, label: Optional[str],
                    radius: int = 1) -> str:
    lines = text.splitlines() or [""]
    start = max(1, line - radius)
    end = min(len(lines), line)
    gutter = len(str(end))
    out = []
    for i in range(start, end + 1):
        out.append(f" {str(i).rjust(gutter)} │ {lines[i - 1]}")
    marker = " " * (col - 1) + "^" * max(width, 1)
    if label:
        marker += f" {label}"
    out.append(f" {' ' * gutter} │ {marker}")
    return "\n".join(out)


def format_error(working_set: StateWorkingSet, err: ShellError) -> str:
    """Render a diagnostic: message, location, source excerpt, help and call trace."""
    lines = [f"Error: {err.kind}: {err.msg}"]
    loc = _location(working_set, err.span)
    if loc is not None:
        name, text, line, col = loc
        lines.append(f"  --> {name}:{line}:{col}")
        line_len = len(text.splitlines()[line - 1]) if text.splitlines() else 0
        width = min(err.span.end - err.span.start, max(line_len - col + 1, 1))
        lines.append(_source_context(text, line, col, width, err.label))
    elif err.label:
        lines.append(f"  = {err.label}")
    if err.help:
        lines.append(f"  help: {err.help}")
    if err.trace:
        lines.append("  trace: " + " → ".join(err.trace))
    return "\n".join(lines)


def report_error(working_set: StateWorkingSet, err: ShellError) -> None:
    print(format_error(working_set, err), file=sys.stderr)


def report_error_new(engine_state: EngineState, err: ShellError) -> None:
    report_error(StateWorkingSet(engine_state), err)


# ===================================================================
# 2. eval_source
# ===================================================================

async def eval_source(engine_state: EngineState, stack: Stack, source: Union[bytes, str], fname: str,
                      input: PipelineData, allow_return: bool) -> bool:
    """Parse, commit, run and print one chunk of source.

    Returns True on success. Every failure sets LAST_EXIT_CODE to 1 and
    reports a diagnostic on stderr; a parse failure leaves `engine_state`
    untouched. The Windows console mode is restored after every evaluation,
    successful or not.
    """
    try:
        return await _eval_source(engine_state, stack, source, fname, input, allow_return)
    finally:
        enable_vt_processing()


async def _eval_source(engine_state: EngineState, stack: Stack, source: Union[bytes, str], fname: str,
                       input: PipelineData, allow_return: bool) -> bool:
    working_set = StateWorkingSet(engine_state)
    block = parse(working_set, fname, source, False)
    if working_set.parse_errors:
        set_last_exit_code(stack, 1)
        report_error(working_set, working_set.parse_errors[0])
        return False
    delta = working_set.render()

    try:
        engine_state.merge_delta(delta)
    except MergeFault as e:
        set_last_exit_code(stack, 1)
        report_error_new(engine_state, e)
        return False

    try:
        try:
            if allow_return:
                data = await eval_block_with_early_return(engine_state, stack, block, input)
            else:
                data = await eval_block(engine_state, stack, block, input)
        except ControlFlow as cf:
            keyword = _CONTROL_KEYWORDS.get(type(cf), "return")
            raise EvalError(f"`{keyword}` used outside of a command or loop", span=cf.span) from None
    except ShellError as e:
        _dbg("EVAL FAILED", repr(e))
        set_last_exit_code(stack, 1)
        report_error_new(engine_state, e)
        return False

    try:
        if isinstance(data, ExternalStream):
            exit_code = await print_if_stream(data.stdout, data.stderr, False, data.exit_code)
        else:
            exit_code = await data.print(engine_state, stack, True, False)
    except ShellError as e:
        set_last_exit_code(stack, 1)
        report_error_new(engine_state, e)
        return False

    set_last_exit_code(stack, exit_code)
    return True


# ===================================================================
# 3. Embedding façade
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of one evaluation."""
    status: Literal['success', 'error']
    value: Any = None
    exit_code: int = 0
    error_message: Optional[str] = None

    def format_error(self) -> str:
        if self.status != 'error':
            return ""
        return str(self.error_message or "Unknown error")


class ScriptRunner:
    """Owns an engine state and a stack; runs source and returns structured results.

    Unlike `eval_source`, the final value is returned instead of printed;
    external output is collected into a string.
    """

    def __init__(self, engine_state: Optional[EngineState] = None, stack: Optional[Stack] = None,
                 features=None, platform: Optional[str] = None, allow_return: bool = True):
        if engine_state is None:
            engine_state = create_default_context(features=features, platform=platform)
        self.engine_state = engine_state
        self.stack = stack or create_stack()
        self.allow_return = allow_return
        self._entry = 0

    async def handle_script(self, source: Union[bytes, str], fname: Optional[str] = None,
                            input: Optional[PipelineData] = None) -> ExecutionResult:
        self._entry += 1
        fname = fname or f"entry #{self._entry}"
        working_set = StateWorkingSet(self.engine_state)
        block = parse(working_set, fname, source, False)
        if working_set.parse_errors:
            return self._fail(working_set, working_set.parse_errors[0])
        try:
            self.engine_state.merge_delta(working_set.render())
        except MergeFault as e:
            return self._fail(StateWorkingSet(self.engine_state), e)

        runner = eval_block_with_early_return if self.allow_return else eval_block
        try:
            try:
                data = await runner(self.engine_state, self.stack, block, input or PipelineData.empty())
                if isinstance(data, ExternalStream):
                    value = await data.into_value()
                    exit_code = await data.exit_code.resolve() if data.exit_code is not None else 0
                else:
                    value = await data.into_value()
                    exit_code = 0
            except ControlFlow as cf:
                keyword = _CONTROL_KEYWORDS.get(type(cf), "return")
                raise EvalError(f"`{keyword}` used outside of a command or loop", span=cf.span) from None
        except ShellError as e:
            return self._fail(StateWorkingSet(self.engine_state), e)

        set_last_exit_code(self.stack, exit_code)
        return ExecutionResult('success', value, exit_code)

    def _fail(self, working_set: StateWorkingSet, err: ShellError) -> ExecutionResult:
        set_last_exit_code(self.stack, 1)
        return ExecutionResult('error', None, 1, format_error(working_set, err))

    @property
    def last_exit_code(self) -> Optional[int]:
        return self.stack.get_env_var(LAST_EXIT_CODE)
