import shutil
import sys

import pytest

from tide.tide_context import create_default_context
from tide.tide_runtime import ExecutionResult, ScriptRunner, eval_source, format_error
from tide.tide_stack import LAST_EXIT_CODE, Stack, create_stack
from tide.tide_state import StateWorkingSet
from tide.tide_stream import PipelineData

needs_sh = pytest.mark.skipif(sys.platform == "win32" or shutil.which("sh") is None,
                              reason="needs a POSIX shell")


@pytest.fixture
def engine_state():
    return create_default_context(platform="linux")


@pytest.fixture
def stack(tmp_path):
    stack = create_stack()
    stack.add_env_var("PWD", str(tmp_path))
    return stack


async def run(engine_state, stack, src, allow_return=True):
    return await eval_source(engine_state, stack, src, "test", PipelineData.empty(), allow_return)


def snapshot(engine_state):
    return (engine_state.num_decls(), engine_state.num_blocks(), len(engine_state.vars),
            len(engine_state.file_contents), engine_state.visible_decl_names())


# --- eval_source -------------------------------------------------------

@pytest.mark.asyncio
async def test_ls_length_prints_count(engine_state, stack, tmp_path, capsys):
    for name in ("a.txt", "b.txt", "c.txt"):
        (tmp_path / name).write_text("x")
    assert await run(engine_state, stack, b"ls | length")
    assert capsys.readouterr().out == "3\n"
    assert stack.get_env_var(LAST_EXIT_CODE) == 0


@pytest.mark.asyncio
async def test_nothing_result_prints_nothing(engine_state, stack, capsys):
    assert await run(engine_state, stack, "let y = 1")
    assert capsys.readouterr().out == ""
    assert stack.get_env_var(LAST_EXIT_CODE) == 0


@pytest.mark.asyncio
async def test_parse_error_leaves_state_untouched(engine_state, stack, capsys):
    before = snapshot(engine_state)
    assert not await run(engine_state, stack, "def foo [] { 1 }; let = 3")
    assert snapshot(engine_state) == before
    assert engine_state.find_decl("foo") is None
    assert stack.get_env_var(LAST_EXIT_CODE) == 1
    err = capsys.readouterr().err
    assert "Error:" in err
    assert "--> test:1:" in err


@pytest.mark.asyncio
async def test_def_is_callable_in_same_chunk_and_later(engine_state, stack, capsys):
    assert await run(engine_state, stack, "def add [a, b] { $a + $b }; add 2 3")
    assert capsys.readouterr().out == "5\n"
    assert await run(engine_state, stack, "add 10 20")
    assert capsys.readouterr().out == "30\n"


@pytest.mark.asyncio
async def test_variables_persist_between_chunks(engine_state, stack, capsys):
    assert await run(engine_state, stack, "let x = 3; x + 4")
    assert capsys.readouterr().out == "7\n"
    assert await run(engine_state, stack, "$x * 2")
    assert capsys.readouterr().out == "6\n"


@pytest.mark.asyncio
async def test_runtime_error_sets_exit_code(engine_state, stack, capsys):
    assert not await run(engine_state, stack, "1 / 0")
    assert stack.get_env_var(LAST_EXIT_CODE) == 1
    assert "Division by zero" in capsys.readouterr().err
    # the failed chunk's code is still committed; later chunks see the exit code
    assert await run(engine_state, stack, "$env.LAST_EXIT_CODE")
    assert capsys.readouterr().out == "1\n"


@pytest.mark.asyncio
async def test_success_resets_exit_code(engine_state, stack, capsys):
    assert not await run(engine_state, stack, "1 / 0")
    assert await run(engine_state, stack, "1 + 1")
    assert stack.get_env_var(LAST_EXIT_CODE) == 0


@pytest.mark.asyncio
async def test_early_return_allowed(engine_state, stack, capsys):
    assert await run(engine_state, stack, "return 5; 6", allow_return=True)
    assert capsys.readouterr().out == "5\n"


@pytest.mark.asyncio
async def test_early_return_rejected_when_not_allowed(engine_state, stack, capsys):
    assert not await run(engine_state, stack, "return 5", allow_return=False)
    assert stack.get_env_var(LAST_EXIT_CODE) == 1
    assert "`return` used outside" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_vt_hook_runs_after_printing(engine_state, stack, monkeypatch, capsys):
    import tide.tide_runtime as runtime
    calls = []
    monkeypatch.setattr(runtime, "enable_vt_processing", lambda: calls.append(capsys.readouterr().out))
    assert await run(engine_state, stack, "40 + 2")
    assert calls == ["42\n"]


@pytest.mark.asyncio
async def test_vt_hook_runs_after_failed_evaluations(engine_state, stack, monkeypatch, capsys):
    import tide.tide_runtime as runtime
    calls = []
    monkeypatch.setattr(runtime, "enable_vt_processing", lambda: calls.append(True))
    assert not await run(engine_state, stack, "let = 1")
    assert not await run(engine_state, stack, "1 / 0")
    assert not await run(engine_state, stack, "return 1", allow_return=False)
    assert calls == [True, True, True]


@needs_sh
@pytest.mark.asyncio
async def test_external_exit_code_propagates(engine_state, stack, capsys):
    assert await run(engine_state, stack, '^sh -c "exit 3"')
    assert stack.get_env_var(LAST_EXIT_CODE) == 3


@needs_sh
@pytest.mark.asyncio
async def test_external_output_is_streamed(engine_state, stack, capsys):
    assert await run(engine_state, stack, '^sh -c "echo out; echo err 1>&2"')
    captured = capsys.readouterr()
    assert captured.out == "out\n"
    assert captured.err == "err\n"
    assert stack.get_env_var(LAST_EXIT_CODE) == 0


@needs_sh
@pytest.mark.asyncio
async def test_external_stderr_reaches_terminal_when_piped_into_builtin(engine_state, stack, capsys):
    assert await run(engine_state, stack, '^sh -c "echo out; echo ZZMARK 1>&2" | str length')
    captured = capsys.readouterr()
    assert captured.out == "3\n"
    assert "ZZMARK" in captured.err


@needs_sh
@pytest.mark.asyncio
async def test_stdin_feed_failure_surfaces_with_exit_code(engine_state, stack):
    from tide.tide_datatypes import EvalError, Span
    from tide.tide_interpreter import run_external

    class Failing(PipelineData):
        async def into_value(self):
            raise EvalError("upstream broke")

    data = await run_external(engine_state, stack, "cat", [], Failing(), Span.unknown())
    await data.stdout.into_bytes()
    await data.stderr.into_bytes()
    with pytest.raises(EvalError, match="upstream broke"):
        await data.exit_code.resolve()


@pytest.mark.asyncio
async def test_break_outside_loop_is_named(engine_state, stack, capsys):
    assert not await run(engine_state, stack, "break")
    assert "`break` used outside" in capsys.readouterr().err

@pytest.mark.asyncio
async def test_missing_external_is_an_error(engine_state, stack, capsys):
    assert not await run(engine_state, stack, "^tide-no-such-program-xyz")
    assert stack.get_env_var(LAST_EXIT_CODE) == 1
    assert capsys.readouterr().err.startswith("Error:")


# --- ScriptRunner -----------------------------------------------------

def assert_ok(res, expected=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains=None):
    assert res.status == 'error', f"expected error, got {res.status} with value {res.value!r}"
    if contains:
        msg = res.error_message or ""
        assert contains in msg, f"error message did not contain {contains!r}: {msg!r}"


@pytest.mark.asyncio
async def test_runner_returns_values():
    runner = ScriptRunner(platform="linux")
    assert_ok(await runner.handle_script("let x = 3; x + 4"), 7)
    assert runner.last_exit_code == 0


@pytest.mark.asyncio
async def test_runner_reports_errors_with_location():
    runner = ScriptRunner(platform="linux")
    res = await runner.handle_script("let a = 1\n1 / 0", fname="calc")
    assert_error(res, "Division by zero")
    assert "--> calc:2:5" in res.error_message
    assert res.exit_code == 1
    assert runner.last_exit_code == 1


@pytest.mark.asyncio
async def test_runner_trace_names_the_failing_command():
    runner = ScriptRunner(platform="linux")
    res = await runner.handle_script("def boom [] { 1 / 0 }; boom")
    assert_error(res, "trace: boom")


@pytest.mark.asyncio
async def test_runner_shares_state_between_scripts():
    runner = ScriptRunner(platform="linux")
    assert_ok(await runner.handle_script("def double [n] { $n * 2 }"))
    assert_ok(await runner.handle_script("double 21"), 42)


@needs_sh
@pytest.mark.asyncio
async def test_runner_collects_external_output():
    runner = ScriptRunner(platform="linux")
    res = await runner.handle_script('^sh -c "echo hi; exit 2"')
    assert_ok(res, "hi")
    assert res.exit_code == 2
    assert runner.last_exit_code == 2


@pytest.mark.asyncio
async def test_runner_uses_given_state_and_stack():
    engine_state = create_default_context(platform="linux")
    stack = Stack()
    runner = ScriptRunner(engine_state=engine_state, stack=stack)
    assert_ok(await runner.handle_script("let z = 1"))
    assert engine_state.find_variable("z") is not None
    assert stack.get_env_var(LAST_EXIT_CODE) == 0


def test_execution_result_format_error():
    assert ExecutionResult('success', 1).format_error() == ""
    assert ExecutionResult('error', None, 1, "Error: boom").format_error() == "Error: boom"
    assert ExecutionResult('error').format_error() == "Unknown error"


def test_format_error_without_location(engine_state):
    from tide.tide_datatypes import EvalError
    err = EvalError("bad thing", label="here", help="try again")
    text = format_error(StateWorkingSet(engine_state), err)
    assert text.splitlines() == ["Error: EvalError: bad thing", "  = here", "  help: try again"]


@pytest.mark.asyncio
async def test_runner_names_escaped_control_keyword():
    runner = ScriptRunner(platform="linux", allow_return=False)
    assert_error(await runner.handle_script("continue"), "`continue` used outside")
    assert_error(await runner.handle_script("return 1"), "`return` used outside")
