import io
import os
import sys

import pytest

import tide.tide_stack as tide_stack
from tide.tide_stack import LAST_EXIT_CODE, Stack, create_stack, get_init_cwd, set_last_exit_code
from tide.tide_stream import ExitCode, ExternalStream, PipelineData, RawStream, create_stdin_input, print_if_stream


def _no_cwd():
    raise FileNotFoundError("cwd was removed")


# --- Stack ------------------------------------------------------------

def test_child_stack_reads_parent_and_writes_locally():
    parent = Stack()
    parent.add_var(5, "outer")
    parent.add_env_var("FOO", "1")
    child = parent.child()
    assert child.get_var(5) == "outer"
    child.add_env_var("FOO", "2")
    assert child.get_env_var("FOO") == "2"
    assert parent.get_env_var("FOO") == "1"


def test_set_var_rebinds_owning_frame():
    parent = Stack()
    parent.add_var(7, 1)
    child = parent.child()
    child.set_var(7, 2)
    assert parent.get_var(7) == 2
    assert 7 not in child.vars


def test_hidden_env_in_child_does_not_touch_parent():
    parent = Stack()
    parent.add_env_var("SECRET", "x")
    child = parent.child()
    assert child.remove_env_var("SECRET")
    assert child.get_env_var("SECRET") is None
    assert "SECRET" not in child.get_env_vars()
    assert parent.get_env_var("SECRET") == "x"


def test_missing_var_raises_key_error():
    with pytest.raises(KeyError):
        Stack().get_var(99)


def test_set_last_exit_code_stores_int():
    stack = Stack()
    set_last_exit_code(stack, 3)
    assert stack.get_env_var(LAST_EXIT_CODE) == 3


# --- initial working directory ---------------------------------------

def test_init_cwd_prefers_process_cwd():
    assert get_init_cwd() == os.getcwd()


def test_init_cwd_falls_back_to_pwd(monkeypatch):
    monkeypatch.setattr(os, "getcwd", _no_cwd)
    monkeypatch.setenv("PWD", "/some/where")
    assert get_init_cwd() == "/some/where"


def test_init_cwd_falls_back_to_home(monkeypatch):
    monkeypatch.setattr(os, "getcwd", _no_cwd)
    monkeypatch.delenv("PWD", raising=False)
    monkeypatch.setattr(tide_stack, "_home_dir", lambda: "/home/tide")
    assert get_init_cwd() == "/home/tide"


def test_init_cwd_empty_when_nothing_known(monkeypatch):
    monkeypatch.setattr(os, "getcwd", _no_cwd)
    monkeypatch.delenv("PWD", raising=False)
    monkeypatch.setattr(tide_stack, "_home_dir", lambda: None)
    assert get_init_cwd() == ""


def test_create_stack_has_only_pwd(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    stack = create_stack()
    assert stack.get_env_vars() == {"PWD": os.getcwd()}
    assert stack.vars == {}


# --- stdin ------------------------------------------------------------

def _fake_stdin(monkeypatch, data: bytes):
    monkeypatch.setattr(sys, "stdin", io.TextIOWrapper(io.BytesIO(data)))


def test_stdin_input_shape(monkeypatch):
    _fake_stdin(monkeypatch, b"")
    data = create_stdin_input()
    assert isinstance(data, ExternalStream)
    assert data.stdout is not None
    assert data.stderr is None
    assert data.exit_code is None
    assert data.metadata is None
    assert data.trim_end_newline is False
    assert data.span.is_unknown()
    assert not data.stdout.ctrlc.is_set()


def test_each_stdin_input_gets_its_own_cancel_flag(monkeypatch):
    _fake_stdin(monkeypatch, b"")
    first = create_stdin_input()
    second = create_stdin_input()
    assert first.stdout.ctrlc is not second.stdout.ctrlc
    first.stdout.ctrlc.set()
    assert not second.stdout.ctrlc.is_set()


@pytest.mark.asyncio
async def test_stdin_input_reads_bytes_verbatim(monkeypatch):
    _fake_stdin(monkeypatch, b"hello\nworld\n")
    data = create_stdin_input()
    assert await data.into_value() == "hello\nworld\n"


@pytest.mark.asyncio
async def test_cancelled_stream_stops_reading(monkeypatch):
    _fake_stdin(monkeypatch, b"never read")
    data = create_stdin_input()
    data.stdout.ctrlc.set()
    assert await data.stdout.into_bytes() == b""


# --- streams ------------------------------------------------------------

class ChunkReader:
    def __init__(self, *chunks):
        self.chunks = list(chunks)

    async def read(self, n):
        return self.chunks.pop(0) if self.chunks else b""


@pytest.mark.asyncio
async def test_print_if_stream_writes_both_streams_and_resolves_code(capsys):
    async def wait():
        return 4

    code = await print_if_stream(RawStream(ChunkReader(b"out", b"put\n")), RawStream(ChunkReader(b"oops\n")),
                                 False, ExitCode(wait))
    captured = capsys.readouterr()
    assert code == 4
    assert captured.out == "output\n"
    assert captured.err == "oops\n"


@pytest.mark.asyncio
async def test_print_if_stream_without_exit_code_is_zero(capsys):
    assert await print_if_stream(RawStream(ChunkReader(b"x")), None, True, None) == 0
    assert capsys.readouterr().err == "x"


@pytest.mark.asyncio
async def test_exit_code_resolves_once():
    calls = []

    async def wait():
        calls.append(1)
        return 9

    code = ExitCode(wait)
    assert await code.resolve() == 9
    assert await code.resolve() == 9
    assert calls == [1]
    assert await ExitCode.resolved(2).resolve() == 2


@pytest.mark.asyncio
async def test_value_data_prints_with_printer(capsys):
    from tide.tide_state import EngineState
    assert await PipelineData.value([1, 2]).print(EngineState(), Stack()) == 0
    out = capsys.readouterr().out
    assert "╭" in out and "1" in out and "2" in out
    assert await PipelineData.empty().print(EngineState(), Stack()) == 0
    assert capsys.readouterr().out == ""
