import importlib.util
import io
import sys
from pathlib import Path

import pytest

from tide.tide_runtime import ScriptRunner
from tide.tide_stack import LAST_EXIT_CODE

ROOT = Path(__file__).resolve().parent.parent

PLUGIN = '''
from tide.tide_commands import Command
from tide.tide_stream import PipelineData


class Greet(Command):
    name = "greet"
    usage = "Say hello."

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value("hello")
'''


def load_entry_script():
    spec = importlib.util.spec_from_file_location("tide_entry", ROOT / "tide.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.asyncio
async def test_entry_script_counts_directory_entries(monkeypatch, tmp_path, capsys):
    (tmp_path / "one").write_text("1")
    (tmp_path / "two").mkdir()
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(sys, "stdin", io.TextIOWrapper(io.BytesIO(b"")))
    entry = load_entry_script()
    assert entry.SOURCE == b"ls | length"
    assert await entry.main() is True
    assert capsys.readouterr().out == "2\n"


@pytest.mark.asyncio
async def test_register_adds_plugin_commands(tmp_path):
    plugin = tmp_path / "greet_plugin.py"
    plugin.write_text(PLUGIN)
    runner = ScriptRunner(features={"plugin"}, platform="linux")
    res = await runner.handle_script(f'register "{plugin}"')
    assert res.status == 'success', res.error_message
    assert res.value == ["greet"]
    assert str(plugin) in runner.engine_state.plugins

    res = await runner.handle_script("greet")
    assert res.status == 'success', res.error_message
    assert res.value == "hello"
    assert runner.stack.get_env_var(LAST_EXIT_CODE) == 0


@pytest.mark.asyncio
async def test_register_rejects_empty_plugin(tmp_path):
    plugin = tmp_path / "empty.py"
    plugin.write_text("X = 1\n")
    runner = ScriptRunner(features={"plugin"}, platform="linux")
    res = await runner.handle_script(f'register "{plugin}"')
    assert res.status == 'error'
    assert "No commands found" in res.error_message
