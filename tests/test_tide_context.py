import pytest

import tide.tide_context as tide_context
from tide.tide_builtins import Upsert, Where
from tide.tide_commands import Command, Echo, Ignore
from tide.tide_context import DEFAULT_FEATURES, configured_features, create_default_context, default_commands
from tide.tide_stream import PipelineData


class Tagged(Command):
    def __init__(self, name, tag):
        self.name = name
        self.tag = tag

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value(self.tag)


def test_core_commands_are_registered():
    engine_state = create_default_context(platform="linux")
    for name in ("let", "def", "if", "each", "where", "ls", "length", "str upcase", "from json", "math sum"):
        assert engine_state.find_decl(name) is not None, name


def test_two_boots_expose_the_same_names():
    first = create_default_context(platform="linux")
    second = create_default_context(platform="linux")
    assert first.visible_decl_names() == second.visible_decl_names()
    assert first.num_decls() == second.num_decls()


def test_unix_only_and_windows_only_commands():
    linux = create_default_context(features=set(), platform="linux")
    assert linux.find_decl("exec") is not None
    assert linux.find_decl("registry query") is None
    assert linux.find_decl("ps") is not None

    windows = create_default_context(features=set(), platform="win32")
    assert windows.find_decl("exec") is None
    assert windows.find_decl("registry query") is not None
    assert windows.find_decl("ps") is not None


def test_ps_is_skipped_on_unlisted_platforms():
    engine_state = create_default_context(features=set(), platform="freebsd14")
    assert engine_state.find_decl("ps") is None
    assert engine_state.find_decl("exec") is not None


def test_feature_gated_commands():
    bare = create_default_context(features=set(), platform="linux")
    assert bare.find_decl("which") is None
    assert bare.find_decl("register") is None

    full = create_default_context(features={"which-support", "plugin"}, platform="linux")
    assert full.find_decl("which") is not None
    assert full.find_decl("register") is not None
    assert full.features == frozenset({"which-support", "plugin"})


def test_features_from_environment(monkeypatch):
    monkeypatch.delenv("TIDE_FEATURES", raising=False)
    assert configured_features() == DEFAULT_FEATURES
    monkeypatch.setenv("TIDE_FEATURES", "plugin, which-support,")
    assert configured_features() == frozenset({"plugin", "which-support"})
    monkeypatch.setenv("TIDE_FEATURES", "")
    assert configured_features() == frozenset()


def test_reregistered_names_resolve_to_the_later_entry():
    commands = default_commands("linux", DEFAULT_FEATURES)
    where_ids = [i for i, cmd in enumerate(commands) if cmd.name == "where"]
    assert len(where_ids) == 2

    engine_state = create_default_context(features=DEFAULT_FEATURES, platform="linux")
    assert engine_state.find_decl("where") == where_ids[-1]
    assert isinstance(engine_state.get_decl(where_ids[-1]), Where)
    assert isinstance(engine_state.get_decl(engine_state.find_decl("upsert")), Upsert)


def test_last_write_wins_for_duplicate_names(monkeypatch):
    monkeypatch.setattr(tide_context, "default_commands",
                        lambda platform, features: [Tagged("dup", 1), Tagged("dup", 2)])
    engine_state = create_default_context(platform="linux")
    assert engine_state.get_decl(engine_state.find_decl("dup")).tag == 2


def test_failed_merge_keeps_earlier_commands(monkeypatch, capsys):
    monkeypatch.setattr(tide_context, "default_commands",
                        lambda platform, features: [Echo(), object(), Ignore()])
    engine_state = create_default_context(platform="linux")
    err = capsys.readouterr().err
    assert "Error creating default context" in err
    assert engine_state.find_decl("echo") is not None
    assert engine_state.find_decl("ignore") is None


def test_deprecated_commands_point_to_replacements():
    engine_state = create_default_context(platform="linux")
    decl = engine_state.get_decl(engine_state.find_decl("pivot"))
    assert decl.name == "pivot"
    assert decl.category == "deprecated"
