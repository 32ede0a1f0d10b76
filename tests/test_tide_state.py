import pytest

from tide.tide_commands import Command, Echo, Ignore
from tide.tide_datatypes import MergeFault, Span
from tide.tide_parser import parse
from tide.tide_state import EngineState, StateWorkingSet
from tide.tide_stream import PipelineData


class Named(Command):
    def __init__(self, name, tag):
        self.name = name
        self.tag = tag

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value(self.tag)


def test_merge_commits_decls_and_makes_them_visible():
    engine_state = EngineState()
    ws = StateWorkingSet(engine_state)
    ws.add_decl(Echo())
    ws.add_decl(Ignore())
    engine_state.merge_delta(ws.render())
    assert engine_state.num_decls() == 2
    assert engine_state.find_decl("echo") == 0
    assert engine_state.find_decl("ignore") == 1
    assert sorted(engine_state.visible_decl_names()) == ["echo", "ignore"]


def test_later_registration_shadows_earlier_name():
    engine_state = EngineState()
    ws = StateWorkingSet(engine_state)
    ws.add_decl(Named("dup", "first"))
    ws.add_decl(Named("dup", "second"))
    engine_state.merge_delta(ws.render())
    decl_id = engine_state.find_decl("dup")
    assert decl_id == 1
    assert engine_state.get_decl(decl_id).tag == "second"
    # both declarations are still stored
    assert engine_state.num_decls() == 2


def test_stale_delta_is_rejected_and_state_unchanged():
    engine_state = EngineState()
    first = StateWorkingSet(engine_state)
    second = StateWorkingSet(engine_state)
    first.add_decl(Echo())
    second.add_decl(Ignore())
    engine_state.merge_delta(first.render())
    with pytest.raises(MergeFault):
        engine_state.merge_delta(second.render())
    assert engine_state.num_decls() == 1
    assert engine_state.find_decl("ignore") is None


def test_invalid_declaration_stops_merge_after_earlier_ones():
    engine_state = EngineState()
    ws = StateWorkingSet(engine_state)
    ws.add_decl(Echo())
    ws.add_decl(object())
    ws.add_decl(Ignore())
    with pytest.raises(MergeFault):
        engine_state.merge_delta(ws.render())
    assert engine_state.find_decl("echo") == 0
    assert engine_state.find_decl("ignore") is None


def test_empty_delta_merges_cleanly():
    engine_state = EngineState()
    delta = StateWorkingSet(engine_state).render()
    assert delta.is_empty()
    engine_state.merge_delta(delta)
    assert engine_state.num_decls() == 0


def test_working_set_sees_its_own_pending_decls():
    engine_state = EngineState()
    ws = StateWorkingSet(engine_state)
    decl_id = ws.add_decl(Echo())
    assert ws.find_decl("echo") == decl_id
    assert engine_state.find_decl("echo") is None


def test_spans_are_offsets_into_global_contents():
    engine_state = EngineState()
    ws = StateWorkingSet(engine_state)
    ws.add_decl(Echo())
    engine_state.merge_delta(ws.render())

    ws = StateWorkingSet(engine_state)
    parse(ws, "one", "echo 1", False)
    engine_state.merge_delta(ws.render())

    ws = StateWorkingSet(engine_state)
    start = ws.next_span_start()
    assert start == len("echo 1")
    parse(ws, "two", "echo 22", False)
    engine_state.merge_delta(ws.render())
    span = Span(start + 5, start + 7)
    assert engine_state.get_span_contents(span) == "22"
    assert engine_state.file_for_span(span).name == "two"


def test_partial_merge_keeps_bodies_of_committed_commands():
    engine_state = EngineState()
    ws = StateWorkingSet(engine_state)
    parse(ws, "defs", "def one [] { 1 }", False)
    ws.add_decl(object())
    with pytest.raises(MergeFault):
        engine_state.merge_delta(ws.render())
    decl = engine_state.get_decl(engine_state.find_decl("one"))
    assert decl.block_id < engine_state.num_blocks()
    assert engine_state.get_block(decl.block_id) is not None
