"""
The persistent interpreter state and the speculative working set used to
extend it.

A StateWorkingSet is opened against an EngineState, collects everything a
parse pass declares, and is rendered into an immutable StateDelta. Only
EngineState.merge_delta ever changes the shared state.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from tide.tide_datatypes import Block, MergeFault, ParseError, Span

# Variables every engine starts with.
ENV_VARIABLE_ID = 0
IN_VARIABLE_ID = 1
IT_VARIABLE_ID = 2

DEFAULT_OVERLAY = "zero"

DEFAULT_CONFIG: Dict[str, Any] = {
    "table_index": True,
    "float_precision": None,
    "footer_mode": "never",
}


@dataclass(frozen=True)
class VarInfo:
    name: str
    mutable: bool = False
    type_name: str = "any"
    span: Span = field(default_factory=Span.unknown)


@dataclass(frozen=True)
class Module:
    name: str
    decls: Tuple[Tuple[str, int], ...] = ()
    span: Span = field(default_factory=Span.unknown)

    def decl_map(self) -> Dict[str, int]:
        return dict(self.decls)


@dataclass(frozen=True)
class SourceFile:
    name: str
    start: int
    end: int


@dataclass
class Overlay:
    """Name visibility: command, variable and module names mapped to ids."""
    name: str
    decls: Dict[str, int] = field(default_factory=dict)
    vars: Dict[str, int] = field(default_factory=dict)
    modules: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class StateDelta:
    """Everything one working set declared, frozen and ready to merge."""
    base_decls: int
    base_blocks: int
    base_vars: int
    base_modules: int
    base_contents: int
    files: Tuple[SourceFile, ...] = ()
    file_contents: str = ""
    decls: Tuple[Any, ...] = ()
    blocks: Tuple[Block, ...] = ()
    vars: Tuple[VarInfo, ...] = ()
    modules: Tuple[Module, ...] = ()
    visible_decls: Tuple[Tuple[str, int], ...] = ()
    visible_vars: Tuple[Tuple[str, int], ...] = ()
    visible_modules: Tuple[Tuple[str, int], ...] = ()

    def num_decls(self) -> int:
        return len(self.decls)

    def is_empty(self) -> bool:
        return not (self.files or self.decls or self.blocks or self.vars or self.modules)


class EngineState:
    """Long-lived, append-only knowledge base shared by every evaluation."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.files: List[SourceFile] = []
        self.file_contents: str = ""
        self.decls: List[Any] = []
        self.blocks: List[Block] = []
        self.vars: List[VarInfo] = [
            VarInfo("env", type_name="record"),
            VarInfo("in"),
            VarInfo("it"),
        ]
        self.modules: List[Module] = []
        self.overlays: List[Overlay] = [Overlay(DEFAULT_OVERLAY)]
        self.config: Dict[str, Any] = {**DEFAULT_CONFIG, **(config or {})}
        self.env_vars: Dict[str, Any] = {}
        self.plugins: List[str] = []
        self.features: frozenset = frozenset()

    # --- lookups -----------------------------------------------------

    @property
    def active_overlay(self) -> Overlay:
        return self.overlays[-1]

    def num_decls(self) -> int:
        return len(self.decls)

    def num_blocks(self) -> int:
        return len(self.blocks)

    def get_decl(self, decl_id: int):
        return self.decls[decl_id]

    def get_block(self, block_id: int) -> Block:
        return self.blocks[block_id]

    def get_var(self, var_id: int) -> VarInfo:
        return self.vars[var_id]

    def find_decl(self, name: str) -> Optional[int]:
        for overlay in reversed(self.overlays):
            if name in overlay.decls:
                return overlay.decls[name]
        return None

    def find_variable(self, name: str) -> Optional[int]:
        for overlay in reversed(self.overlays):
            if name in overlay.vars:
                return overlay.vars[name]
        return None

    def find_module(self, name: str) -> Optional[int]:
        for overlay in reversed(self.overlays):
            if name in overlay.modules:
                return overlay.modules[name]
        return None

    def visible_decl_names(self) -> List[str]:
        names: Dict[str, int] = {}
        for overlay in self.overlays:
            names.update(overlay.decls)
        return sorted(names)

    def get_span_contents(self, span: Span) -> str:
        return self.file_contents[span.start:span.end]

    def file_for_span(self, span: Span) -> Optional[SourceFile]:
        for f in self.files:
            if f.start <= span.start <= f.end:
                return f
        return None

    # --- merge -------------------------------------------------------

    def merge_delta(self, delta: StateDelta) -> None:
        """Commit a rendered working set.

        The delta's ids were assigned relative to the counts it snapshotted;
        if the state grew since then, nothing is applied.
        """
        expected = (delta.base_decls, delta.base_blocks, delta.base_vars,
                    delta.base_modules, delta.base_contents)
        actual = (len(self.decls), len(self.blocks), len(self.vars),
                  len(self.modules), len(self.file_contents))
        if expected != actual:
            raise MergeFault(
                f"Delta was rendered against a different state snapshot (expected {expected}, found {actual})",
                help="the engine state was modified while the working set was open",
            )

        self.files.extend(delta.files)
        self.file_contents += delta.file_contents
        self.blocks.extend(delta.blocks)
        self.vars.extend(delta.vars)
        self.modules.extend(delta.modules)

        from tide.tide_commands import Command
        overlay = self.active_overlay
        names_by_id: Dict[int, List[str]] = {}
        for name, decl_id in delta.visible_decls:
            if decl_id < delta.base_decls:
                # Re-exported (e.g. `use`) declarations that already exist.
                overlay.decls[name] = decl_id
            else:
                names_by_id.setdefault(decl_id, []).append(name)

        # Declarations are applied one at a time; a bad one stops the merge
        # and everything before it stays registered.
        for offset, decl in enumerate(delta.decls):
            decl_id = delta.base_decls + offset
            if not isinstance(decl, Command) or not decl.name:
                raise MergeFault(f"Declaration #{decl_id} is not a named command: {decl!r}")
            self.decls.append(decl)
            for name in names_by_id.get(decl_id, ()):
                overlay.decls[name] = decl_id

        overlay.vars.update(delta.visible_vars)
        overlay.modules.update(delta.visible_modules)


class _ScopeFrame:
    __slots__ = ("decls", "vars", "modules")

    def __init__(self):
        self.decls: Dict[str, int] = {}
        self.vars: Dict[str, int] = {}
        self.modules: Dict[str, int] = {}


class StateWorkingSet:
    """A speculative overlay on an EngineState used for one parse pass."""

    def __init__(self, engine_state: EngineState):
        self.permanent_state = engine_state
        self._base_decls = engine_state.num_decls()
        self._base_blocks = engine_state.num_blocks()
        self._base_vars = len(engine_state.vars)
        self._base_modules = len(engine_state.modules)
        self._base_contents = len(engine_state.file_contents)
        self.files: List[SourceFile] = []
        self.file_contents: str = ""
        self.decls: List[Any] = []
        self.blocks: List[Block] = []
        self.vars: List[VarInfo] = []
        self.modules: List[Module] = []
        # Frame 0 holds the top-level additions that survive into the delta.
        self.scope: List[_ScopeFrame] = [_ScopeFrame()]
        self.parse_errors: List[ParseError] = []

    # --- files -------------------------------------------------------

    def next_span_start(self) -> int:
        return self._base_contents + len(self.file_contents)

    def add_file(self, name: str, contents: str) -> int:
        start = self.next_span_start()
        self.file_contents += contents
        self.files.append(SourceFile(name, start, start + len(contents)))
        return start

    def get_span_contents(self, span: Span) -> str:
        if span.start >= self._base_contents:
            return self.file_contents[span.start - self._base_contents:span.end - self._base_contents]
        return self.permanent_state.get_span_contents(span)

    def file_for_span(self, span: Span) -> Optional[SourceFile]:
        for f in self.files:
            if f.start <= span.start <= f.end:
                return f
        return self.permanent_state.file_for_span(span)

    def source_text(self, f: SourceFile) -> str:
        return self.get_span_contents(Span(f.start, f.end))

    # --- scopes ------------------------------------------------------

    def enter_scope(self) -> None:
        self.scope.append(_ScopeFrame())

    def exit_scope(self) -> None:
        if len(self.scope) > 1:
            self.scope.pop()

    def current_frame_decls(self) -> Dict[str, int]:
        return dict(self.scope[-1].decls)

    # --- decls -------------------------------------------------------

    def num_decls(self) -> int:
        return self._base_decls + len(self.decls)

    def add_decl(self, decl) -> int:
        decl_id = self.num_decls()
        self.decls.append(decl)
        name = getattr(decl, "name", None)
        if name:
            self.scope[-1].decls[name] = decl_id
        return decl_id

    def find_decl(self, name: str) -> Optional[int]:
        for frame in reversed(self.scope):
            if name in frame.decls:
                return frame.decls[name]
        return self.permanent_state.find_decl(name)

    def get_decl(self, decl_id: int):
        if decl_id >= self._base_decls:
            return self.decls[decl_id - self._base_decls]
        return self.permanent_state.get_decl(decl_id)

    def use_decls(self, decls: Dict[str, int]) -> None:
        self.scope[-1].decls.update(decls)

    # --- blocks ------------------------------------------------------

    def num_blocks(self) -> int:
        return self._base_blocks + len(self.blocks)

    def add_block(self, block: Block) -> int:
        self.blocks.append(block)
        return self.num_blocks() - 1

    def get_block(self, block_id: int) -> Block:
        if block_id >= self._base_blocks:
            return self.blocks[block_id - self._base_blocks]
        return self.permanent_state.get_block(block_id)

    # --- variables ---------------------------------------------------

    def add_variable(self, name: str, mutable: bool = False, type_name: str = "any",
                     span: Optional[Span] = None) -> int:
        var_id = self._base_vars + len(self.vars)
        self.vars.append(VarInfo(name, mutable, type_name, span or Span.unknown()))
        self.scope[-1].vars[name] = var_id
        return var_id

    def find_variable(self, name: str) -> Optional[int]:
        for frame in reversed(self.scope):
            if name in frame.vars:
                return frame.vars[name]
        return self.permanent_state.find_variable(name)

    def get_variable(self, var_id: int) -> VarInfo:
        if var_id >= self._base_vars:
            return self.vars[var_id - self._base_vars]
        return self.permanent_state.get_var(var_id)

    # --- modules -----------------------------------------------------

    def add_module(self, module: Module) -> int:
        module_id = self._base_modules + len(self.modules)
        self.modules.append(module)
        self.scope[-1].modules[module.name] = module_id
        return module_id

    def find_module(self, name: str) -> Optional[int]:
        for frame in reversed(self.scope):
            if name in frame.modules:
                return frame.modules[name]
        return self.permanent_state.find_module(name)

    def get_module(self, module_id: int) -> Module:
        if module_id >= self._base_modules:
            return self.modules[module_id - self._base_modules]
        return self.permanent_state.modules[module_id]

    # --- errors ------------------------------------------------------

    def error(self, err: ParseError) -> None:
        self.parse_errors.append(err)

    # --- render ------------------------------------------------------

    def render(self) -> StateDelta:
        top = self.scope[0]
        return StateDelta(
            base_decls=self._base_decls,
            base_blocks=self._base_blocks,
            base_vars=self._base_vars,
            base_modules=self._base_modules,
            base_contents=self._base_contents,
            files=tuple(self.files),
            file_contents=self.file_contents,
            decls=tuple(self.decls),
            blocks=tuple(self.blocks),
            vars=tuple(self.vars),
            modules=tuple(self.modules),
            visible_decls=tuple(top.decls.items()),
            visible_vars=tuple(top.vars.items()),
            visible_modules=tuple(top.modules.items()),
        )
