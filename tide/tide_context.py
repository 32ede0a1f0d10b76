"""
Bootstraps an EngineState holding the built-in command catalog.
"""
from __future__ import annotations

import os
import sys
from typing import Iterable, List, Optional

from tide import tide_builtins as b
from tide import tide_commands as c
from tide import tide_system as s
from tide.tide_commands import Command
from tide.tide_datatypes import MergeFault
from tide.tide_state import EngineState, StateWorkingSet

DEFAULT_FEATURES = frozenset({"which-support"})

PS_PLATFORMS = ("linux", "darwin", "win32", "android")


def configured_features() -> frozenset:
    raw = os.environ.get("TIDE_FEATURES")
    if raw is None:
        return DEFAULT_FEATURES
    return frozenset(f.strip() for f in raw.split(",") if f.strip())


def _is_unix(platform: str) -> bool:
    return platform != "win32"


def default_commands(platform: str, features: Iterable[str]) -> List[Command]:
    """The registration list, in order; later entries shadow earlier names."""
    features = set(features)
    commands: List[Command] = []

    # Core
    commands += [
        c.AliasKeyword(), c.Break(), c.Const(), c.Continue(), c.Debug(), c.Def(), c.DefEnv(),
        c.Describe(), c.Do(), c.Echo(), c.ErrorMake(), c.ExportAlias(), c.ExportDef(),
        c.ExportDefEnv(), c.Extern(), c.For(), c.Help(), c.HelpCommands(), c.HelpModules(),
        s.HideEnv(), c.If(), c.Ignore(), c.OverlayList(), c.Let(), c.Loop(), c.Metadata(),
        c.Module(), c.Mut(), c.Return(), c.Try(), c.Use(), c.Version(), c.While(),
    ]

    # Charts
    commands += [b.Histogram()]

    # Filters
    commands += [
        b.All(), b.Any_(), b.Append(), b.Collect(), b.Columns(), b.Compact(), b.Default(),
        b.Drop(), b.DropColumn(), b.DropNth(), b.Each(), b.IsEmpty(), b.Enumerate(), b.Every(),
        b.Filter(), b.Find(), b.First(), b.Flatten(), b.Get(), b.GroupBy(), b.Insert(),
        b.Items(), b.SplitBy(), b.Take(), b.Merge(), b.TakeWhile(), b.TakeUntil(), b.Last(),
        b.Length(), b.Lines(), b.ParEach(), b.Prepend(), b.Range(), b.Reduce(), b.Reject(),
        b.Rename(), b.Reverse(), b.Select(), b.Shuffle(), b.Skip(), b.SkipUntil(),
        b.SkipWhile(), b.Sort(), b.SortBy(), b.Transpose(), b.Uniq(), b.Upsert(), b.Update(),
        b.Values(), b.Where(), b.Wrap(), b.Zip(),
    ]

    # Path
    commands += [
        s.PathBasename(), s.PathDirname(), s.PathExists(), s.PathExpand(), s.PathJoin(),
        s.PathParse(), s.PathRelativeTo(), s.PathSplit(), s.PathType(),
    ]

    # System
    commands += [s.Complete(), s.RunExternal(), s.Sys(), s.Benchmark()]
    if _is_unix(platform):
        commands.append(s.Exec())
    if platform == "win32":
        commands.append(s.RegistryQuery())
    if platform.startswith(PS_PLATFORMS):
        commands.append(s.Ps())
    if "which-support" in features:
        commands.append(s.Which())

    # Strings
    commands += [
        b.Char(), b.Decode(), b.Encode(), b.Format(), b.Parse(), b.Size(), b.SplitChars(),
        b.SplitColumn(), b.SplitRow(), b.SplitWords(), b.StrCapitalize(), b.StrContains(),
        b.StrDowncase(), b.StrEndsWith(), b.StrJoin(), b.StrReplace(), b.StrIndexOf(),
        b.StrLength(), b.StrReverse(), b.StrStartsWith(), b.StrSubstring(), b.StrTrim(),
        b.StrUpcase(), b.BuildString(),
    ]

    # Bytes
    commands += [
        b.BytesLength(), b.BytesStartsWith(), b.BytesEndsWith(), b.BytesReverse(), b.BytesAdd(),
        b.BytesIndexOf(), b.BytesBuild(),
    ]

    # FileSystem
    commands += [
        s.Cd(), s.Cp(), s.Ls(), s.Mkdir(), s.Mv(), s.Open(), s.Rm(), s.Save(), s.Touch(), s.Glob(),
    ]

    # Platform
    commands += [
        s.Ansi(), b.AnsiStrip(), s.Clear(), s.Input(), s.Kill(), s.Sleep(), s.TermSize(),
    ]

    # Date
    commands += [
        b.DateFormat(), b.DateHumanize(), b.DateListTimezone(), b.DateNow(), b.DateToRecord(),
        b.DateToTimezone(),
    ]

    # Shells
    commands += [s.Exit()]

    # Formats
    commands += [
        b.FromFormat("csv"), b.FromFormat("json"), b.FromFormat("toml"), b.FromFormat("tsv"),
        b.FromFormat("xml"), b.FromFormat("yaml"), b.FromFormat("yaml", alias="yml"),
        b.ToFormat("csv"), b.ToFormat("json"), b.ToMd(), b.ToText(), b.ToFormat("toml"),
        b.ToFormat("tsv"), s.Touch(), c.Use(), b.Upsert(), b.Where(), b.ToFormat("xml"),
        b.ToFormat("yaml"),
    ]

    # Viewers
    commands += [b.Grid(), b.Table()]

    # Conversions
    commands += [
        b.IntoBool(), b.IntoBinary(), b.IntoDatetime(), b.IntoDuration(), b.IntoFloat(),
        b.IntoInt(), b.IntoRecord(), b.IntoString(),
    ]

    # Env
    commands += [s.Env(), s.LetEnv(), s.LoadEnv(), c.Source(), s.WithEnv()]

    # Math
    commands += [
        b.MathAbs(), b.MathAvg(), b.MathCeil(), b.MathEval(), b.MathFloor(), b.MathMax(),
        b.MathMedian(), b.MathMin(), b.MathMode(), b.MathProduct(), b.MathRound(), b.MathSqrt(),
        b.MathStddev(), b.MathSum(), b.MathVariance(), b.MathLog(),
    ]

    # Network
    commands += [
        s.HttpGet(), s.HttpPost(), s.UrlBuildQuery(), s.UrlEncode(), s.UrlDecode(), s.UrlParse(),
    ]

    # Random
    commands += [
        b.RandomBool(), b.RandomChars(), b.RandomFloat(), b.RandomDice(), b.RandomInteger(),
        b.RandomUuid(),
    ]

    # Generators
    commands += [b.Seq(), b.SeqDate(), b.SeqChar()]

    # Hash
    commands += [b.HashBase64(), b.HashMd5(), b.HashSha256()]

    # Experimental
    commands += [s.ViewSource(), s.IsAdmin()]

    # Deprecated
    commands += [
        b.Deprecated("str collect", "str join"),
        b.Deprecated("pivot", "transpose"),
        b.Deprecated("unalias", "hide"),
    ]

    if "plugin" in features:
        commands.append(s.Register())

    return commands


def create_default_context(features: Optional[Iterable[str]] = None,
                           platform: Optional[str] = None) -> EngineState:
    """A fresh EngineState with the built-in catalog merged in.

    A merge failure is reported on stderr and is not fatal: the returned
    state keeps every command registered before the failing one.
    """
    features = frozenset(features) if features is not None else configured_features()
    platform = platform or sys.platform
    engine_state = EngineState()
    engine_state.features = features

    working_set = StateWorkingSet(engine_state)
    for command in default_commands(platform, features):
        working_set.add_decl(command)
    delta = working_set.render()

    try:
        engine_state.merge_delta(delta)
    except MergeFault as e:
        print(f"Error creating default context: {e.msg}", file=sys.stderr)

    return engine_state
