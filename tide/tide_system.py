"""
Built-in commands that touch the outside world: the file system, paths,
processes, the environment, the network and plugins.
"""
from __future__ import annotations

import asyncio
import builtins
import datetime
import glob as globlib
import importlib.util
import inspect
import os
import shutil
import sys
import time
import urllib.parse
from pathlib import Path
from typing import Any, List

from tide.tide_builtins import as_list, parse_duration
from tide.tide_commands import Command, Signature, describe_value, run_block_arg
from tide.tide_datatypes import EvalError, ExternalCommandError, Literal
from tide.tide_http import HttpError, http_request
from tide.tide_interpreter import external_env, run_external
from tide.tide_serialize import deserialize, serialize
from tide.tide_stream import ExternalStream, PipelineData

# ===================================================================
# 1. Helpers
# ===================================================================

def current_dir(stack) -> str:
    pwd = stack.get_env_var("PWD")
    return pwd if pwd else os.getcwd()


def expand_path(stack, raw: Any) -> Path:
    """Expand `~` and resolve relative paths against $PWD."""
    path = Path(os.path.expanduser(str(raw)))
    if not path.is_absolute():
        path = Path(current_dir(stack)) / path
    return path


def _file_record(path: Path, long: bool = False, full: bool = False) -> dict:
    try:
        st = path.lstat()
    except OSError:
        return {"name": str(path), "type": "unknown", "size": 0, "modified": None}
    if path.is_symlink():
        kind = "symlink"
    elif path.is_dir():
        kind = "dir"
    else:
        kind = "file"
    rec = {
        "name": str(path) if full else path.name,
        "type": kind,
        "size": st.st_size,
        "modified": datetime.datetime.fromtimestamp(st.st_mtime).astimezone(),
    }
    if long:
        rec["mode"] = oct(st.st_mode & 0o777)
        rec["accessed"] = datetime.datetime.fromtimestamp(st.st_atime).astimezone()
    return rec


# ===================================================================
# 2. File system
# ===================================================================

class _FsCommand(Command):
    category = "filesystem"


class Cd(_FsCommand):
    name = "cd"
    usage = "Change the working directory (`cd -` goes back)."

    def signature(self):
        return Signature.build(self.name).optional("path").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        raw = await call.opt(engine_state, stack, 0)
        if raw is None or raw == "~":
            target = Path(os.path.expanduser("~"))
        elif raw == "-":
            old = stack.get_env_var("OLDPWD")
            if old is None:
                raise EvalError("No previous directory", span=call.positional[0].span)
            target = Path(old)
        else:
            target = expand_path(stack, raw)
        if not target.is_dir():
            span = call.positional[0].span if call.positional else call.head
            raise EvalError(f"Directory not found: {raw}", span=span, label="not a directory")
        stack.add_env_var("OLDPWD", current_dir(stack))
        stack.add_env_var("PWD", str(target.resolve()))
        return PipelineData.empty()


class Ls(_FsCommand):
    name = "ls"
    usage = "List directory contents as a table."

    def signature(self):
        return (Signature.build(self.name).optional("pattern")
                .switch("all", "include hidden files", "a")
                .switch("long", "more columns", "l")
                .switch("full-paths", "show full paths", "f")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        pattern = await call.opt(engine_state, stack, 0)
        show_all = call.has_flag("all")
        long = call.has_flag("long")
        full = call.has_flag("full-paths")
        if pattern is None:
            base = Path(current_dir(stack))
            entries = sorted(base.iterdir(), key=lambda p: p.name)
        else:
            path = expand_path(stack, pattern)
            if path.is_dir():
                entries = sorted(path.iterdir(), key=lambda p: p.name)
            else:
                entries = [Path(p) for p in sorted(globlib.glob(str(path)))]
                if not entries:
                    raise EvalError(f"No matches found for {pattern}", span=call.positional[0].span)
        rows = [_file_record(p, long, full) for p in entries if show_all or not p.name.startswith(".")]
        return PipelineData.value(rows)


class Glob(_FsCommand):
    name = "glob"
    usage = "List paths matching a glob pattern (`**` recurses)."

    def signature(self):
        return Signature.build(self.name).required("glob").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        pattern = str(expand_path(stack, await call.req(engine_state, stack, 0)))
        return PipelineData.value(sorted(globlib.glob(pattern, recursive=True)))


class Mkdir(_FsCommand):
    name = "mkdir"
    usage = "Create directories, including missing parents."

    def signature(self):
        return Signature.build(self.name).rest("rest").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        for raw in await call.rest(engine_state, stack, 0):
            try:
                expand_path(stack, raw).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise EvalError(f"Could not create directory {raw}: {e.strerror}", span=call.span) from None
        return PipelineData.empty()


class Touch(_FsCommand):
    name = "touch"
    usage = "Create files or update their modification time."

    def signature(self):
        return Signature.build(self.name).rest("rest").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        for raw in await call.rest(engine_state, stack, 0):
            try:
                expand_path(stack, raw).touch()
            except OSError as e:
                raise EvalError(f"Could not touch {raw}: {e.strerror}", span=call.span) from None
        return PipelineData.empty()


class Rm(_FsCommand):
    name = "rm"
    usage = "Remove files (and directories with --recursive)."

    def signature(self):
        return (Signature.build(self.name).rest("rest")
                .switch("recursive", "remove directories", "r")
                .switch("force", "ignore missing files", "f")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        recursive = call.has_flag("recursive")
        force = call.has_flag("force")
        for raw in await call.rest(engine_state, stack, 0):
            matches = globlib.glob(str(expand_path(stack, raw))) or [str(expand_path(stack, raw))]
            for target in map(Path, matches):
                if not target.exists() and not target.is_symlink():
                    if force:
                        continue
                    raise EvalError(f"File not found: {raw}", span=call.span)
                if target.is_dir() and not target.is_symlink():
                    if not recursive:
                        raise EvalError(f"Cannot remove directory {raw} without --recursive", span=call.span)
                    shutil.rmtree(target)
                else:
                    target.unlink()
        return PipelineData.empty()


class Mv(_FsCommand):
    name = "mv"
    usage = "Move or rename a file or directory."

    def signature(self):
        return Signature.build(self.name).required("source").required("destination").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        src = expand_path(stack, await call.req(engine_state, stack, 0))
        dst = expand_path(stack, await call.req(engine_state, stack, 1))
        if not src.exists():
            raise EvalError(f"File not found: {src}", span=call.positional[0].span)
        shutil.move(str(src), str(dst))
        return PipelineData.empty()


class Cp(_FsCommand):
    name = "cp"
    usage = "Copy a file (or a directory with --recursive)."

    def signature(self):
        return (Signature.build(self.name).required("source").required("destination")
                .switch("recursive", "copy directories", "r").set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        src = expand_path(stack, await call.req(engine_state, stack, 0))
        dst = expand_path(stack, await call.req(engine_state, stack, 1))
        if not src.exists():
            raise EvalError(f"File not found: {src}", span=call.positional[0].span)
        if src.is_dir():
            if not call.has_flag("recursive"):
                raise EvalError(f"{src} is a directory; use --recursive", span=call.positional[0].span)
            shutil.copytree(src, dst / src.name if dst.is_dir() else dst)
        else:
            shutil.copy2(src, dst)
        return PipelineData.empty()


_EXTENSION_FORMATS = {
    ".json": "json", ".yaml": "yaml", ".yml": "yaml", ".toml": "toml",
    ".xml": "xml", ".csv": "csv", ".tsv": "tsv",
}


class Open(_FsCommand):
    name = "open"
    usage = "Read a file; known formats (json, yaml, toml, csv ...) are parsed."

    def signature(self):
        return (Signature.build(self.name).required("filename")
                .switch("raw", "do not parse the contents", "r").set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        raw = await call.req(engine_state, stack, 0)
        path = expand_path(stack, raw)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise EvalError(f"Could not open {raw}: {e.strerror}", span=call.positional[0].span) from None
        fmt = _EXTENSION_FORMATS.get(path.suffix.lower())
        if fmt is not None and not call.has_flag("raw"):
            try:
                return PipelineData.value(deserialize(data, fmt=fmt, strict=True))
            except ValueError as e:
                raise EvalError(str(e), span=call.positional[0].span) from None
        try:
            return PipelineData.value(data.decode("utf-8"))
        except UnicodeDecodeError:
            return PipelineData.value(data)


class Save(_FsCommand):
    name = "save"
    usage = "Write the input to a file, converting by extension."

    def signature(self):
        return (Signature.build(self.name).required("filename")
                .switch("force", "overwrite an existing file", "f")
                .switch("raw", "write the input as is", "r")
                .switch("append", "append instead of overwriting", "a")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        raw = await call.req(engine_state, stack, 0)
        path = expand_path(stack, raw)
        append = call.has_flag("append")
        if path.exists() and not (call.has_flag("force") or append):
            raise EvalError(f"Destination file already exists: {raw}", span=call.positional[0].span,
                            help="use --force to overwrite")
        value = await input.into_value()
        fmt = _EXTENSION_FORMATS.get(path.suffix.lower())
        if isinstance(value, (bytes, bytearray)):
            data = bytes(value)
        elif fmt is not None and not call.has_flag("raw") and not isinstance(value, str):
            data = serialize(value, fmt=fmt).encode("utf-8")
        elif isinstance(value, list) and all(isinstance(v, str) for v in value):
            data = "\n".join(value).encode("utf-8")
        else:
            data = ("" if value is None else str(value)).encode("utf-8")
        try:
            with open(path, "ab" if append else "wb") as f:
                f.write(data)
        except OSError as e:
            raise EvalError(f"Could not save {raw}: {e.strerror}", span=call.positional[0].span) from None
        return PipelineData.empty()


# ===================================================================
# 3. Paths
# ===================================================================

class _PathCommand(Command):
    """Applies `apply` to a path string or to each path of a list."""
    category = "path"

    def apply(self, stack, call, path: str, *args) -> Any:
        raise NotImplementedError

    async def arguments(self, engine_state, stack, call) -> tuple:
        return ()

    async def run(self, engine_state, stack, call, input):
        args = await self.arguments(engine_state, stack, call)
        value = await input.into_value()
        if isinstance(value, list):
            return PipelineData.value([self.apply(stack, call, str(v), *args) for v in value])
        if value is None:
            raise EvalError(f"`{self.name}` needs a path as input", span=call.head)
        return PipelineData.value(self.apply(stack, call, str(value), *args))


class PathBasename(_PathCommand):
    name = "path basename"
    usage = "The final component of a path."

    def apply(self, stack, call, path):
        return Path(path).name


class PathDirname(_PathCommand):
    name = "path dirname"
    usage = "The parent directory of a path."

    def apply(self, stack, call, path):
        return str(Path(path).parent)


class PathExists(_PathCommand):
    name = "path exists"
    usage = "Check whether a path exists."

    def apply(self, stack, call, path):
        return expand_path(stack, path).exists()


class PathExpand(_PathCommand):
    name = "path expand"
    usage = "Expand `~` and make a path absolute."

    def apply(self, stack, call, path):
        return str(expand_path(stack, path).resolve())


class PathType(_PathCommand):
    name = "path type"
    usage = "The type of a path: file, dir or symlink."

    def apply(self, stack, call, path):
        p = expand_path(stack, path)
        if not p.exists() and not p.is_symlink():
            return None
        return _file_record(p)["type"]


class PathSplit(_PathCommand):
    name = "path split"
    usage = "Split a path into its components."

    def apply(self, stack, call, path):
        return list(Path(path).parts)


class PathParse(_PathCommand):
    name = "path parse"
    usage = "Split a path into parent, stem and extension."

    def apply(self, stack, call, path):
        p = Path(path)
        return {"parent": str(p.parent), "stem": p.stem, "extension": p.suffix.lstrip(".")}


class PathJoin(_PathCommand):
    name = "path join"
    usage = "Join path components."

    def signature(self):
        return Signature.build(self.name).rest("append").set_category(self.category)

    async def arguments(self, engine_state, stack, call):
        return tuple(str(a) for a in await call.rest(engine_state, stack, 0))

    def apply(self, stack, call, path, *parts):
        return str(Path(path).joinpath(*parts))

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        parts = await self.arguments(engine_state, stack, call)
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            # A list of components joins into one path.
            return PipelineData.value(str(Path(*value, *parts)) if value else "")
        return await super().run(engine_state, stack, call, PipelineData.value(value))


class PathRelativeTo(_PathCommand):
    name = "path relative-to"
    usage = "Express a path relative to another."

    def signature(self):
        return Signature.build(self.name).required("path").set_category(self.category)

    async def arguments(self, engine_state, stack, call):
        return (str(await call.req(engine_state, stack, 0)),)

    def apply(self, stack, call, path, other):
        try:
            return str(Path(path).relative_to(other))
        except ValueError:
            raise EvalError(f"{path} is not inside {other}", span=call.span) from None


# ===================================================================
# 4. System
# ===================================================================

class Complete(Command):
    name = "complete"
    usage = "Collect an external command's stdout, stderr and exit code into a record."
    category = "system"

    async def run(self, engine_state, stack, call, input):
        if not isinstance(input, ExternalStream):
            raise EvalError("complete only works on the output of an external command", span=call.head)
        tasks = [
            asyncio.ensure_future(input.stdout.into_string()) if input.stdout is not None else None,
            asyncio.ensure_future(input.stderr.into_string()) if input.stderr is not None else None,
        ]
        stdout = await tasks[0] if tasks[0] is not None else ""
        stderr = await tasks[1] if tasks[1] is not None else ""
        code = await input.exit_code.resolve() if input.exit_code is not None else 0
        return PipelineData.value({"stdout": stdout, "stderr": stderr, "exit_code": code})


class RunExternal(Command):
    name = "run-external"
    usage = "Run an external program by name, bypassing built-in commands."
    category = "system"

    def signature(self):
        return (Signature.build(self.name).required("command").rest("args", "external")
                .switch("redirect-stdout", "capture stdout")
                .switch("redirect-stderr", "capture stderr")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        name = str(await call.req(engine_state, stack, 0))
        args = await call.rest(engine_state, stack, 1)
        return await run_external(engine_state, stack, name, args, input, call.span)


class Exec(Command):
    name = "exec"
    usage = "Replace the current process with an external program."
    category = "system"

    def signature(self):
        return Signature.build(self.name).required("command").rest("args", "external").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        name = str(await call.req(engine_state, stack, 0))
        args = [str(a) for a in as_list(await call.rest(engine_state, stack, 1))]
        path = shutil.which(name)
        if path is None:
            raise ExternalCommandError(f"Command `{name}` not found", span=call.positional[0].span)
        sys.stdout.flush()
        sys.stderr.flush()
        os.chdir(current_dir(stack))
        os.execvpe(path, [name, *args], external_env(engine_state, stack))


class Ps(Command):
    name = "ps"
    usage = "List running processes."
    category = "system"

    def signature(self):
        return Signature.build(self.name).switch("long", "include the command line", "l").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        long = call.has_flag("long")
        if sys.platform.startswith("linux") and os.path.isdir("/proc"):
            return PipelineData.value(_proc_table(long))
        if sys.platform == "win32":
            argv = ["tasklist", "/fo", "csv", "/nh"]
        else:
            argv = ["ps", "-axo", "pid=,comm="]
        proc = await asyncio.create_subprocess_exec(*argv, stdout=asyncio.subprocess.PIPE,
                                                    stderr=asyncio.subprocess.DEVNULL)
        out, _ = await proc.communicate()
        rows = []
        for line in out.decode("utf-8", errors="replace").splitlines():
            if sys.platform == "win32":
                cols = [c.strip('"') for c in line.split('","')]
                if len(cols) >= 2 and cols[1].isdigit():
                    rows.append({"pid": int(cols[1]), "name": cols[0]})
            else:
                pid, _, name = line.strip().partition(" ")
                if pid.isdigit():
                    rows.append({"pid": int(pid), "name": name.strip()})
        return PipelineData.value(rows)


def _proc_table(long: bool) -> List[dict]:
    rows = []
    for entry in os.scandir("/proc"):
        if not entry.name.isdigit():
            continue
        try:
            with open(os.path.join(entry.path, "stat")) as f:
                stat = f.read()
        except OSError:
            continue
        name = stat[stat.find("(") + 1:stat.rfind(")")]
        fields = stat[stat.rfind(")") + 2:].split()
        row = {"pid": int(entry.name), "ppid": int(fields[1]), "name": name, "status": fields[0]}
        if long:
            try:
                with open(os.path.join(entry.path, "cmdline"), "rb") as f:
                    row["command"] = f.read().replace(b"\0", b" ").decode("utf-8", errors="replace").strip()
            except OSError:
                row["command"] = ""
        rows.append(row)
    return sorted(rows, key=lambda r: r["pid"])


class Sys(Command):
    name = "sys"
    usage = "Information about the host system."
    category = "system"

    async def run(self, engine_state, stack, call, input):
        import platform
        usage = shutil.disk_usage(current_dir(stack))
        return PipelineData.value({
            "host": {
                "name": platform.system(),
                "kernel_version": platform.release(),
                "hostname": platform.node(),
                "arch": platform.machine(),
            },
            "cpu": {"count": os.cpu_count()},
            "disk": {"total": usage.total, "used": usage.used, "free": usage.free},
            "python": {"version": platform.python_version(), "executable": sys.executable},
        })


class Which(Command):
    name = "which"
    usage = "Find where a command is defined: built-in, custom or on the PATH."
    category = "system"

    def signature(self):
        return (Signature.build(self.name).rest("applications")
                .switch("all", "list every match", "a").set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        show_all = call.has_flag("all")
        path_var = stack.get_env_var("PATH")
        if isinstance(path_var, list):
            path_var = os.pathsep.join(str(p) for p in path_var)
        rows = []
        for app in (str(a) for a in await call.rest(engine_state, stack, 0)):
            found = []
            decl_id = engine_state.find_decl(app)
            if decl_id is not None:
                decl = engine_state.get_decl(decl_id)
                kind = "custom command" if decl.is_custom() else "built-in"
                found.append({"arg": app, "path": f"tide {kind}", "built-in": not decl.is_custom()})
            if show_all or not found:
                for directory in (path_var or os.environ.get("PATH", "")).split(os.pathsep):
                    hit = shutil.which(app, path=directory) if directory else None
                    if hit and hit not in [r["path"] for r in found]:
                        found.append({"arg": app, "path": hit, "built-in": False})
                        if not show_all:
                            break
            rows.extend(found if show_all else found[:1])
        return PipelineData.value(rows)


class RegistryQuery(Command):
    name = "registry query"
    usage = "Read a value from the Windows registry."
    category = "system"

    def signature(self):
        return (Signature.build(self.name).required("key").optional("value")
                .switch("hkcu", "HKEY_CURRENT_USER").switch("hklm", "HKEY_LOCAL_MACHINE")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        import winreg
        hive = winreg.HKEY_LOCAL_MACHINE if call.has_flag("hklm") else winreg.HKEY_CURRENT_USER
        key_path = str(await call.req(engine_state, stack, 0))
        value_name = await call.opt(engine_state, stack, 1)
        try:
            with winreg.OpenKey(hive, key_path) as key:
                if value_name is not None:
                    value, _ = winreg.QueryValueEx(key, str(value_name))
                    return PipelineData.value(value)
                rows = []
                idx = 0
                while True:
                    try:
                        name, value, _ = winreg.EnumValue(key, idx)
                    except OSError:
                        break
                    rows.append({"name": name, "value": value})
                    idx += 1
                return PipelineData.value(rows)
        except OSError as e:
            raise EvalError(f"Registry key not found: {key_path} ({e})", span=call.span) from None


class Benchmark(Command):
    name = "benchmark"
    usage = "Time how long a block takes to run."
    category = "system"

    def signature(self):
        return Signature.build(self.name).required("block", "block").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        start = time.perf_counter()
        data = await run_block_arg(engine_state, stack, call.positional[0], PipelineData.empty())
        await data.into_value()
        return PipelineData.value(datetime.timedelta(seconds=time.perf_counter() - start))


# ===================================================================
# 5. Platform
# ===================================================================

_ANSI = {
    "reset": "0", "bold": "1", "dimmed": "2", "italic": "3", "underline": "4", "reverse": "7",
    "black": "30", "red": "31", "green": "32", "yellow": "33", "blue": "34", "purple": "35",
    "magenta": "35", "cyan": "36", "white": "37",
    "light_red": "91", "light_green": "92", "light_yellow": "93", "light_blue": "94",
    "light_purple": "95", "light_cyan": "96", "light_gray": "37", "dark_gray": "90",
}


class Ansi(Command):
    name = "ansi"
    usage = "Output an ANSI escape sequence by name, e.g. `ansi green`."
    category = "platform"

    def signature(self):
        return Signature.build(self.name).required("code").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        code = str(await call.req(engine_state, stack, 0))
        if code in _ANSI:
            return PipelineData.value(f"\x1b[{_ANSI[code]}m")
        if code == "clear_screen" or code == "cls":
            return PipelineData.value("\x1b[2J")
        raise EvalError(f"Unknown ANSI code `{code}`", span=call.positional[0].span,
                        help=f"known codes: {', '.join(sorted(_ANSI))}")


class Clear(Command):
    name = "clear"
    usage = "Clear the terminal."
    category = "platform"

    async def run(self, engine_state, stack, call, input):
        sys.stdout.write("\x1b[2J\x1b[H")
        sys.stdout.flush()
        return PipelineData.empty()


class Kill(Command):
    name = "kill"
    usage = "Send a signal to processes by id."
    category = "platform"

    def signature(self):
        return (Signature.build(self.name).rest("pids")
                .switch("force", "send SIGKILL", "f")
                .named_flag("signal", "any", "signal number", "s")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        import signal
        sig = await call.get_flag(engine_state, stack, "signal")
        if sig is None:
            sig = getattr(signal, "SIGKILL", signal.SIGTERM) if call.has_flag("force") else signal.SIGTERM
        for pid in await call.rest(engine_state, stack, 0):
            try:
                os.kill(int(pid), int(sig))
            except (ProcessLookupError, PermissionError) as e:
                raise EvalError(f"Could not kill process {pid}: {e}", span=call.span) from None
        return PipelineData.empty()


class Sleep(Command):
    name = "sleep"
    usage = "Wait for a duration, e.g. `sleep 500ms`."
    category = "platform"

    def signature(self):
        return Signature.build(self.name).required("duration").rest("rest").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        total = datetime.timedelta()
        for raw in await call.rest(engine_state, stack, 0):
            try:
                total += parse_duration(raw)
            except ValueError as e:
                raise EvalError(str(e), span=call.span, help="use a unit: ns, us, ms, sec, min, hr, day, wk") \
                    from None
        await asyncio.sleep(total.total_seconds())
        return PipelineData.empty()


class TermSize(Command):
    name = "term size"
    usage = "The terminal's columns and rows."
    category = "platform"

    async def run(self, engine_state, stack, call, input):
        size = shutil.get_terminal_size()
        return PipelineData.value({"columns": size.columns, "rows": size.lines})


class Input(Command):
    name = "input"
    usage = "Read a line from the user."
    category = "platform"

    def signature(self):
        return Signature.build(self.name).optional("prompt").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        prompt = await call.opt(engine_state, stack, 0, "")
        loop = asyncio.get_running_loop()
        try:
            line = await loop.run_in_executor(None, builtins.input, str(prompt))
        except EOFError:
            return PipelineData.empty()
        return PipelineData.value(line)


# ===================================================================
# 6. Environment
# ===================================================================

class LetEnv(Command):
    name = "let-env"
    usage = "Set an environment variable in the current scope."
    category = "env"
    is_parser_keyword = True

    def signature(self):
        return (Signature.build(self.name).required("var_name", "string")
                .required("initial_value", "expression").set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        name = call.positional[0]
        assert isinstance(name, Literal)
        value = await call.req(engine_state, stack, 1)
        if name.value == "PWD" and not (isinstance(value, str) and os.path.isdir(value)):
            raise EvalError("PWD must be set to an existing directory", span=call.positional[1].span)
        stack.add_env_var(str(name.value), value)
        return PipelineData.empty()


class LoadEnv(Command):
    name = "load-env"
    usage = "Set environment variables from a record."
    category = "env"

    def signature(self):
        return Signature.build(self.name).optional("update").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        record = await call.opt(engine_state, stack, 0)
        if record is None:
            record = await input.into_value()
        if not isinstance(record, dict):
            raise EvalError(f"load-env expects a record, found {describe_value(record)}", span=call.head)
        for key, value in record.items():
            if key == "PWD":
                raise EvalError("Use `cd` to change PWD", span=call.span)
            stack.add_env_var(str(key), value)
        return PipelineData.empty()


class WithEnv(Command):
    name = "with-env"
    usage = "Run a block with extra environment variables."
    category = "env"

    def signature(self):
        return (Signature.build(self.name).required("variable").required("block", "block")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        env = await call.req(engine_state, stack, 0)
        if isinstance(env, list) and len(env) % 2 == 0 and all(isinstance(k, str) for k in env[::2]):
            env = dict(zip(env[::2], env[1::2]))
        if not isinstance(env, dict):
            raise EvalError(f"with-env expects a record, found {describe_value(env)}",
                            span=call.positional[0].span)
        child = stack.child()
        for key, value in env.items():
            child.add_env_var(str(key), value)
        data = await run_block_arg(engine_state, child, call.positional[1], input)
        return PipelineData.value(await data.into_value())


class Env(Command):
    name = "env"
    usage = "List the environment as a table."
    category = "env"

    async def run(self, engine_state, stack, call, input):
        merged = {**engine_state.env_vars, **stack.get_env_vars()}
        return PipelineData.value([
            {"name": k, "type": describe_value(v), "value": v} for k, v in sorted(merged.items())
        ])


class HideEnv(Command):
    name = "hide-env"
    usage = "Hide environment variables in the current scope."
    category = "env"

    def signature(self):
        return (Signature.build(self.name).rest("name")
                .switch("ignore-errors", "do not fail on missing names", "i").set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        for name in (str(n) for n in await call.rest(engine_state, stack, 0)):
            if not stack.remove_env_var(name) and not call.has_flag("ignore-errors"):
                raise EvalError(f"Environment variable `{name}` not found", span=call.span)
        return PipelineData.empty()


# ===================================================================
# 7. Shells
# ===================================================================

class Exit(Command):
    name = "exit"
    usage = "Exit the process with a code (default 0)."
    category = "shells"

    def signature(self):
        return Signature.build(self.name).optional("exit_code", default=0).set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        code = await call.opt(engine_state, stack, 0, 0)
        try:
            code = int(code)
        except (TypeError, ValueError):
            raise EvalError(f"Exit code must be an int, found {describe_value(code)}",
                            span=call.positional[0].span) from None
        raise SystemExit(code)


# ===================================================================
# 8. Network
# ===================================================================

class _HttpCommand(Command):
    category = "network"
    method = "GET"
    with_body = False

    def signature(self):
        sig = Signature.build(self.name).required("URL")
        if self.with_body:
            sig.required("data")
        return (sig.switch("raw", "do not parse the response", "r")
                .switch("full", "return status, headers and body", "f")
                .named_flag("headers", "any", "request headers record", "H")
                .named_flag("timeout", "any", "seconds to wait", "m")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        url = str(await call.req(engine_state, stack, 0))
        data = None
        if self.with_body:
            data = await call.req(engine_state, stack, 1)
            if not isinstance(data, (str, bytes)):
                data = serialize(data, fmt="json")
        headers = await call.get_flag(engine_state, stack, "headers")
        if isinstance(headers, list):
            headers = dict(zip(headers[::2], headers[1::2]))
        config = {
            "raw": call.has_flag("raw"),
            "full": call.has_flag("full"),
            "headers": headers or {},
        }
        timeout = await call.get_flag(engine_state, stack, "timeout")
        if timeout is not None:
            config["timeout"] = parse_duration(timeout).total_seconds()
        try:
            return PipelineData.value(await http_request(self.method, url, config=config, data=data))
        except HttpError as e:
            raise EvalError(str(e), span=call.span, label=f"status {e.status}") from None
        except Exception as e:
            raise EvalError(f"Network failure: {e}", span=call.positional[0].span) from None


class HttpGet(_HttpCommand):
    name = "http get"
    usage = "Fetch a URL; JSON, YAML, TOML, XML and CSV bodies are parsed."


class HttpPost(_HttpCommand):
    name = "http post"
    usage = "POST a body to a URL."
    method = "POST"
    with_body = True


class UrlParse(Command):
    name = "url parse"
    usage = "Split a URL into its parts."
    category = "network"

    async def run(self, engine_state, stack, call, input):
        url = str(await input.into_value())
        parts = urllib.parse.urlsplit(url)
        return PipelineData.value({
            "scheme": parts.scheme,
            "username": parts.username or "",
            "password": parts.password or "",
            "host": parts.hostname or "",
            "port": str(parts.port) if parts.port else "",
            "path": parts.path,
            "query": parts.query,
            "fragment": parts.fragment,
            "params": dict(urllib.parse.parse_qsl(parts.query)),
        })


class UrlBuildQuery(Command):
    name = "url build-query"
    usage = "Turn a record into a URL query string."
    category = "network"

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        if not isinstance(value, dict):
            raise EvalError(f"url build-query expects a record, found {describe_value(value)}", span=call.head)
        return PipelineData.value(urllib.parse.urlencode(value))


class UrlEncode(Command):
    name = "url encode"
    usage = "Percent-encode text."
    category = "network"

    def signature(self):
        return Signature.build(self.name).switch("all", "encode every reserved character", "a") \
            .set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        safe = "" if call.has_flag("all") else "/:"
        value = await input.into_value()
        if isinstance(value, list):
            return PipelineData.value([urllib.parse.quote(str(v), safe=safe) for v in value])
        return PipelineData.value(urllib.parse.quote(str(value), safe=safe))


class UrlDecode(Command):
    name = "url decode"
    usage = "Decode percent-encoded text."
    category = "network"

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        if isinstance(value, list):
            return PipelineData.value([urllib.parse.unquote(str(v)) for v in value])
        return PipelineData.value(urllib.parse.unquote(str(value)))


# ===================================================================
# 9. Experimental
# ===================================================================

class ViewSource(Command):
    name = "view-source"
    usage = "Show the source of a custom command or closure."
    category = "experimental"

    def signature(self):
        return Signature.build(self.name).required("item").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        from tide.tide_datatypes import Closure
        item = await call.req(engine_state, stack, 0)
        if isinstance(item, Closure):
            block = engine_state.get_block(item.block_id)
            return PipelineData.value(engine_state.get_span_contents(block.span))
        decl_id = engine_state.find_decl(str(item))
        if decl_id is None:
            raise EvalError(f"Cannot view source of `{item}`", span=call.positional[0].span)
        decl = engine_state.get_decl(decl_id)
        if not decl.is_custom() or decl.block_id is None:
            return PipelineData.value(f"{decl.name}: built-in command")
        return PipelineData.value(engine_state.get_span_contents(engine_state.get_block(decl.block_id).span))


class IsAdmin(Command):
    name = "is-admin"
    usage = "Check whether the process runs with administrator rights."
    category = "experimental"

    async def run(self, engine_state, stack, call, input):
        if sys.platform == "win32":
            import ctypes
            return PipelineData.value(bool(ctypes.windll.shell32.IsUserAnAdmin()))
        return PipelineData.value(os.geteuid() == 0)


# ===================================================================
# 10. Plugins
# ===================================================================

def load_plugin(path: Path) -> List[Command]:
    """Import a Python file and instantiate every Command subclass it defines."""
    spec = importlib.util.spec_from_file_location(f"tide_plugin_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"{path} is not a Python module")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    commands = []
    for _, obj in inspect.getmembers(module, inspect.isclass):
        if issubclass(obj, Command) and obj.__module__ == module.__name__ and not inspect.isabstract(obj) \
                and obj.name:
            commands.append(obj())
    return commands


class Register(Command):
    name = "register"
    usage = "Load the commands defined in a Python plugin file."
    category = "plugin"

    def signature(self):
        return Signature.build(self.name).required("plugin").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        from tide.tide_state import StateWorkingSet
        raw = await call.req(engine_state, stack, 0)
        path = expand_path(stack, raw)
        try:
            commands = load_plugin(path)
        except (ImportError, OSError, SyntaxError) as e:
            raise EvalError(f"Could not load plugin {raw}: {e}", span=call.positional[0].span) from None
        if not commands:
            raise EvalError(f"No commands found in plugin {raw}", span=call.positional[0].span)
        working_set = StateWorkingSet(engine_state)
        for command in commands:
            working_set.add_decl(command)
        engine_state.merge_delta(working_set.render())
        engine_state.plugins.append(str(path))
        return PipelineData.value([c.name for c in commands])

