"""
PipelineData: the value or byte stream flowing between pipeline stages.
"""
from __future__ import annotations

import asyncio
import sys
import threading
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from tide.tide_datatypes import RenderError, Span

CHUNK_SIZE = 8192


class BufferedReader:
    """Adapts a blocking binary file to the async `read(n)` protocol.

    Reads happen in the default executor so the event loop stays free.
    """
    def __init__(self, fileobj):
        self._file = fileobj

    async def read(self, n: int = CHUNK_SIZE) -> bytes:
        loop = asyncio.get_running_loop()
        reader = getattr(self._file, "read1", None) or self._file.read
        return await loop.run_in_executor(None, reader, n)


class RawStream:
    """A lazily read byte stream with an optional shared cancellation flag.

    `reader` is anything with an awaitable `read(n) -> bytes` (an
    asyncio.StreamReader, a BufferedReader, ...). Reading stops at EOF or
    as soon as `ctrlc` is set.
    """
    def __init__(self, reader, ctrlc: Optional[threading.Event] = None,
                 span: Optional[Span] = None, known_size: Optional[int] = None):
        self.reader = reader
        self.ctrlc = ctrlc
        self.span = span or Span.unknown()
        self.known_size = known_size
        self._done = False

    def cancelled(self) -> bool:
        return self.ctrlc is not None and self.ctrlc.is_set()

    async def read_chunk(self) -> bytes:
        if self._done or self.cancelled():
            self._done = True
            return b""
        chunk = await self.reader.read(CHUNK_SIZE)
        if not chunk:
            self._done = True
            return b""
        return bytes(chunk)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter()

    async def _iter(self):
        while True:
            chunk = await self.read_chunk()
            if not chunk:
                return
            yield chunk

    async def into_bytes(self) -> bytes:
        parts = [chunk async for chunk in self]
        return b"".join(parts)

    async def into_string(self) -> str:
        return (await self.into_bytes()).decode("utf-8", errors="replace")


class ExitCode:
    """A deferred exit code; resolving waits for the producer to finish."""
    def __init__(self, waiter: Callable[[], Awaitable[int]]):
        self._waiter = waiter
        self._value: Optional[int] = None

    @classmethod
    def resolved(cls, code: int) -> 'ExitCode':
        async def _now():
            return code
        ec = cls(_now)
        ec._value = code
        return ec

    async def resolve(self) -> int:
        if self._value is None:
            code = await self._waiter()
            self._value = int(code if code is not None else 0)
        return self._value


class PipelineData:
    """Base for the three shapes of pipeline data."""

    @staticmethod
    def value(val: Any, metadata: Optional[dict] = None) -> 'ValueData':
        return ValueData(val, metadata)

    @staticmethod
    def empty() -> 'EmptyData':
        return EmptyData()

    @staticmethod
    def external_stream(stdout: Optional[RawStream] = None, stderr: Optional[RawStream] = None,
                        exit_code: Optional[ExitCode] = None, span: Optional[Span] = None,
                        metadata: Optional[dict] = None, trim_end_newline: bool = False) -> 'ExternalStream':
        return ExternalStream(stdout, stderr, exit_code, span or Span.unknown(), metadata, trim_end_newline)

    def is_nothing(self) -> bool:
        return False

    async def into_value(self) -> Any:
        raise NotImplementedError

    async def print(self, engine_state, stack, suppress_nothing: bool = True, to_stderr: bool = False) -> int:
        """Render to stdout (or stderr) and return the exit code."""
        value = await self.into_value()
        if value is None and suppress_nothing:
            return 0
        try:
            from tide.tide_printer import Printer
            text = Printer(engine_state.config).pformat(value)
        except RenderError:
            raise
        except Exception as e:
            raise RenderError(f"Could not render {type(value).__name__} value: {e}") from e
        try:
            sink = sys.stderr if to_stderr else sys.stdout
            sink.write(text + "\n")
            sink.flush()
        except (OSError, ValueError) as e:
            raise RenderError(f"Could not write output: {e}") from e
        return 0


class ValueData(PipelineData):
    def __init__(self, val: Any, metadata: Optional[dict] = None):
        self.val = val
        self.metadata = metadata

    def is_nothing(self) -> bool:
        return self.val is None

    async def into_value(self) -> Any:
        return self.val

    def __repr__(self) -> str:
        return f"ValueData({self.val!r})"


class EmptyData(PipelineData):
    def is_nothing(self) -> bool:
        return True

    async def into_value(self) -> Any:
        return None

    def __repr__(self) -> str:
        return "EmptyData()"


class ExternalStream(PipelineData):
    def __init__(self, stdout: Optional[RawStream], stderr: Optional[RawStream],
                 exit_code: Optional[ExitCode], span: Span,
                 metadata: Optional[dict] = None, trim_end_newline: bool = False):
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.span = span
        self.metadata = metadata
        self.trim_end_newline = trim_end_newline

    async def into_value(self) -> Any:
        """Collect stdout while stderr is passed through to our own stderr."""
        stderr_task = None
        if self.stderr is not None:
            stderr_task = asyncio.ensure_future(_drain(self.stderr, True))
        data = await self.stdout.into_bytes() if self.stdout is not None else b""
        if stderr_task is not None:
            await stderr_task
        if self.exit_code is not None:
            await self.exit_code.resolve()
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return data
        if self.trim_end_newline:
            text = text.rstrip("\r\n")
        return text

    async def print(self, engine_state, stack, suppress_nothing: bool = True, to_stderr: bool = False) -> int:
        return await print_if_stream(self.stdout, self.stderr, to_stderr, self.exit_code)

    def __repr__(self) -> str:
        return f"ExternalStream(stdout={self.stdout is not None}, stderr={self.stderr is not None})"


def _write_bytes(sink, data: bytes) -> None:
    buf = getattr(sink, "buffer", None)
    if buf is not None:
        sink.flush()
        buf.write(data)
        buf.flush()
    else:
        sink.write(data.decode("utf-8", errors="replace"))
        sink.flush()


async def _drain(stream: RawStream, to_stderr: bool) -> None:
    async for chunk in stream:
        # Resolve the sink per chunk so redirection done mid-run is honoured.
        _write_bytes(sys.stderr if to_stderr else sys.stdout, chunk)


async def print_if_stream(stream: Optional[RawStream], stderr_stream: Optional[RawStream],
                          to_stderr: bool, exit_code: Optional[ExitCode]) -> int:
    """Drain both streams concurrently, then resolve the exit code."""
    tasks = []
    if stderr_stream is not None:
        tasks.append(asyncio.ensure_future(_drain(stderr_stream, True)))
    if stream is not None:
        tasks.append(asyncio.ensure_future(_drain(stream, to_stderr)))
    try:
        await asyncio.gather(*tasks)
    except (OSError, ValueError) as e:
        for t in tasks:
            t.cancel()
        raise RenderError(f"Could not write external output: {e}") from e
    if exit_code is None:
        return 0
    return await exit_code.resolve()


def create_stdin_input() -> PipelineData:
    """Standard input as a lazy external stream with a fresh cancellation flag."""
    stdin = getattr(sys.stdin, "buffer", sys.stdin)
    ctrlc = threading.Event()
    return PipelineData.external_stream(
        stdout=RawStream(BufferedReader(stdin), ctrlc, Span.unknown(), None),
        stderr=None,
        exit_code=None,
        span=Span.unknown(),
        metadata=None,
        trim_end_newline=False,
    )


def enable_vt_processing() -> None:
    """Re-enable ANSI escape handling on Windows consoles; no-op elsewhere."""
    if sys.platform != "win32":
        return
    try:
        import ctypes
        kernel32 = ctypes.windll.kernel32
        # ENABLE_PROCESSED_OUTPUT | ENABLE_VIRTUAL_TERMINAL_PROCESSING
        mode = ctypes.c_uint32()
        handle = kernel32.GetStdHandle(-11)
        if kernel32.GetConsoleMode(handle, ctypes.byref(mode)):
            kernel32.SetConsoleMode(handle, mode.value | 0x0001 | 0x0004)
    except (AttributeError, OSError):
        pass
