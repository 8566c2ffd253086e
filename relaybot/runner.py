import asyncio
import collections
import contextlib
import dataclasses
import logging
import re
from collections.abc import Callable, Sequence

from relaybot.models import ProgressCallback

logger = logging.getLogger(__name__)

PROGRESS_RE = re.compile(r"\[\s*(\d+(?:\.\d+)?)%\]")
STREAM_LINE_LIMIT = 32 * 1024 * 1024


class _BufferOverflow(Exception):
    pass


@dataclasses.dataclass
class ToolResult:
    returncode: int | None
    stdout: str
    stderr_lines: list[str]
    timed_out: bool = False
    overflowed: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.overflowed

    @property
    def last_error_line(self) -> str:
        for line in reversed(self.stderr_lines):
            if line.strip():
                return line.strip()
        return ""

    @property
    def diagnostics(self) -> str:
        return "\n".join(line for line in self.stderr_lines if line.strip())


class ProgressTracker:
    """Turns noisy tool output into a monotonic 0-100 progress stream."""

    def __init__(self, on_progress: ProgressCallback | None = None, ceiling: float = 99.0):
        self.on_progress = on_progress
        self.ceiling = ceiling
        self.last = 0.0

    def feed(self, line: str) -> None:
        match = PROGRESS_RE.search(line)
        if not match:
            return
        self.report(float(match.group(1)))

    def report(self, value: float) -> None:
        value = min(value, self.ceiling)
        if value <= self.last:
            return
        self.last = value
        self._emit(value)

    def finish(self) -> None:
        self.last = 100.0
        self._emit(100.0)

    def _emit(self, value: float) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(value)
        except Exception as err:
            logger.debug("Progress callback failed: %s", err)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
    await process.wait()


async def run_tool(
    argv: Sequence[str],
    timeout: float,
    max_buffer: int | None = None,
    on_stdout_line: Callable[[str], None] | None = None,
    keep_stdout: bool = True,
    stderr_tail: int = 50,
) -> ToolResult:
    """Run ``argv`` as a child process, streaming its output line by line.

    The process is killed when it outlives ``timeout``, when its combined
    stdout/stderr exceeds ``max_buffer`` bytes, or when the caller is
    cancelled. Spawn failures (missing binary) propagate as ``OSError``.
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        stdin=asyncio.subprocess.DEVNULL,
        limit=STREAM_LINE_LIMIT,
    )
    stdout_lines: list[str] = []
    stderr_lines: collections.deque[str] = collections.deque(maxlen=stderr_tail)
    consumed = 0

    async def pump(stream: asyncio.StreamReader, handle: Callable[[str], None]) -> None:
        nonlocal consumed
        while True:
            raw = await stream.readline()
            if not raw:
                return
            consumed += len(raw)
            if max_buffer is not None and consumed > max_buffer:
                raise _BufferOverflow()
            handle(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    def handle_stdout(line: str) -> None:
        if keep_stdout:
            stdout_lines.append(line)
        if on_stdout_line is not None:
            on_stdout_line(line)

    async def communicate() -> int:
        readers = asyncio.gather(
            pump(process.stdout, handle_stdout),
            pump(process.stderr, stderr_lines.append),
        )
        try:
            await readers
        except BaseException:
            readers.cancel()
            raise
        return await process.wait()

    timed_out = False
    overflowed = False
    try:
        returncode = await asyncio.wait_for(communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        await _terminate(process)
        returncode = process.returncode
    except _BufferOverflow:
        overflowed = True
        await _terminate(process)
        returncode = process.returncode
    except asyncio.CancelledError:
        await _terminate(process)
        raise

    return ToolResult(
        returncode=returncode,
        stdout="\n".join(stdout_lines),
        stderr_lines=list(stderr_lines),
        timed_out=timed_out,
        overflowed=overflowed,
    )
