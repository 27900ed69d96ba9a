"""Process manager: owns the single MCP server child process."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from ..errors import ProcessNotRunningError, ProcessStartError, StreamUnavailableError

log = logging.getLogger(__name__)

# asyncio's default 64 KiB line limit is too small for a large session list
# arriving as one JSON line.
DEFAULT_STREAM_LIMIT = 16 * 1024 * 1024


class ProcessStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class RingBuffer:
    """Fixed-size ring buffer for process output."""

    max_size: int = 100_000  # characters
    _buf: deque[str] = field(default_factory=deque)
    _total_chars: int = 0

    def append(self, data: str) -> None:
        self._buf.append(data)
        self._total_chars += len(data)
        # Evict oldest chunks until we're within budget
        while self._total_chars > self.max_size and self._buf:
            evicted = self._buf.popleft()
            self._total_chars -= len(evicted)

    def tail(self, num_chars: int = 2000) -> str:
        """Return the last `num_chars` characters of buffered output."""
        parts: list[str] = []
        remaining = num_chars
        for chunk in reversed(self._buf):
            if remaining <= 0:
                break
            if len(chunk) <= remaining:
                parts.append(chunk)
                remaining -= len(chunk)
            else:
                parts.append(chunk[-remaining:])
                remaining = 0
        parts.reverse()
        return "".join(parts)

    def clear(self) -> None:
        self._buf.clear()
        self._total_chars = 0


class ProcessManager:
    """Starts, stops and reports on one child process at a time.

    ``spawn`` raises ``ProcessStartError``; ``start`` is the same operation
    reporting a boolean instead.  ``stop`` never raises.  Start and stop
    are serialized, and starting while a process is alive stops the old
    one first.

    With ``capture_stderr`` (the default) the child's stderr is drained in
    the background into a ring buffer so a chatty server can never block on
    a full pipe; read it with ``stderr_tail()``.
    """

    def __init__(
        self,
        *,
        capture_stderr: bool = True,
        stop_timeout: float = 10.0,
        stream_limit: int = DEFAULT_STREAM_LIMIT,
    ) -> None:
        self.capture_stderr = capture_stderr
        self.stop_timeout = stop_timeout
        self.stream_limit = stream_limit
        self.stderr_buf = RingBuffer()
        self.status = ProcessStatus.STOPPED
        self.exit_code: int | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._waiter_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def spawn(
        self,
        binary_path: str,
        args: list[str] | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> asyncio.subprocess.Process:
        """Launch ``binary_path`` with ``args``, replacing any live process.

        Raises ProcessStartError (wrapping the OS error) if the launch fails.
        """
        async with self._lock:
            if self.is_alive():
                log.warning("Process is already running, stopping existing process")
            await self._stop_locked()

            proc_args = list(args or [])
            spawn_env = None
            if env:
                spawn_env = os.environ.copy()
                spawn_env.update(env)

            log.info(
                "Starting MCP server process: %s",
                " ".join([binary_path, *proc_args]),
            )
            self.status = ProcessStatus.STARTING
            self.exit_code = None
            self.stderr_buf.clear()
            try:
                process = await asyncio.create_subprocess_exec(
                    binary_path,
                    *proc_args,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=spawn_env,
                    limit=self.stream_limit,
                    # New process group so stop() can signal the whole tree
                    start_new_session=True,
                )
            except (OSError, ValueError) as exc:
                self.status = ProcessStatus.FAILED
                raise ProcessStartError(binary_path, exc) from exc

            self._process = process
            self.status = ProcessStatus.RUNNING

            if self.capture_stderr:
                self._reader_task = asyncio.create_task(
                    self._read_stream(process.stderr, self.stderr_buf),  # type: ignore[arg-type]
                    name=f"mcp-server-{process.pid}-stderr",
                )
            self._waiter_task = asyncio.create_task(
                self._wait_for_exit(process),
                name=f"mcp-server-{process.pid}-waiter",
            )

            log.info("MCP server process started (pid=%s)", process.pid)
            return process

    async def start(
        self,
        binary_path: str,
        args: list[str] | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> bool:
        """Like ``spawn`` but reports failure as ``False``."""
        try:
            await self.spawn(binary_path, args=args, cwd=cwd, env=env)
        except ProcessStartError as exc:
            log.warning("%s", exc)
            return False
        return True

    async def stop(self) -> None:
        """Stop the process if one is running. Safe to call repeatedly."""
        async with self._lock:
            try:
                await self._stop_locked()
            except Exception:
                log.exception("Error stopping MCP server process")
                self._process = None

    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def input_stream(self) -> asyncio.StreamReader:
        """The child's stdout: what the server sends to us."""
        proc = self._require_running()
        if proc.stdout is None:
            raise StreamUnavailableError("Server stdout is not piped")
        return proc.stdout

    def output_stream(self) -> asyncio.StreamWriter:
        """The child's stdin: what we send to the server."""
        proc = self._require_running()
        if proc.stdin is None:
            raise StreamUnavailableError("Server stdin is not piped")
        return proc.stdin

    def error_stream(self) -> asyncio.StreamReader:
        proc = self._require_running()
        if self.capture_stderr:
            raise StreamUnavailableError(
                "Server stderr is captured; use stderr_tail() instead"
            )
        if proc.stderr is None:
            raise StreamUnavailableError("Server stderr is not piped")
        return proc.stderr

    def stderr_tail(self, num_chars: int = 2000) -> str:
        return self.stderr_buf.tail(num_chars)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_running(self) -> asyncio.subprocess.Process:
        if self._process is None or self._process.returncode is not None:
            raise ProcessNotRunningError()
        return self._process

    async def _stop_locked(self) -> None:
        proc = self._process
        if proc is None:
            return

        if proc.returncode is None:
            log.info("Stopping MCP server process (pid=%s)", proc.pid)
            self.status = ProcessStatus.STOPPING
            await self._terminate(proc)
        else:
            log.info("MCP server process is not running")

        # Release the pipes, not just the reference
        if proc.stdin is not None:
            proc.stdin.close()
        for task in (self._reader_task, self._waiter_task):
            if task is not None and not task.done():
                task.cancel()
        self._reader_task = None
        self._waiter_task = None

        self.exit_code = proc.returncode
        self.status = ProcessStatus.STOPPED
        self._process = None
        log.info("MCP server process stopped with exit code: %s", self.exit_code)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, wait, then escalate to SIGKILL."""
        self._signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.stop_timeout)
            return
        except asyncio.TimeoutError:
            log.warning(
                "MCP server did not exit within %.1fs, sending SIGKILL",
                self.stop_timeout,
            )

        self._signal(proc, signal.SIGKILL)
        try:
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            log.error("MCP server (pid=%s) survived SIGKILL", proc.pid)

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(os.getpgid(proc.pid), sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except (ProcessLookupError, OSError):
            # Already gone
            pass

    @staticmethod
    async def _read_stream(
        stream: asyncio.StreamReader,
        buf: RingBuffer,
    ) -> None:
        """Read from an async stream into a ring buffer."""
        try:
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                buf.append(chunk.decode("utf-8", errors="replace"))
        except asyncio.CancelledError:
            pass

    async def _wait_for_exit(self, proc: asyncio.subprocess.Process) -> None:
        """Record an exit that happened without stop() being called."""
        code = await proc.wait()
        if self._process is not proc or self.status == ProcessStatus.STOPPING:
            # stop() owns the status transition
            return
        self.exit_code = code
        self.status = ProcessStatus.STOPPED if code == 0 else ProcessStatus.FAILED
        log.warning(
            "MCP server process (pid=%s) exited unexpectedly with code %s: %s",
            proc.pid,
            code,
            self.stderr_buf.tail(500).strip(),
        )
