"""JSON-RPC 2.0 over the MCP server's stdin/stdout.

One request is written as one line, and the reply is the next response
line the server writes.  There is no id multiplexing, so exchanges are
serialized: at most one is in flight per client.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .errors import MalformedResponseError, OrchestragentError
from .models import (
    ConnectionState,
    RpcNotification,
    RpcRequest,
    RpcResponse,
    SendResult,
    SendStatus,
)
from .process_manager import ProcessManager

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def _is_notification(line: str) -> bool:
    """True for a server-initiated JSON-RPC notification (method, no id)."""
    try:
        obj = json.loads(line)
    except json.JSONDecodeError:
        return False
    return isinstance(obj, dict) and "method" in obj and "id" not in obj


class ProtocolClient:
    def __init__(
        self,
        process_manager: ProcessManager,
        *,
        request_timeout: float | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._process_manager = process_manager
        self._request_timeout = request_timeout
        self._sleep = sleep
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._state = ConnectionState.DISCONNECTED
        self._exchange_lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        # A dead server demotes the connection even without disconnect()
        return (
            self._state is ConnectionState.CONNECTED
            and self._process_manager.is_alive()
        )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        if not self._process_manager.is_alive():
            log.warning("Cannot connect: MCP server process is not running")
            return False

        try:
            reader = self._process_manager.input_stream()
            writer = self._process_manager.output_stream()
        except OrchestragentError as exc:
            log.error("Cannot connect: %s", exc)
            self._state = ConnectionState.DISCONNECTED
            return False

        self._reader = reader
        self._writer = writer
        self._state = ConnectionState.CONNECTED
        log.info("Connected to MCP server")
        return True

    async def connect_with_retry(
        self,
        max_retries: int = 5,
        initial_delay: float = 1.0,
    ) -> bool:
        """Call connect() up to ``max_retries`` times with exponential backoff.

        The wait before attempt k+1 is ``initial_delay * 2 ** (k - 1)``.
        """
        retry_count = 0
        while retry_count < max_retries:
            log.info(
                "Attempting to connect to MCP server (attempt %d/%d)",
                retry_count + 1,
                max_retries,
            )
            if await self.connect():
                return True

            retry_count += 1
            if retry_count < max_retries:
                delay = initial_delay * 2 ** (retry_count - 1)
                log.warning(
                    "Connection attempt %d failed, retrying in %.2fs",
                    retry_count,
                    delay,
                )
                await self._sleep(delay)

        log.warning("Failed to connect to MCP server after %d attempts", max_retries)
        return False

    async def disconnect(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        self._state = ConnectionState.DISCONNECTED

        if writer is not None:
            try:
                writer.close()
                await writer.wait_closed()
            except (OSError, RuntimeError) as exc:
                log.debug("Ignoring error while closing server stdin: %s", exc)
        log.info("Disconnected from MCP server")

    # ------------------------------------------------------------------
    # Request / response
    # ------------------------------------------------------------------

    async def send_request(self, request: RpcRequest) -> RpcResponse | None:
        """Send ``request`` and return the reply, or None on any failure."""
        return (await self.exchange(request)).response

    async def exchange(self, request: RpcRequest) -> SendResult:
        """Send ``request`` and return a tagged result describing the outcome."""
        if self._state is not ConnectionState.CONNECTED:
            log.error("Cannot send request: Not connected to MCP server")
            return SendResult(SendStatus.NOT_CONNECTED, detail="not connected")

        async with self._exchange_lock:
            # Re-check: a previous exchange may have dropped the connection
            reader, writer = self._reader, self._writer
            if reader is None or writer is None:
                return SendResult(SendStatus.NOT_CONNECTED, detail="not connected")

            try:
                line = request.to_line()
            except (TypeError, ValueError) as exc:
                log.error("Cannot serialize request %s: %s", request.method, exc)
                return SendResult(SendStatus.MALFORMED, detail=f"unserializable request: {exc}")

            try:
                if self._request_timeout is None:
                    return await self._round_trip(request, line, reader, writer)
                return await asyncio.wait_for(
                    self._round_trip(request, line, reader, writer),
                    timeout=self._request_timeout,
                )
            except asyncio.TimeoutError:
                detail = f"no response within {self._request_timeout}s"
            except (OSError, RuntimeError, ValueError) as exc:
                # ValueError covers StreamReader's LimitOverrunError
                detail = f"{type(exc).__name__}: {exc}"

            log.error("I/O failure talking to MCP server (%s): %s", request.method, detail)
            # The stream may now hold a half-read or late reply
            await self.disconnect()
            return SendResult(SendStatus.IO_FAILURE, detail=detail)

    async def notify(self, notification: RpcNotification) -> SendResult:
        """Write a notification without waiting for anything back."""
        if self._state is not ConnectionState.CONNECTED:
            log.error("Cannot send notification: Not connected to MCP server")
            return SendResult(SendStatus.NOT_CONNECTED, detail="not connected")

        async with self._exchange_lock:
            writer = self._writer
            if writer is None:
                return SendResult(SendStatus.NOT_CONNECTED, detail="not connected")
            try:
                line = notification.to_line()
            except (TypeError, ValueError) as exc:
                log.error("Cannot serialize notification %s: %s", notification.method, exc)
                return SendResult(SendStatus.MALFORMED, detail=f"unserializable notification: {exc}")

            try:
                log.debug("Sending notification: %s", line)
                writer.write(line.encode("utf-8") + b"\n")
                await writer.drain()
            except (OSError, RuntimeError) as exc:
                detail = f"{type(exc).__name__}: {exc}"
                log.error("I/O failure talking to MCP server (%s): %s", notification.method, detail)
                await self.disconnect()
                return SendResult(SendStatus.IO_FAILURE, detail=detail)
        return SendResult(SendStatus.OK)

    async def _round_trip(
        self,
        request: RpcRequest,
        line: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> SendResult:
        log.debug("Sending request: %s", line)
        writer.write(line.encode("utf-8") + b"\n")
        await writer.drain()

        while True:
            raw = await reader.readline()
            if not raw:
                log.error("Received null response from MCP server")
                await self.disconnect()
                return SendResult(SendStatus.CLOSED, detail="server closed its output")

            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            if _is_notification(text):
                log.debug("Skipping server notification: %s", text[:200])
                continue
            break

        log.debug("Received response: %s", text)
        try:
            response = RpcResponse.from_line(text)
        except MalformedResponseError as exc:
            log.error("Malformed response from MCP server: %s", exc)
            return SendResult(SendStatus.MALFORMED, detail=str(exc))

        if response.id != request.id:
            log.warning(
                "Response id %s does not match request id %s",
                response.id,
                request.id,
            )
        return SendResult(SendStatus.OK, response=response)
