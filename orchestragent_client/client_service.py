from __future__ import annotations

import logging

from mcp import types
from pydantic import ValidationError

from .config import ClientSettings
from .errors import ClientInitializationError, ProcessStartError
from .models import (
    RpcNotification,
    RpcRequest,
    RpcResponse,
    SendResult,
    SendStatus,
    ToolCallParams,
)
from .notifier import LoggingNotifier, Notifier
from .process_manager import ProcessManager
from .protocol_client import ProtocolClient

log = logging.getLogger(__name__)

TOOLS_CALL_METHOD = "tools/call"
INITIALIZE_METHOD = "initialize"
INITIALIZED_NOTIFICATION = "notifications/initialized"
CONNECT_ATTEMPTS = 5
CONNECT_INITIAL_DELAY = 1.0  # seconds: waits of 1, 2, 4, 8 between attempts

CLIENT_INFO = types.Implementation(name="orchestragent-client", version="0.1.0")


class McpClientService:
    """Owns the server process and its protocol client.

    Nothing raised below this layer escapes its public methods: failures
    become ``False`` / ``None`` and a notification.  The exception is
    ``start_and_connect``, which raises ``ClientInitializationError``.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        process_manager: ProcessManager | None = None,
        protocol_client: ProtocolClient | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.settings = settings
        self.process_manager = process_manager or ProcessManager()
        self.protocol_client = protocol_client or ProtocolClient(self.process_manager)
        self.notifier = notifier or LoggingNotifier()

    async def start_server_and_connect(self) -> bool:
        try:
            binary_path = self.settings.resolve_server_binary_path()
            launch = self.settings.launch_spec()

            log.info("Starting MCP server: %s", binary_path)
            started = await self.process_manager.start(
                binary_path, launch.args, cwd=launch.cwd,
            )
            if not started:
                log.warning("Failed to start MCP server process")
                self.notifier.notify_error(
                    "MCP Server Error", "Failed to start MCP server process",
                )
                return False

            log.info("Connecting to MCP server...")
            connected = await self.protocol_client.connect_with_retry(
                max_retries=CONNECT_ATTEMPTS,
                initial_delay=CONNECT_INITIAL_DELAY,
            )
            if connected:
                log.info("Successfully connected to MCP server")
                self.notifier.notify_info("MCP Server", "Connected to MCP server")
            else:
                log.warning("Failed to connect to MCP server")
                self.notifier.notify_error(
                    "MCP Server Error", "Failed to connect to MCP server",
                )
            return connected
        except Exception as exc:
            log.exception("Error starting MCP server and connecting")
            self.notifier.notify_error("MCP Server Error", f"Error: {exc}")
            return False

    async def start_and_connect(self) -> types.InitializeResult:
        """Start the server, connect and complete the MCP ``initialize`` handshake.

        Unlike ``start_server_and_connect`` this fails loudly: on any failure
        the connection is closed, the server process is stopped and
        ``ClientInitializationError`` is raised with the cause chained.
        """
        try:
            return await self._start_and_initialize()
        except Exception as exc:
            log.error("MCP client initialization failed: %s", exc)
            await self.shutdown()
            if isinstance(exc, ClientInitializationError):
                raise
            raise ClientInitializationError(
                f"Failed to initialize MCP client: {exc}"
            ) from exc

    async def _start_and_initialize(self) -> types.InitializeResult:
        binary_path = self.settings.resolve_server_binary_path()
        launch = self.settings.launch_spec()

        log.info("Starting MCP server: %s", binary_path)
        try:
            await self.process_manager.spawn(binary_path, launch.args, cwd=launch.cwd)
        except ProcessStartError as exc:
            raise ClientInitializationError(str(exc)) from exc

        connected = await self.protocol_client.connect_with_retry(
            max_retries=CONNECT_ATTEMPTS,
            initial_delay=CONNECT_INITIAL_DELAY,
        )
        if not connected:
            raise ClientInitializationError("Failed to connect to MCP server")

        params = types.InitializeRequestParams(
            protocolVersion=types.LATEST_PROTOCOL_VERSION,
            capabilities=types.ClientCapabilities(),
            clientInfo=CLIENT_INFO,
        )
        request = RpcRequest.create(
            INITIALIZE_METHOD, params.model_dump(by_alias=True, exclude_none=True),
        )
        result = await self.protocol_client.exchange(request)
        if not result.ok or result.response is None:
            raise ClientInitializationError(
                f"No initialize response from MCP server ({result.status.value}): {result.detail}"
            )
        if result.response.error is not None:
            raise ClientInitializationError(
                f"MCP server rejected initialize: {result.response.error.message}"
            )
        try:
            initialized = types.InitializeResult.model_validate(result.response.result)
        except ValidationError as exc:
            raise ClientInitializationError(f"Invalid initialize result: {exc}") from exc

        sent = await self.protocol_client.notify(RpcNotification(INITIALIZED_NOTIFICATION))
        if not sent.ok:
            raise ClientInitializationError(
                f"Failed to confirm initialization ({sent.status.value}): {sent.detail}"
            )

        log.info(
            "Initialized MCP session with %s %s (protocol %s)",
            initialized.serverInfo.name,
            initialized.serverInfo.version,
            initialized.protocolVersion,
        )
        self.notifier.notify_info("MCP Server", "Connected to MCP server")
        return initialized

    async def call_tool_result(
        self, name: str, arguments: dict[str, str] | None = None
    ) -> SendResult:
        """Invoke a server tool via ``tools/call`` and return the tagged result.

        An error response is still an OK exchange: the caller gets it back
        as data, and the notifier is told the tool failed.
        """
        args = dict(arguments or {})
        try:
            request = RpcRequest.create(
                TOOLS_CALL_METHOD, ToolCallParams(name=name, arguments=args).to_params(),
            )
            log.info("Calling MCP tool: %s with arguments: %s", name, args)
            result = await self.protocol_client.exchange(request)
        except Exception as exc:
            log.exception("Error calling MCP tool: %s", name)
            self.notifier.notify_error("MCP Tool Error", f"Error calling tool: {exc}")
            return SendResult(SendStatus.IO_FAILURE, detail=str(exc))

        response = result.response
        if response is not None and response.error is not None:
            log.warning("MCP tool call error: %s", response.error.message)
            self.notifier.notify_error(
                "MCP Tool Error", f"Tool {name} failed: {response.error.message}",
            )
        elif result.ok:
            log.info("MCP tool call successful: %s", name)
        elif result.status is not SendStatus.NOT_CONNECTED:
            self.notifier.notify_error(
                "MCP Tool Error", f"Tool {name} failed: {result.detail}",
            )
        return result

    async def call_tool(
        self, name: str, arguments: dict[str, str] | None = None
    ) -> RpcResponse | None:
        return (await self.call_tool_result(name, arguments)).response

    async def shutdown(self) -> None:
        log.info("Shutting down MCP client service")
        try:
            await self.protocol_client.disconnect()
        except Exception:
            log.exception("Error disconnecting from MCP server")
        try:
            await self.process_manager.stop()
        except Exception:
            log.exception("Error stopping MCP server process")
        log.info("MCP client service shutdown complete")

    def is_connected(self) -> bool:
        return self.protocol_client.is_connected()
