from unittest.mock import AsyncMock, MagicMock

import pytest
from mcp import types
from pydantic import ValidationError

from conftest import posix_only
from orchestragent_client.client_service import McpClientService
from orchestragent_client.config import ClientSettings, LaunchMode
from orchestragent_client.errors import ClientInitializationError, ProcessStartError
from orchestragent_client.models import (
    RpcError,
    RpcNotification,
    RpcResponse,
    SendResult,
    SendStatus,
)
from orchestragent_client.notifier import Notifier
from orchestragent_client.session_manager import SessionManager


def make_service(settings: ClientSettings | None = None):
    process_manager = MagicMock()
    process_manager.start = AsyncMock(return_value=True)
    process_manager.spawn = AsyncMock()
    process_manager.stop = AsyncMock()
    protocol_client = MagicMock()
    protocol_client.connect_with_retry = AsyncMock(return_value=True)
    protocol_client.disconnect = AsyncMock()
    protocol_client.exchange = AsyncMock()
    protocol_client.notify = AsyncMock(return_value=SendResult(SendStatus.OK))
    notifier = MagicMock(spec=Notifier)
    service = McpClientService(
        settings or ClientSettings(server_path="/opt/orchestragent"),
        process_manager=process_manager,
        protocol_client=protocol_client,
        notifier=notifier,
    )
    return service, process_manager, protocol_client, notifier


# ---------------------------------------------------------------------------
# start_server_and_connect
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_start_passes_repository_argument():
    service, pm, pc, notifier = make_service(
        ClientSettings(server_path="/opt/orchestragent", repository_path="/repo")
    )
    assert await service.start_server_and_connect()

    pm.start.assert_awaited_once_with(
        "/opt/orchestragent", ["--repository", "/repo"], cwd=None,
    )
    pc.connect_with_retry.assert_awaited_once_with(max_retries=5, initial_delay=1.0)
    notifier.notify_info.assert_called_once_with("MCP Server", "Connected to MCP server")


@pytest.mark.asyncio
async def test_start_in_workdir_mode_sets_cwd():
    service, pm, _, _ = make_service(ClientSettings(
        server_path="/opt/orchestragent",
        repository_path="/repo",
        launch_mode=LaunchMode.WORKDIR,
    ))
    assert await service.start_server_and_connect()
    pm.start.assert_awaited_once_with("/opt/orchestragent", [], cwd="/repo")


@pytest.mark.asyncio
async def test_start_without_repository_has_no_arguments():
    service, pm, _, _ = make_service()
    await service.start_server_and_connect()
    pm.start.assert_awaited_once_with("/opt/orchestragent", [], cwd=None)


@pytest.mark.asyncio
async def test_process_start_failure_skips_connect():
    service, pm, pc, notifier = make_service()
    pm.start.return_value = False

    assert not await service.start_server_and_connect()
    pc.connect_with_retry.assert_not_awaited()
    notifier.notify_error.assert_called_once_with(
        "MCP Server Error", "Failed to start MCP server process",
    )


@pytest.mark.asyncio
async def test_connect_failure_is_notified():
    service, _, pc, notifier = make_service()
    pc.connect_with_retry.return_value = False

    assert not await service.start_server_and_connect()
    notifier.notify_error.assert_called_once_with(
        "MCP Server Error", "Failed to connect to MCP server",
    )


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_false():
    service, pm, _, notifier = make_service()
    pm.start.side_effect = RuntimeError("kaboom")

    assert not await service.start_server_and_connect()
    notifier.notify_error.assert_called_once_with("MCP Server Error", "Error: kaboom")


# ---------------------------------------------------------------------------
# start_and_connect (strict)
# ---------------------------------------------------------------------------

INITIALIZE_RESULT = {
    "protocolVersion": types.LATEST_PROTOCOL_VERSION,
    "capabilities": {"tools": {}},
    "serverInfo": {"name": "orchestragent", "version": "1.2.3"},
}


@pytest.mark.asyncio
async def test_strict_start_performs_initialize_handshake():
    service, pm, pc, notifier = make_service(
        ClientSettings(server_path="/opt/orchestragent", repository_path="/repo")
    )
    pc.exchange.return_value = SendResult(
        SendStatus.OK, RpcResponse(jsonrpc="2.0", id="r", result=INITIALIZE_RESULT),
    )

    initialized = await service.start_and_connect()

    assert initialized.serverInfo.name == "orchestragent"
    pm.spawn.assert_awaited_once_with(
        "/opt/orchestragent", ["--repository", "/repo"], cwd=None,
    )
    request = pc.exchange.await_args.args[0]
    assert request.method == "initialize"
    assert request.params["protocolVersion"] == types.LATEST_PROTOCOL_VERSION
    assert request.params["clientInfo"]["name"] == "orchestragent-client"
    pc.notify.assert_awaited_once_with(RpcNotification("notifications/initialized"))
    pm.stop.assert_not_awaited()
    notifier.notify_info.assert_called_once_with("MCP Server", "Connected to MCP server")


@pytest.mark.asyncio
async def test_strict_connect_failure_disconnects_and_stops():
    service, pm, pc, _ = make_service()
    pc.connect_with_retry.return_value = False

    with pytest.raises(ClientInitializationError, match="Failed to connect"):
        await service.start_and_connect()

    pc.exchange.assert_not_awaited()
    pc.disconnect.assert_awaited_once()
    pm.stop.assert_awaited_once()


@pytest.mark.asyncio
async def test_strict_spawn_failure_chains_cause():
    service, pm, pc, _ = make_service()
    cause = ProcessStartError("/opt/orchestragent", FileNotFoundError("missing"))
    pm.spawn.side_effect = cause

    with pytest.raises(ClientInitializationError) as excinfo:
        await service.start_and_connect()

    assert excinfo.value.__cause__ is cause
    pc.connect_with_retry.assert_not_awaited()
    pm.stop.assert_awaited_once()


@pytest.mark.asyncio
async def test_strict_rejected_initialize_raises():
    service, pm, pc, _ = make_service()
    pc.exchange.return_value = SendResult(
        SendStatus.OK,
        RpcResponse(jsonrpc="2.0", id="r", error=RpcError(code=-32600, message="no")),
    )

    with pytest.raises(ClientInitializationError, match="rejected initialize: no"):
        await service.start_and_connect()
    pc.notify.assert_not_awaited()
    pm.stop.assert_awaited_once()


@pytest.mark.asyncio
async def test_strict_invalid_initialize_result_chains_validation_error():
    service, pm, pc, _ = make_service()
    pc.exchange.return_value = SendResult(
        SendStatus.OK, RpcResponse(jsonrpc="2.0", id="r", result={"unexpected": True}),
    )

    with pytest.raises(ClientInitializationError) as excinfo:
        await service.start_and_connect()
    assert isinstance(excinfo.value.__cause__, ValidationError)
    pm.stop.assert_awaited_once()


@pytest.mark.asyncio
async def test_strict_unexpected_error_is_wrapped():
    service, pm, pc, _ = make_service()
    pc.exchange.side_effect = RuntimeError("kaboom")

    with pytest.raises(ClientInitializationError, match="kaboom") as excinfo:
        await service.start_and_connect()
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    pc.disconnect.assert_awaited_once()
    pm.stop.assert_awaited_once()


# ---------------------------------------------------------------------------
# call_tool
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_call_tool_wraps_name_and_arguments():
    service, _, pc, notifier = make_service()
    reply = RpcResponse(jsonrpc="2.0", id="x", result={"ok": True})
    pc.exchange.return_value = SendResult(SendStatus.OK, response=reply)

    response = await service.call_tool("merge_session", {"session_id": "s-1"})
    assert response is reply

    request = pc.exchange.await_args.args[0]
    assert request.method == "tools/call"
    assert request.params == {"name": "merge_session", "arguments": {"session_id": "s-1"}}
    assert request.id
    notifier.notify_error.assert_not_called()


@pytest.mark.asyncio
async def test_call_tool_uses_fresh_ids():
    service, _, pc, _ = make_service()
    pc.exchange.return_value = SendResult(SendStatus.NOT_CONNECTED)

    await service.call_tool("a", {})
    await service.call_tool("a", {})
    ids = {call.args[0].id for call in pc.exchange.await_args_list}
    assert len(ids) == 2


@pytest.mark.asyncio
async def test_call_tool_error_is_returned_and_notified():
    service, _, pc, notifier = make_service()
    reply = RpcResponse(jsonrpc="2.0", id="x", error=RpcError(code=-32000, message="boom"))
    pc.exchange.return_value = SendResult(SendStatus.OK, response=reply)

    response = await service.call_tool("get_sessions", {})
    assert response is reply
    notifier.notify_error.assert_called_once_with(
        "MCP Tool Error", "Tool get_sessions failed: boom",
    )


@pytest.mark.asyncio
async def test_call_tool_not_connected_returns_none_quietly():
    service, _, pc, notifier = make_service()
    pc.exchange.return_value = SendResult(SendStatus.NOT_CONNECTED, detail="not connected")

    assert await service.call_tool("get_sessions", {}) is None
    notifier.notify_error.assert_not_called()


@pytest.mark.asyncio
async def test_call_tool_transport_failure_is_notified():
    service, _, pc, notifier = make_service()
    pc.exchange.return_value = SendResult(SendStatus.CLOSED, detail="server closed its output")

    result = await service.call_tool_result("get_sessions")
    assert result.status is SendStatus.CLOSED
    notifier.notify_error.assert_called_once()


@pytest.mark.asyncio
async def test_call_tool_exception_becomes_none():
    service, _, pc, notifier = make_service()
    pc.exchange.side_effect = RuntimeError("loop closed")

    assert await service.call_tool("get_sessions", {}) is None
    notifier.notify_error.assert_called_once_with(
        "MCP Tool Error", "Error calling tool: loop closed",
    )


# ---------------------------------------------------------------------------
# shutdown / is_connected
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_shutdown_stops_process_even_if_disconnect_fails():
    service, pm, pc, _ = make_service()
    pc.disconnect.side_effect = RuntimeError("writer gone")

    await service.shutdown()
    pc.disconnect.assert_awaited_once()
    pm.stop.assert_awaited_once()


def test_is_connected_delegates():
    service, _, pc, _ = make_service()
    pc.is_connected.return_value = True
    assert service.is_connected()
    pc.is_connected.return_value = False
    assert not service.is_connected()


# ---------------------------------------------------------------------------
# End to end against tests/fake_server.py
# ---------------------------------------------------------------------------

@posix_only
@pytest.mark.asyncio
async def test_end_to_end_with_fake_server(fake_server_binary, tmp_path):
    notifier = MagicMock(spec=Notifier)
    service = McpClientService(
        ClientSettings(server_path=str(fake_server_binary), repository_path=str(tmp_path)),
        notifier=notifier,
    )
    try:
        assert await service.start_server_and_connect()
        assert service.is_connected()

        whoami = await service.call_tool("whoami", {"k": "v"})
        assert whoami.result["argv"] == ["--repository", str(tmp_path)]
        assert whoami.result["arguments"] == {"k": "v"}

        failed = await service.call_tool("fail", {})
        assert failed.error.message == "boom"

        sessions = SessionManager(service)
        assert await sessions.initialize_from_server()
        assert [s.id for s in sessions.get_all()] == ["s-1"]

        result = await service.call_tool_result("crash")
        assert result.status is SendStatus.CLOSED
        assert not service.is_connected()
    finally:
        await service.shutdown()

    assert not service.process_manager.is_alive()


@posix_only
@pytest.mark.asyncio
async def test_strict_start_against_fake_server(fake_server_binary, tmp_path):
    service = McpClientService(
        ClientSettings(server_path=str(fake_server_binary), repository_path=str(tmp_path)),
        notifier=MagicMock(spec=Notifier),
    )
    try:
        initialized = await service.start_and_connect()
        assert initialized.serverInfo.name == "fake-orchestragent"
        assert service.is_connected()

        # The initialized notification gets no reply, so the next answer lines up
        whoami = await service.call_tool("whoami", {})
        assert whoami.result["argv"] == ["--repository", str(tmp_path)]
    finally:
        await service.shutdown()


@posix_only
@pytest.mark.asyncio
async def test_strict_start_stops_server_when_initialize_is_refused(rejecting_server_binary):
    service = McpClientService(
        ClientSettings(server_path=str(rejecting_server_binary)),
        notifier=MagicMock(spec=Notifier),
    )

    with pytest.raises(ClientInitializationError, match="not today"):
        await service.start_and_connect()

    assert not service.is_connected()
    assert not service.process_manager.is_alive()
