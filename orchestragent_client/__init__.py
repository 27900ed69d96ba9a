"""Stdio JSON-RPC client for the orchestragent MCP server.

Spawns the server binary, speaks line-delimited JSON-RPC 2.0 over its
stdin/stdout, and keeps an observable cache of the server's sessions.
"""

from orchestragent_client.client_service import McpClientService
from orchestragent_client.config import ClientSettings, LaunchMode
from orchestragent_client.models import (
    GitStatistics,
    RpcError,
    RpcRequest,
    RpcResponse,
    SendResult,
    SendStatus,
    Session,
    SessionStatus,
)
from orchestragent_client.notifier import LoggingNotifier, Notifier
from orchestragent_client.process_manager import ProcessManager
from orchestragent_client.protocol_client import ProtocolClient
from orchestragent_client.session_manager import SessionManager

__all__ = [
    "ClientSettings",
    "GitStatistics",
    "LaunchMode",
    "LoggingNotifier",
    "McpClientService",
    "Notifier",
    "ProcessManager",
    "ProtocolClient",
    "RpcError",
    "RpcRequest",
    "RpcResponse",
    "SendResult",
    "SendStatus",
    "Session",
    "SessionManager",
    "SessionStatus",
]
