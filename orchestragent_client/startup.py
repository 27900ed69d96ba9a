from __future__ import annotations

import logging

from .client_service import McpClientService
from .config import ClientSettings
from .notifier import Notifier
from .session_manager import SessionManager

log = logging.getLogger(__name__)


async def run_startup(
    settings: ClientSettings,
    service: McpClientService,
    sessions: SessionManager,
    notifier: Notifier,
) -> bool:
    """Start the server, connect, and load the initial session list.

    Returns True once sessions have been requested from a connected server.
    """
    log.info("Orchestragent client initialization started")

    if not settings.auto_start_server:
        log.info("Auto-start is disabled, skipping MCP server startup")
        return False

    try:
        binary_path = settings.resolve_server_binary_path()
        if not settings.validate_binary_path(binary_path):
            log.warning("MCP server binary not found or not executable: %s", binary_path)
            notifier.notify_warning(
                "MCP Server Configuration Required",
                "MCP server binary not found. Please configure the server path.",
            )
            return False

        log.info("Starting MCP server and establishing connection")
        if not await service.start_server_and_connect():
            log.error("Failed to connect to MCP server")
            return False

        await sessions.initialize_from_server()
        log.info("Orchestragent client initialization completed successfully")
        return True
    except Exception as exc:
        log.exception("Error during client initialization")
        notifier.notify_error(
            "Orchestragent Initialization Error",
            f"Failed to initialize: {exc}",
        )
        return False
