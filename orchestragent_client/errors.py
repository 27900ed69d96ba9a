"""Exception hierarchy for the orchestragent client.

Only the process layer and the strict ``McpClientService.start_and_connect``
raise these past their own boundary; elsewhere the protocol client, client
service and session manager convert them into booleans, ``None`` or a
``SendResult``.
"""

from __future__ import annotations


class OrchestragentError(Exception):
    """Base class for all client errors."""


# ---------------------------------------------------------------------------
# Process lifecycle
# ---------------------------------------------------------------------------

class ProcessError(OrchestragentError):
    pass


class ProcessStartError(ProcessError):
    """The server binary could not be launched."""

    def __init__(self, binary_path: str, cause: BaseException) -> None:
        super().__init__(f"Failed to start MCP server at {binary_path}: {cause}")
        self.binary_path = binary_path


class ProcessNotRunningError(ProcessError):
    def __init__(self, message: str = "Process is not running") -> None:
        super().__init__(message)


class StreamUnavailableError(ProcessError):
    pass


# ---------------------------------------------------------------------------
# Wire protocol
# ---------------------------------------------------------------------------

class ProtocolError(OrchestragentError):
    pass


class MalformedResponseError(ProtocolError):
    """A response line was not a valid JSON-RPC 2.0 response."""


class ClientInitializationError(OrchestragentError):
    """Strict start-and-connect failed; the server has been shut down again."""


# ---------------------------------------------------------------------------
# Domain
# ---------------------------------------------------------------------------

class SessionValidationError(OrchestragentError, ValueError):
    pass
