"""Lifecycle management for the MCP server child process.

``ProcessManager`` owns at most one running server, exposes its stdio
streams, and guarantees the old process is fully stopped before a new one
starts.
"""

from orchestragent_client.process_manager.supervisor import (
    ProcessManager,
    ProcessStatus,
    RingBuffer,
)

__all__ = ["ProcessManager", "ProcessStatus", "RingBuffer"]
