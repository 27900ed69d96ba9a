from __future__ import annotations

import enum
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from mcp.types import ErrorData, JSONRPCNotification, JSONRPCRequest
from pydantic import ValidationError

from .errors import MalformedResponseError, SessionValidationError

JSONRPC_VERSION = "2.0"


# ---------------------------------------------------------------------------
# JSON-RPC envelopes: one JSON document per line on the child's stdio
# ---------------------------------------------------------------------------

class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


@dataclass(frozen=True)
class RpcRequest:
    id: str
    method: str
    params: dict[str, Any] | None = None
    jsonrpc: str = JSONRPC_VERSION

    @classmethod
    def create(cls, method: str, params: dict[str, Any] | None = None) -> RpcRequest:
        """Build a request with a fresh UUID4 id."""
        return cls(id=str(uuid.uuid4()), method=method, params=params)

    def to_line(self) -> str:
        """Serialize to a single line of compact JSON (no trailing newline)."""
        fields: dict[str, Any] = {
            "jsonrpc": self.jsonrpc,
            "id": self.id,
            "method": self.method,
        }
        if self.params is not None:
            fields["params"] = self.params
        envelope = JSONRPCRequest(**fields)
        return envelope.model_dump_json(by_alias=True, exclude_unset=True)


@dataclass(frozen=True)
class RpcNotification:
    """A request with no id: the server sends nothing back."""

    method: str
    params: dict[str, Any] | None = None
    jsonrpc: str = JSONRPC_VERSION

    def to_line(self) -> str:
        fields: dict[str, Any] = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params is not None:
            fields["params"] = self.params
        envelope = JSONRPCNotification(**fields)
        return envelope.model_dump_json(by_alias=True, exclude_unset=True)


@dataclass(frozen=True)
class RpcError:
    code: int
    message: str
    data: Any = None


@dataclass(frozen=True)
class RpcResponse:
    jsonrpc: str
    id: str
    result: Any = None
    error: RpcError | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def from_line(cls, line: str) -> RpcResponse:
        """Parse one response line. Unknown fields are ignored.

        Raises MalformedResponseError if the line is not a JSON object with
        a string ``jsonrpc``, a string/int ``id`` and (when present) a valid
        ``error`` object.
        """
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"Invalid JSON: {exc}") from exc

        if not isinstance(obj, dict):
            raise MalformedResponseError(
                f"Expected a JSON object, got {type(obj).__name__}"
            )

        version = obj.get("jsonrpc")
        if not isinstance(version, str):
            raise MalformedResponseError("Missing 'jsonrpc' field")

        raw_id = obj.get("id")
        if isinstance(raw_id, bool) or not isinstance(raw_id, (str, int)):
            raise MalformedResponseError("Missing or invalid 'id' field")

        error: RpcError | None = None
        raw_error = obj.get("error")
        if raw_error is not None:
            try:
                data = ErrorData.model_validate(raw_error)
            except ValidationError as exc:
                raise MalformedResponseError(f"Invalid 'error' object: {exc}") from exc
            error = RpcError(code=data.code, message=data.message, data=data.data)

        return cls(
            jsonrpc=version,
            id=str(raw_id),
            result=obj.get("result"),
            error=error,
        )


@dataclass(frozen=True)
class ToolCallParams:
    name: str
    arguments: dict[str, str] = field(default_factory=dict)

    def to_params(self) -> dict[str, Any]:
        return {"name": self.name, "arguments": dict(self.arguments)}


# ---------------------------------------------------------------------------
# Transport outcome: why no response came back
# ---------------------------------------------------------------------------

class SendStatus(enum.Enum):
    OK = "ok"
    NOT_CONNECTED = "not_connected"  # rejected before any I/O
    CLOSED = "closed"                # server closed its stdout
    MALFORMED = "malformed"          # reply line was not a JSON-RPC response
    IO_FAILURE = "io_failure"        # write/read failed or timed out


@dataclass(frozen=True)
class SendResult:
    status: SendStatus
    response: RpcResponse | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is SendStatus.OK


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionStatus(str, enum.Enum):
    OPEN = "OPEN"
    REVIEWED = "REVIEWED"
    MERGED = "MERGED"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class GitStatistics:
    lines_added: int = 0
    lines_removed: int = 0
    files_changed: int = 0

    def __post_init__(self) -> None:
        for name in ("lines_added", "lines_removed", "files_changed"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")


@dataclass(frozen=True)
class Session:
    """A server-tracked worktree/branch. Immutable; replace, don't mutate."""

    id: str
    worktree_path: Path
    branch_name: str
    status: SessionStatus
    statistics: GitStatistics
    created_at: datetime
    last_modified: datetime

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise SessionValidationError("Session id must not be blank")
        if not self.branch_name or not self.branch_name.strip():
            raise SessionValidationError("Branch name must not be blank")
        if self.created_at.tzinfo is None or self.last_modified.tzinfo is None:
            raise SessionValidationError("Session timestamps must be timezone-aware")
        if self.created_at > self.last_modified:
            raise SessionValidationError("createdAt must not be after lastModified")
