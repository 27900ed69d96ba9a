"""Session cache: the local, observable view of the server's sessions.

``refresh()`` asks the server for the full list via the ``get_sessions``
tool and replaces the cache wholesale; ``update()``/``remove()`` edit it
directly.  Every change republishes the full list through ``sessions``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .client_service import McpClientService
from .models import GitStatistics, Session, SessionStatus
from .observable import StateValue

log = logging.getLogger(__name__)

GET_SESSIONS_TOOL = "get_sessions"

# Fractional seconds after the seconds field; servers may send 1 to 9 digits
_FRACTION_RE = re.compile(r"(?<=:\d{2})\.(\d+)")


# ---------------------------------------------------------------------------
# Parsing: one malformed entry never fails the whole list
# ---------------------------------------------------------------------------

def _text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _parse_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        count = value
    elif isinstance(value, str):
        try:
            count = int(value.strip())
        except ValueError:
            return 0
    else:
        return 0
    return count if count >= 0 else 0


def _parse_timestamp(value: Any, default: datetime) -> datetime:
    if not isinstance(value, str) or not value.strip():
        return default
    raw = value.strip()
    # fromisoformat() only accepts a trailing "Z" from 3.11 on
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    # and only 3 or 6 fractional digits before 3.11
    raw = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), raw, count=1)
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        log.debug("Unparsable timestamp %r, using now", value)
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_status(value: Any) -> SessionStatus:
    if isinstance(value, str):
        try:
            return SessionStatus(value.strip().upper())
        except ValueError:
            pass
    return SessionStatus.OPEN


def parse_session(entry: Any, *, now: datetime | None = None) -> Session | None:
    """Build a Session from one ``get_sessions`` entry, or None to drop it.

    ``id``, ``worktreePath`` and ``branchName`` are required.  Everything
    else falls back: timestamps to ``now``, status to OPEN, counts to 0.
    """
    if not isinstance(entry, dict):
        return None

    session_id = _text(entry.get("id"))
    worktree = _text(entry.get("worktreePath"))
    branch = _text(entry.get("branchName"))
    if session_id is None or worktree is None or branch is None:
        log.warning("Dropping session entry with missing required fields: %s", entry)
        return None

    now = now or datetime.now(timezone.utc)
    try:
        return Session(
            id=session_id,
            worktree_path=Path(worktree),
            branch_name=branch,
            status=_parse_status(entry.get("status")),
            statistics=GitStatistics(
                lines_added=_parse_count(entry.get("linesAdded")),
                lines_removed=_parse_count(entry.get("linesRemoved")),
                files_changed=_parse_count(entry.get("filesChanged")),
            ),
            created_at=_parse_timestamp(entry.get("createdAt"), now),
            last_modified=_parse_timestamp(entry.get("lastModified"), now),
        )
    except (ValueError, TypeError) as exc:
        log.warning("Dropping invalid session %r: %s", session_id, exc)
        return None


def _session_entries(result: Any) -> list[Any] | None:
    if isinstance(result, list):
        return result
    if isinstance(result, dict) and isinstance(result.get("sessions"), list):
        return result["sessions"]
    return None


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class SessionManager:
    def __init__(self, client: McpClientService) -> None:
        self._client = client
        # Copy-on-write: writers swap in a new dict, readers never see a
        # half-built one.
        self._cache: dict[str, Session] = {}
        self.sessions: StateValue[list[Session]] = StateValue([])
        self._refresh_lock = asyncio.Lock()
        # Direct edits made while a refresh awaits the server; replayed on
        # top of the server's list so they are not lost.
        self._pending: dict[str, Session | None] | None = None
        self._poll_task: asyncio.Task[None] | None = None

    async def initialize_from_server(self) -> bool:
        log.info("Initializing session list from MCP server")
        return await self.refresh()

    async def refresh(self) -> bool:
        """Replace the cache with the server's session list.

        Returns False, leaving the cache untouched, if the call fails or the
        server answers with an error: stale sessions beat an empty list.
        """
        async with self._refresh_lock:
            self._pending = {}
            try:
                return await self._refresh_locked()
            except Exception:
                log.exception("Error refreshing sessions")
                return False
            finally:
                self._pending = None

    async def _refresh_locked(self) -> bool:
        log.info("Refreshing sessions from MCP server")
        response = await self._client.call_tool(GET_SESSIONS_TOOL, {})
        if response is None:
            log.error("Failed to refresh sessions: no response from MCP server")
            return False
        if response.error is not None:
            log.error("Failed to refresh sessions: %s", response.error.message)
            return False

        entries = _session_entries(response.result)
        if entries is None:
            log.error(
                "Failed to refresh sessions: expected a list, got %s",
                type(response.result).__name__,
            )
            return False

        now = datetime.now(timezone.utc)
        fresh: dict[str, Session] = {}
        for entry in entries:
            session = parse_session(entry, now=now)
            if session is not None:
                fresh[session.id] = session

        for session_id, local in (self._pending or {}).items():
            if local is None:
                fresh.pop(session_id, None)
            else:
                fresh[session_id] = local

        self._cache = fresh
        self._publish()
        log.info("Refreshed %d sessions from MCP server", len(fresh))
        return True

    def get_all(self) -> list[Session]:
        return list(self._cache.values())

    def get_by_id(self, session_id: str) -> Session | None:
        return self._cache.get(session_id)

    def update(self, session: Session) -> None:
        self._cache = {**self._cache, session.id: session}
        if self._pending is not None:
            self._pending[session.id] = session
        self._publish()
        log.info("Updated session: %s", session.id)

    def remove(self, session_id: str) -> None:
        cache = dict(self._cache)
        cache.pop(session_id, None)
        self._cache = cache
        if self._pending is not None:
            self._pending[session_id] = None
        self._publish()
        log.info("Removed session: %s", session_id)

    # ------------------------------------------------------------------
    # Background polling
    # ------------------------------------------------------------------

    def start_polling(self, interval: float) -> asyncio.Task[None]:
        """Refresh every ``interval`` seconds until stop_polling()."""
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(
                self._poll(interval), name="session-refresh",
            )
        return self._poll_task

    async def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _poll(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.refresh()

    def _publish(self) -> None:
        self.sessions.set(list(self._cache.values()))
