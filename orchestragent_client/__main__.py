"""Run the client against a local orchestragent server and log sessions.

Usage:
    python -m orchestragent_client [--env-file FILE] [--once]

Starts the configured server binary, connects over stdio, then keeps the
session list fresh (every ORCHESTRAGENT_REFRESH_INTERVAL seconds) until
SIGINT/SIGTERM.
"""

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from .client_service import McpClientService
from .config import ClientSettings
from .models import Session
from .notifier import LoggingNotifier
from .session_manager import SessionManager
from .startup import run_startup

log = logging.getLogger("orchestragent_client")


def _log_snapshot(sessions: list[Session]) -> None:
    log.info("%d session(s)", len(sessions))
    for s in sorted(sessions, key=lambda s: s.last_modified, reverse=True):
        stats = s.statistics
        log.info(
            "  %s  %-8s %s  +%d -%d (%d files)  %s",
            s.id, s.status.value, s.branch_name,
            stats.lines_added, stats.lines_removed, stats.files_changed,
            s.worktree_path,
        )


async def _run(settings: ClientSettings, once: bool) -> int:
    notifier = LoggingNotifier()
    service = McpClientService(settings, notifier=notifier)
    sessions = SessionManager(service)

    try:
        if not await run_startup(settings, service, sessions, notifier):
            return 1
        if once:
            _log_snapshot(sessions.get_all())
            return 0

        unwatch = sessions.sessions.watch(_log_snapshot)
        sessions.start_polling(settings.refresh_interval_seconds)

        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown.set)

        # Block until a signal arrives
        await shutdown.wait()
        log.info("Signal received, shutting down")
        unwatch()
        await sessions.stop_polling()
        return 0
    finally:
        await service.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="Orchestragent MCP stdio client")
    parser.add_argument(
        "--env-file", type=Path, default=None,
        help="dotenv file with ORCHESTRAGENT_* settings (default: ./.env)",
    )
    parser.add_argument(
        "--once", action="store_true",
        help="Log the session list once and exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    settings = ClientSettings.from_env(args.env_file)
    raise SystemExit(asyncio.run(_run(settings, args.once)))


if __name__ == "__main__":
    main()
