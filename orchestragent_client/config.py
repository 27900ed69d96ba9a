from __future__ import annotations

import dataclasses
import enum
import logging
import os
import platform
import sys
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

log = logging.getLogger(__name__)

BUNDLED_BIN_DIR = Path(__file__).parent / "bin"


class LaunchMode(str, enum.Enum):
    """How the repository path is handed to the server binary."""

    ARGUMENT = "argument"  # <binary> --repository <path>
    WORKDIR = "workdir"    # <binary>, started with cwd=<path>


@dataclass(frozen=True)
class LaunchSpec:
    args: list[str]
    cwd: str | None = None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _platform_dir() -> str:
    machine = platform.machine().lower()
    if sys.platform.startswith("win"):
        return "windows-x64"
    if sys.platform == "darwin":
        return "macos-arm64" if machine in ("arm64", "aarch64") else "macos-x64"
    if not sys.platform.startswith("linux"):
        log.warning("Unknown platform: %s %s, defaulting to linux-x64", sys.platform, machine)
    return "linux-x64"


@dataclass(frozen=True)
class ClientSettings:
    server_path: str = ""
    repository_path: str = ""
    auto_start_server: bool = True
    refresh_interval_seconds: int = 30
    base_branch: str = "main"
    test_command: str = ""
    launch_mode: LaunchMode = LaunchMode.ARGUMENT

    def with_updates(self, **changes) -> ClientSettings:
        updated = dataclasses.replace(self, **changes)
        log.info("Configuration updated: %s", updated)
        return updated

    def resolve_bundled_binary_path(self) -> str:
        binary = "orchestragent.exe" if sys.platform.startswith("win") else "orchestragent"
        path = BUNDLED_BIN_DIR / _platform_dir() / binary
        log.info("Resolved bundled binary path: %s", path)
        return str(path)

    def resolve_server_binary_path(self) -> str:
        """The configured server path, or the bundled binary when unset."""
        if self.server_path.strip():
            log.info("Using custom MCP server path: %s", self.server_path)
            return self.server_path
        return self.resolve_bundled_binary_path()

    def launch_spec(self) -> LaunchSpec:
        repo = self.repository_path.strip()
        if not repo:
            return LaunchSpec(args=[])
        if self.launch_mode is LaunchMode.WORKDIR:
            return LaunchSpec(args=[], cwd=repo)
        return LaunchSpec(args=["--repository", repo])

    @staticmethod
    def validate_binary_path(binary_path: str | Path) -> bool:
        path = Path(binary_path)
        if not path.exists():
            log.warning("Binary path does not exist: %s", path)
            return False
        if not path.is_file():
            log.warning("Binary path is not a regular file: %s", path)
            return False
        if not os.access(path, os.X_OK):
            log.warning("Binary path is not executable: %s", path)
            return False
        return True

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> ClientSettings:
        load_dotenv(env_path)

        raw_interval = os.getenv("ORCHESTRAGENT_REFRESH_INTERVAL", "30")
        try:
            interval = int(raw_interval)
        except ValueError:
            raise ValueError(
                f"ORCHESTRAGENT_REFRESH_INTERVAL must be an integer, got {raw_interval!r}"
            ) from None
        if interval <= 0:
            raise ValueError("ORCHESTRAGENT_REFRESH_INTERVAL must be positive")

        raw_mode = os.getenv("ORCHESTRAGENT_LAUNCH_MODE", LaunchMode.ARGUMENT.value)
        try:
            mode = LaunchMode(raw_mode.strip().lower())
        except ValueError:
            raise ValueError(
                f"ORCHESTRAGENT_LAUNCH_MODE must be 'argument' or 'workdir', got {raw_mode!r}"
            ) from None

        return cls(
            server_path=os.getenv("ORCHESTRAGENT_SERVER_PATH", ""),
            repository_path=os.getenv("ORCHESTRAGENT_REPOSITORY", ""),
            auto_start_server=_env_bool("ORCHESTRAGENT_AUTO_START", True),
            refresh_interval_seconds=interval,
            base_branch=os.getenv("ORCHESTRAGENT_BASE_BRANCH", "main"),
            test_command=os.getenv("ORCHESTRAGENT_TEST_COMMAND", ""),
            launch_mode=mode,
        )
