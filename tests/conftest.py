import asyncio
import stat
import sys
from pathlib import Path

import pytest

FAKE_SERVER = Path(__file__).parent / "fake_server.py"

posix_only = pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX process groups")


def _write_wrapper(wrapper: Path, prelude: str = "") -> Path:
    wrapper.write_text(f'#!/bin/sh\n{prelude}exec "{sys.executable}" "{FAKE_SERVER}" "$@"\n')
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return wrapper


@pytest.fixture
def fake_server_binary(tmp_path: Path) -> Path:
    """An executable wrapper that runs tests/fake_server.py with this interpreter."""
    return _write_wrapper(tmp_path / "orchestragent")


@pytest.fixture
def rejecting_server_binary(tmp_path: Path) -> Path:
    """Like fake_server_binary, but the server refuses to initialize."""
    return _write_wrapper(
        tmp_path / "orchestragent-rejecting",
        "FAKE_SERVER_REJECT_INITIALIZE=1\nexport FAKE_SERVER_REJECT_INITIALIZE\n",
    )


async def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
