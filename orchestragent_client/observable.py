"""Replay-latest observable value.

Subscribers see the current value as soon as they subscribe and then every
later replacement.  A slow subscriber skips intermediate values and always
resumes at the newest one; it never sees partial updates.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class StateValue(Generic[T]):
    def __init__(self, initial: T) -> None:
        self._value = initial
        self._version = 0
        self._waiters: set[asyncio.Event] = set()
        self._listeners: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    @property
    def version(self) -> int:
        return self._version

    def set(self, value: T) -> None:
        """Replace the value and wake every subscriber."""
        self._value = value
        self._version += 1
        for event in self._waiters:
            event.set()
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                log.exception("State listener %r failed", listener)

    def watch(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Call ``listener`` now and on every change. Returns an unsubscribe."""
        listener(self._value)
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def subscribe(self) -> AsyncIterator[T]:
        """Yield the current value, then each newer value as it is set."""
        event = asyncio.Event()
        self._waiters.add(event)
        seen = -1
        try:
            while True:
                if seen != self._version:
                    seen = self._version
                    yield self._value
                    continue
                event.clear()
                await event.wait()
        finally:
            self._waiters.discard(event)
