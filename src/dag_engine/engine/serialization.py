"""Per-key serialisation of coroutines.

`KeyedTaskQueue` runs at most one coroutine per key at a time, in call order.
Lifecycle of a key: inserted on first use, removed when the newest queued call
finishes. Nothing is kept at module level; each executor owns its queue.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


class KeyedTaskQueue:
    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Future[None]] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._tails

    def __len__(self) -> int:
        return len(self._tails)

    def _release(self, key: str, current: asyncio.Future[None]) -> None:
        if not current.done():
            current.set_result(None)
        if self._tails.get(key) is current:
            del self._tails[key]

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Wait for earlier calls with the same key, then await `factory()`."""

        previous = self._tails.get(key)
        current: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._tails[key] = current
        try:
            if previous is not None:
                await asyncio.shield(previous)
            return await factory()
        finally:
            if previous is not None and not previous.done():
                # Cancelled while queued: keep the chain intact for later callers.
                previous.add_done_callback(lambda _f: self._release(key, current))
            else:
                self._release(key, current)
