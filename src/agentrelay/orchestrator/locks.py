"""
Per-conversation locks.

Serializes work on one external chat while leaving every other chat,
channel and tenant free to proceed concurrently.
"""

from __future__ import annotations

import asyncio
from typing import Hashable, Optional


class Turn:
    """A place in the queue for one key.

    The place is taken when the Turn is created, not when it is entered,
    so a caller can reserve its position synchronously and wait for it
    later. Entering waits for the previous holder to finish; leaving (or
    being cancelled while waiting) hands the key to the next Turn.
    """

    def __init__(self, locks: KeyedLocks, key: Hashable, previous: Optional[asyncio.Future]):
        self._locks = locks
        self._key = key
        self._previous = previous
        self._done: asyncio.Future = asyncio.get_running_loop().create_future()

    async def __aenter__(self) -> None:
        if self._previous is None or self._previous.done():
            return
        try:
            await asyncio.shield(self._previous)
        except asyncio.CancelledError:
            # The successor must still wait for our predecessor
            self._previous.add_done_callback(lambda _: self._release())
            raise

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._release()

    def _release(self) -> None:
        if not self._done.done():
            self._done.set_result(None)
        self._locks._forget(self._key, self._done)


class KeyedLocks:
    """A FIFO lock per key, created lazily.

    Waiters are admitted in the order their Turns were reserved. Keys are
    dropped once the last reserved Turn finishes, so the map only grows
    with the number of chats currently active.

    Usage:
        locks = KeyedLocks()
        async with locks.hold((tenant_id, channel_id, chat_id)):
            ...

        # Reserve now, wait later
        turn = locks.reserve(key)
        ...
        async with turn:
            ...
    """

    def __init__(self):
        self._tails: dict[Hashable, asyncio.Future] = {}

    def reserve(self, key: Hashable) -> Turn:
        """Take the next place for key without waiting.

        The returned Turn must be entered with ``async with``; until it
        exits, every later Turn for the same key waits.
        """
        turn = Turn(self, key, self._tails.get(key))
        self._tails[key] = turn._done
        return turn

    def hold(self, key: Hashable) -> Turn:
        return self.reserve(key)

    def _forget(self, key: Hashable, done: asyncio.Future) -> None:
        if self._tails.get(key) is done:
            del self._tails[key]

    def __len__(self) -> int:
        return len(self._tails)

    def is_locked(self, key: Hashable) -> bool:
        return key in self._tails
