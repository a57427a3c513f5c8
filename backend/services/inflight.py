"""
In-flight lookup registry owned by the media cache orchestrator.

One entry per (track_key, preference) while a provider lookup is running, so
concurrent callers await the same future instead of issuing their own call.
Entries older than their TTL are pruned on access; there is no sweep task.

Scoped to one process. A multi-instance deployment would need a claim record
in the shared store to keep the at-most-one-call guarantee.
"""
import asyncio
import time
from typing import Callable, Dict, Optional, Tuple

from models.media import Preference, ResolveResult

Key = Tuple[str, Preference]


class _Entry:
    __slots__ = ("future", "expires_at")

    def __init__(self, future: "asyncio.Future[ResolveResult]", expires_at: float):
        self.future = future
        self.expires_at = expires_at


class InFlightRegistry:

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock or time.monotonic
        self._entries: Dict[Key, _Entry] = {}
        self._provider_blocked_until = 0.0

    def _prune(self) -> None:
        now = self.clock()
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[key]

    def __len__(self) -> int:
        self._prune()
        return len(self._entries)

    def get(self, key: Key) -> Optional["asyncio.Future[ResolveResult]"]:
        self._prune()
        entry = self._entries.get(key)
        return entry.future if entry else None

    def claim(self, key: Key) -> "asyncio.Future[ResolveResult]":
        """Register the caller as the owner of the lookup for key."""
        future = asyncio.get_running_loop().create_future()
        self._entries[key] = _Entry(future, self.clock() + self.ttl_seconds)
        return future

    def settle(
        self,
        key: Key,
        future: "asyncio.Future[ResolveResult]",
        result: ResolveResult,
        hold_seconds: float = 0.0,
    ) -> None:
        """
        Resolve waiters. With hold_seconds the settled entry stays registered so
        later callers get the same answer without a provider call (quota suppression).
        """
        if not future.done():
            future.set_result(result)
        entry = self._entries.get(key)
        if entry is None or entry.future is not future:
            # Pruned while running, possibly re-claimed by a newer caller
            return
        if hold_seconds > 0:
            entry.expires_at = self.clock() + hold_seconds
        else:
            del self._entries[key]

    # ── Provider-wide suppression ─────────────────────────────────────────────

    def block_provider(self, seconds: float) -> None:
        self._provider_blocked_until = max(self._provider_blocked_until, self.clock() + seconds)

    def provider_blocked(self) -> bool:
        return self.clock() < self._provider_blocked_until

    def clear(self) -> None:
        self._entries.clear()
        self._provider_blocked_until = 0.0
