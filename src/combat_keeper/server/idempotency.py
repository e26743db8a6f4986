"""
Idempotency registry for remote combat functions.

Each idempotency key gets its own lock and, once the handler succeeds, a
cached response with a TTL. A second delivery of the same key waits for
the first to finish and then replays its response instead of running the
handler again. Failed attempts cache nothing, so a retry after a
transient failure runs the handler for real.

A key is bound to the function name and a fingerprint of the request
body; reusing a key for a different request is rejected.
"""

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ..exceptions import IdempotencyConflictError

logger = logging.getLogger("combat-keeper.server")


@dataclass
class IdempotencyEntry:
    """Cached outcome of one idempotency key.

    Attributes:
        key: Idempotency key supplied by the client.
        function: Remote function name the key was used with.
        fingerprint: Hash of the canonical request body.
        response: Response body returned to the first caller.
        created_at: Monotonic timestamp of the first success.
        replays: Number of times the response was replayed.
    """
    key: str
    function: str
    fingerprint: str
    response: dict[str, Any]
    created_at: float
    replays: int = 0


@dataclass
class IdempotencyStats:
    entries: int
    executions: int
    replays: int
    conflicts: int
    expired: int = 0
    keys_in_flight: list[str] = field(default_factory=list)


def fingerprint(function: str, payload: dict[str, Any]) -> str:
    canonical = json.dumps({"function": function, "payload": payload}, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyRegistry:
    """Collapses duplicate deliveries of the same logical action."""

    def __init__(self, ttl_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, IdempotencyEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}
        self._executions = 0
        self._replays = 0
        self._conflicts = 0
        self._expired = 0

    def _purge_expired(self) -> None:
        now = self._clock()
        stale = [k for k, e in self._entries.items() if now - e.created_at > self.ttl_seconds]
        for key in stale:
            del self._entries[key]
        self._expired += len(stale)

    def _acquire(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _release(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    def _check(self, entry: IdempotencyEntry, function: str, print_: str) -> None:
        if entry.function != function or entry.fingerprint != print_:
            self._conflicts += 1
            raise IdempotencyConflictError(
                f"Idempotency key '{entry.key}' was already used for a different request",
                details={"key": entry.key, "function": entry.function},
            )

    async def run(
        self,
        key: str | None,
        function: str,
        payload: dict[str, Any],
        handler: Callable[[], Awaitable[dict[str, Any]]],
    ) -> tuple[dict[str, Any], bool]:
        """Run a handler at most once per key.

        Args:
            key: Idempotency key, or None to run unconditionally.
            function: Remote function name.
            payload: Decoded request body, used for the fingerprint.
            handler: Coroutine factory producing the response body.

        Returns:
            Tuple of (response_body, replayed).

        Raises:
            IdempotencyConflictError: If the key was used for another request.
        """
        if not key:
            self._executions += 1
            return await handler(), False

        self._purge_expired()
        print_ = fingerprint(function, payload)

        # Locks live only while a call for the key is running or waiting.
        lock = self._acquire(key)
        try:
            async with lock:
                entry = self._entries.get(key)
                if entry is not None:
                    self._check(entry, function, print_)
                    entry.replays += 1
                    self._replays += 1
                    logger.info(f"Replaying {function} for idempotency key {key}")
                    return entry.response, True

                self._executions += 1
                response = await handler()
                self._entries[key] = IdempotencyEntry(
                    key=key,
                    function=function,
                    fingerprint=print_,
                    response=response,
                    created_at=self._clock(),
                )
                return response, False
        finally:
            self._release(key)

    def get_stats(self) -> IdempotencyStats:
        return IdempotencyStats(
            entries=len(self._entries),
            executions=self._executions,
            replays=self._replays,
            conflicts=self._conflicts,
            expired=self._expired,
            keys_in_flight=[k for k, lock in self._locks.items() if lock.locked()],
        )
