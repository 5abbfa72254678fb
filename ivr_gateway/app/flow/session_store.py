"""In-memory call session store with per-call serialization.

Each call id owns its own `asyncio.Lock`; requests for the same call queue on
it in arrival order while unrelated calls never contend. Sessions live for the
process lifetime only. Abandoned calls that never report a final status are
evicted by an optional TTL sweeper.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .state import State

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CallSession:
    """Continuity record linking a call to its machine, state and options.

    `rendered` keeps the markup last returned for the call so a final status
    callback can report the terminal state without resolving it again.
    """

    call_id: str
    machine: str
    state_name: str
    options: dict[str, Any] = field(default_factory=dict)
    rendered: str = ""
    updated_at: float = 0.0

    @classmethod
    def from_state(cls, call_id: str, state: State) -> "CallSession":
        return cls(
            call_id=call_id,
            machine=state.machine,
            state_name=state.name,
            options=dict(state.options),
            rendered=state.rendered,
        )

    def to_state(self, options: Mapping[str, Any] | None = None) -> State:
        """Rebuilds the last rendered state, optionally with newer options."""
        return State(
            machine=self.machine,
            name=self.state_name,
            options=self.options if options is None else options,
            rendered=self.rendered,
        )

    def copy(self) -> "CallSession":
        return CallSession(
            call_id=self.call_id,
            machine=self.machine,
            state_name=self.state_name,
            options=dict(self.options),
            rendered=self.rendered,
            updated_at=self.updated_at,
        )


class _CallLock:
    """Lock for one call id plus the number of requests holding or awaiting it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class CallSessionStore:
    """Concurrent call-id -> session map.

    Callers never receive the stored record itself: `get` returns a copy and
    `upsert` stores one.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initializes an empty store.

        Args:
            ttl_seconds: Idle time after which `evict_stale` drops a session.
                ``0`` disables eviction.
            clock: Monotonic time source, injectable for tests.
        """
        self._sessions: dict[str, CallSession] = {}
        self._locks: dict[str, _CallLock] = {}
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._sweeper_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def call_ids(self) -> tuple[str, ...]:
        return tuple(self._sessions)

    @contextlib.asynccontextmanager
    async def lock(self, call_id: str) -> AsyncIterator[None]:
        """Holds the exclusive scope for one call id.

        Waiters are admitted in arrival order. The lock entry is discarded once
        no request holds or awaits it.
        """
        entry = self._locks.get(call_id)
        if entry is None:
            entry = self._locks[call_id] = _CallLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(call_id) is entry:
                del self._locks[call_id]

    def is_locked(self, call_id: str) -> bool:
        """Returns whether any request currently holds or awaits the call's lock."""
        return call_id in self._locks

    async def get(self, call_id: str) -> CallSession | None:
        """Returns a copy of the session, or ``None`` when the call is unknown."""
        session = self._sessions.get(call_id)
        return session.copy() if session is not None else None

    async def upsert(self, call_id: str, session: CallSession) -> None:
        """Creates or replaces the session for `call_id`."""
        stored = session.copy()
        stored.call_id = call_id
        stored.updated_at = self._clock()
        created = call_id not in self._sessions
        self._sessions[call_id] = stored
        _LOGGER.debug(
            "Call session stored.",
            extra={
                "call_id": call_id,
                "machine": stored.machine,
                "state_name": stored.state_name,
                "created": created,
            },
        )

    async def delete(self, call_id: str) -> bool:
        """Removes the session. Deleting an unknown call id is a no-op.

        Returns:
            ``True`` when a session was removed.
        """
        removed = self._sessions.pop(call_id, None) is not None
        _LOGGER.debug("Call session deleted.", extra={"call_id": call_id, "removed": removed})
        return removed

    def snapshot(self) -> Mapping[str, CallSession]:
        """Returns copies of all sessions, keyed by call id."""
        return {call_id: session.copy() for call_id, session in self._sessions.items()}

    async def evict_stale(self, now: float | None = None) -> list[str]:
        """Drops sessions idle for longer than the configured TTL.

        Calls with a request in flight are skipped.

        Returns:
            Evicted call ids.
        """
        if self._ttl_seconds <= 0:
            return []
        current = self._clock() if now is None else now
        expired = [
            call_id
            for call_id, session in self._sessions.items()
            if current - session.updated_at > self._ttl_seconds and not self.is_locked(call_id)
        ]
        for call_id in expired:
            del self._sessions[call_id]
        if expired:
            _LOGGER.info(
                "Evicted stale call sessions.",
                extra={"evicted_count": len(expired), "ttl_seconds": self._ttl_seconds},
            )
        return expired

    def start_sweeper(self, interval_seconds: float) -> None:
        """Starts the background task that periodically evicts stale sessions."""
        if self._sweeper_task is not None:
            _LOGGER.debug("Session sweeper already running; ignoring start.")
            return
        if self._ttl_seconds <= 0:
            _LOGGER.debug("Session TTL disabled; sweeper not started.")
            return
        self._sweeper_task = asyncio.create_task(self._sweep_loop(interval_seconds))
        _LOGGER.debug(
            "Session sweeper started.",
            extra={"interval_seconds": interval_seconds, "ttl_seconds": self._ttl_seconds},
        )

    async def stop_sweeper(self) -> None:
        """Cancels the sweeper task, if running."""
        task = self._sweeper_task
        self._sweeper_task = None
        if task is None:
            return
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _sweep_loop(self, interval_seconds: float) -> None:
        try:
            while True:
                await asyncio.sleep(interval_seconds)
                await self.evict_stale()
        except asyncio.CancelledError:
            raise
        except Exception:
            _LOGGER.exception("Session sweeper loop failed.")
