from __future__ import annotations

import asyncio
import contextlib
from typing import Any

from ivr_gateway.app.flow import CallSessionStore, StateMachine
from ivr_gateway.app.flow.events import CallEventKind


def run(coro: Any) -> Any:
    return asyncio.run(coro)


class RecordingRenderer:
    """Renderer stand-in that records every directive it is asked to render."""

    def __init__(self) -> None:
        self.calls: list[Any] = []

    def __call__(self, directives: Any) -> str:
        self.calls.append(directives)
        return f"<rendered>{directives}</rendered>"


class RecordingSubscriber:
    """Async event subscriber that keeps every delivered event."""

    def __init__(self) -> None:
        self.events: list[tuple[CallEventKind, dict[str, Any]]] = []

    async def __call__(self, kind: CallEventKind, payload: Any) -> None:
        self.events.append((kind, dict(payload)))

    def kinds(self) -> list[CallEventKind]:
        return [kind for kind, _ in self.events]


class YieldingSessionStore(CallSessionStore):
    """Session store that yields to the event loop on every access.

    Forces concurrent requests to interleave wherever serialization is missing.
    """

    async def get(self, call_id: str):  # noqa: ANN201
        await asyncio.sleep(0)
        session = await super().get(call_id)
        await asyncio.sleep(0)
        return session

    async def upsert(self, call_id: str, session) -> None:  # noqa: ANN001
        await asyncio.sleep(0)
        await super().upsert(call_id, session)


class FakeConnection:
    """Minimal asyncpg-like connection for unit tests."""

    def __init__(self, *, fail: bool = False) -> None:
        self._fail = fail
        self.executed: list[tuple[str, tuple[Any, ...]]] = []

    async def execute(self, sql: str, *args: Any) -> str:
        if self._fail:
            raise ConnectionError("database unavailable")
        self.executed.append((sql, args))
        return "INSERT 0 1"


def connection_factory(conn: FakeConnection):  # noqa: ANN201
    @contextlib.asynccontextmanager
    async def factory():  # noqa: ANN202
        yield conn

    return factory


def build_greeting_machine(name: str = "ivr") -> StateMachine:
    """Language menu used across tests.

    ``greeting`` + Digits=1 renders ``english``; anything else re-renders
    ``greeting`` with ``error=invalid``.
    """
    machine = StateMachine(name, initial_state="greeting")

    @machine.state("greeting")
    def greeting(call_input, options):  # noqa: ANN001, ANN202
        return f"greeting error={options.get('error')}"

    @machine.state("english")
    def english(call_input, options):  # noqa: ANN001, ANN202
        return "english"

    machine.goto("greeting", "english", input={"Digits": "1"})
    machine.goto("greeting", "greeting", updates={"error": "invalid"})
    return machine


def twilio_input(call_id: str = "CA1", status: str = "in-progress", **fields: str) -> dict[str, str]:
    return {"CallSid": call_id, "CallStatus": status, **fields}
