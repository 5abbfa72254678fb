"""Best-effort database recorder for call lifecycle events."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from ..flow.events import CallEventKind, EventPayload
from ..flow.state import State
from .db import get_conn

_LOGGER = logging.getLogger(__name__)

ConnectionFactory = Callable[[], AbstractAsyncContextManager[Any]]

_INSERT_CALL_EVENT = """
    INSERT INTO call_events (call_id, event_kind, machine, state_name, payload_json)
    VALUES ($1, $2, $3, $4, $5)
"""


def _jsonable(value: Any) -> Any:
    """Converts event payload values into JSON-friendly structures."""
    if isinstance(value, State):
        return {"machine": value.machine, "name": value.name, "options": dict(value.options)}
    if isinstance(value, BaseException):
        return {"type": type(value).__name__, "message": str(value)}
    return value


def _to_jsonb(payload: EventPayload) -> str:
    """Serializes an event payload for JSONB SQL parameters."""
    return json.dumps({key: _jsonable(value) for key, value in payload.items()}, default=str)


def _state_of(kind: CallEventKind, payload: EventPayload) -> State | None:
    key = {
        CallEventKind.CALL_STARTED: "state",
        CallEventKind.TRANSITIONED: "to",
        CallEventKind.TRANSITION_ERROR: "state",
        CallEventKind.CALL_COMPLETED: "terminal_state",
    }[kind]
    state = payload.get(key)
    return state if isinstance(state, State) else None


class DbEventRecorder:
    """Writes each call event as a `call_events` row without breaking call flow.

    Write failures are logged and swallowed because observability must never
    interrupt an active phone call.
    """

    def __init__(self, connection_factory: ConnectionFactory = get_conn) -> None:
        self._connection_factory = connection_factory

    async def __call__(self, kind: CallEventKind, payload: EventPayload) -> None:
        state = _state_of(kind, payload)
        args = (
            str(payload.get("call_id") or ""),
            kind.value,
            state.machine if state else None,
            state.name if state else payload.get("state_name"),
            _to_jsonb(payload),
        )
        _LOGGER.debug(
            "Executing call event DB write.",
            extra={"event_kind": kind.value, "call_id": args[0]},
        )
        try:
            async with self._connection_factory() as conn:
                await conn.execute(_INSERT_CALL_EVENT, *args)
        except Exception:
            _LOGGER.debug(
                "Call event write failed for call_id=%s event_kind=%s",
                args[0],
                kind.value,
                exc_info=True,
            )
