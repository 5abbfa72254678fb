"""Lifecycle event kinds published by the call processor."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any, Union


class CallEventKind(str, Enum):
    """Kinds of call lifecycle events.

    Payload keys per kind:
        call_started: ``call_id``, ``state``.
        transitioned: ``call_id``, ``from`` and ``from_machine`` (names of the
            state left), ``to`` (the entered `State`) plus its ``to_machine``
            and ``to_state`` names.
        transition_error: ``call_id``, ``state_name``, ``error``, ``state``.
        call_completed: ``call_id``, ``terminal_state``.
    """

    CALL_STARTED = "call_started"
    TRANSITIONED = "transitioned"
    TRANSITION_ERROR = "transition_error"
    CALL_COMPLETED = "call_completed"


EventPayload = Mapping[str, Any]

# Subscribers receive ``(kind, payload)``; they may be plain or async callables.
EventHandler = Callable[[CallEventKind, EventPayload], Union[None, Awaitable[None]]]
