"""Event-bus subscriber that writes call lifecycle events to the application log."""

from __future__ import annotations

import logging
from typing import Any

from ..flow.events import CallEventKind, EventPayload
from ..flow.state import State

_LOGGER = logging.getLogger(__name__)


def _describe(state: Any) -> str | None:
    """Formats a state as ``machine:name`` for log output."""
    if isinstance(state, State):
        return f"{state.machine}:{state.name}"
    return None if state is None else str(state)


class EventLogger:
    """Logs every call event; transition errors are logged as warnings."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or _LOGGER

    def __call__(self, kind: CallEventKind, payload: EventPayload) -> None:
        call_id = payload.get("call_id")
        if kind is CallEventKind.CALL_STARTED:
            self._logger.info(
                "Call %s started in %s.",
                call_id,
                _describe(payload.get("state")),
                extra={"call_id": call_id, "event_kind": kind.value},
            )
        elif kind is CallEventKind.TRANSITIONED:
            self._logger.info(
                "Call %s transitioned %s:%s -> %s.",
                call_id,
                payload.get("from_machine"),
                payload.get("from"),
                _describe(payload.get("to")),
                extra={"call_id": call_id, "event_kind": kind.value},
            )
        elif kind is CallEventKind.TRANSITION_ERROR:
            error = payload.get("error")
            self._logger.warning(
                "Call %s recovered from transition error in state %s: %r",
                call_id,
                payload.get("state_name"),
                error,
                extra={"call_id": call_id, "event_kind": kind.value},
            )
        elif kind is CallEventKind.CALL_COMPLETED:
            self._logger.info(
                "Call %s completed in %s.",
                call_id,
                _describe(payload.get("terminal_state")),
                extra={"call_id": call_id, "event_kind": kind.value},
            )
