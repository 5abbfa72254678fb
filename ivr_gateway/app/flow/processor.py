"""Call processor: ties one provider request to a call session and drives it.

For each request the processor takes the call's exclusive scope, loads or
creates the session, runs exactly one state resolution or transition, stores
the result, and on a final call status fires the completion hook and forgets
the call. Sessions are only written after a transition fully succeeds.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from .errors import InvalidInputError
from .event_bus import EventBus
from .events import CallEventKind
from .machine import StateMachine
from .rule_engine import RuleEngine
from .session_store import CallSession, CallSessionStore
from .state import State
from .types import CallInput, Options

_LOGGER = logging.getLogger(__name__)

DEFAULT_COMPLETED_STATUSES = frozenset({"completed", "busy", "failed", "no-answer", "canceled"})


class CallProcessor:
    """Processes provider requests against registered state machines."""

    def __init__(
        self,
        *,
        engine: RuleEngine,
        store: CallSessionStore,
        events: EventBus | None = None,
        completed_statuses: Iterable[str] = DEFAULT_COMPLETED_STATUSES,
        call_id_field: str = "CallSid",
        call_status_field: str = "CallStatus",
    ) -> None:
        """Initializes the processor.

        Args:
            engine: Rule engine resolving states and transitions.
            store: Session store giving each call continuity.
            events: Optional bus receiving lifecycle events.
            completed_statuses: Call statuses that end a call.
            call_id_field: Input field carrying the call identifier.
            call_status_field: Input field carrying the call status.
        """
        self._engine = engine
        self._store = store
        self._events = events
        self._completed_statuses = frozenset(status.strip().lower() for status in completed_statuses)
        self._call_id_field = call_id_field
        self._call_status_field = call_status_field

    @property
    def store(self) -> CallSessionStore:
        return self._store

    async def process(
        self,
        machine: StateMachine | str,
        call_input: CallInput,
        options: Options | None = None,
    ) -> State:
        """Handles one request and returns the state whose markup answers it.

        Args:
            machine: Entry machine (or its registered name) for new calls.
            call_input: Provider request fields.
            options: Application options; they win over stored options.

        Raises:
            InvalidInputError: If the call id is missing.
            FatalTransitionError: If a transition failed unrecoverably. The
                session keeps its last stored state.
        """
        call_id = self._extract_call_id(call_input)
        status = str(call_input.get(self._call_status_field) or "").strip().lower()
        call_options: dict[str, Any] = dict(options or {})
        entry_machine = self._engine.machine(machine)

        async with self._store.lock(call_id):
            session = await self._store.get(call_id)
            if session is None:
                return await self._start_call(call_id, status, entry_machine, call_input, call_options)
            return await self._continue_call(session, status, call_input, call_options)

    def is_completed_status(self, status: str) -> bool:
        return status.strip().lower() in self._completed_statuses

    async def _start_call(
        self,
        call_id: str,
        status: str,
        machine: StateMachine,
        call_input: CallInput,
        options: dict[str, Any],
    ) -> State:
        state = self._engine.resolve_state(machine, machine.initial_state, call_input, options)
        _LOGGER.info(
            "Call started.",
            extra={"call_id": call_id, "machine": state.machine, "state_name": state.name},
        )
        self._publish(CallEventKind.CALL_STARTED, {"call_id": call_id, "state": state})

        if self.is_completed_status(status):
            await self._complete_call(call_id, state, call_input, options)
            return state

        await self._store.upsert(call_id, CallSession.from_state(call_id, state))
        return state

    async def _continue_call(
        self,
        session: CallSession,
        status: str,
        call_input: CallInput,
        options: dict[str, Any],
    ) -> State:
        call_id = session.call_id
        merged = {**session.options, **options}

        if self.is_completed_status(status):
            # A finished call gets no transition; the last stored state is terminal.
            state = session.to_state(merged)
            await self._complete_call(call_id, state, call_input, merged)
            return state

        active_machine = self._engine.machine(session.machine)
        outcome = self._engine.resolve_transition(
            active_machine,
            session.state_name,
            call_input,
            merged,
        )
        state = outcome.state
        if outcome.recovered:
            self._publish(
                CallEventKind.TRANSITION_ERROR,
                {
                    "call_id": call_id,
                    "state_name": session.state_name,
                    "error": outcome.error,
                    "state": state,
                },
            )
        else:
            self._publish(
                CallEventKind.TRANSITIONED,
                {
                    "call_id": call_id,
                    "from": session.state_name,
                    "from_machine": session.machine,
                    "to": state,
                    "to_machine": state.machine,
                    "to_state": state.name,
                },
            )

        await self._store.upsert(call_id, CallSession.from_state(call_id, state))
        _LOGGER.debug(
            "Call transitioned.",
            extra={
                "call_id": call_id,
                "from_state": session.state_name,
                "to_machine": state.machine,
                "to_state": state.name,
                "recovered": outcome.recovered,
            },
        )
        return state

    async def _complete_call(
        self,
        call_id: str,
        state: State,
        call_input: CallInput,
        options: Mapping[str, Any],
    ) -> None:
        """Runs the completion hook of the state's machine and forgets the call."""
        try:
            machine = self._engine.machine(state.machine)
            result = machine.complete_hook(state, call_input, options)
            if inspect.isawaitable(result):
                await result
        finally:
            await self._store.delete(call_id)

        _LOGGER.info(
            "Call completed.",
            extra={"call_id": call_id, "machine": state.machine, "state_name": state.name},
        )
        self._publish(CallEventKind.CALL_COMPLETED, {"call_id": call_id, "terminal_state": state})

    def _extract_call_id(self, call_input: CallInput) -> str:
        if not isinstance(call_input, Mapping):
            raise InvalidInputError("Call input must be a mapping of request fields")
        call_id = call_input.get(self._call_id_field)
        if not isinstance(call_id, str) or not call_id.strip():
            raise InvalidInputError(f"Call input is missing {self._call_id_field!r}")
        return call_id.strip()

    def _publish(self, kind: CallEventKind, payload: dict[str, Any]) -> None:
        if self._events is not None:
            self._events.publish(kind, payload)
