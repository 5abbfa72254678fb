"""Rule engine that resolves states and drives transitions for state machines.

The engine owns the transition boundary: any failure while selecting or
executing a transition rule is routed to the machine's recovery hook, and only
a failing hook escapes as `FatalTransitionError`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from ..twilio.twiml import render_twiml
from .errors import FatalTransitionError, UndefinedStateError, UndefinedTransitionError
from .machine import StateMachine
from .registry import MachineRegistry
from .state import Delegate, Goto, State, TransitionOutcome
from .types import CallInput, Options, Renderer

_LOGGER = logging.getLogger(__name__)


class RuleEngine:
    """Resolves (machine, state, input, options) into rendered `State` values."""

    def __init__(self, registry: MachineRegistry, *, renderer: Renderer = render_twiml) -> None:
        """Initializes the engine.

        Args:
            registry: Machines available for lookup and delegation.
            renderer: Markup collaborator that turns resolver directives into
                the provider response body.
        """
        self._registry = registry
        self._renderer = renderer

    @property
    def registry(self) -> MachineRegistry:
        return self._registry

    def machine(self, machine: StateMachine | str) -> StateMachine:
        """Returns the registered definition for a machine or machine name."""
        return self._registry.resolve(machine)

    def resolve_state(
        self,
        machine: StateMachine | str,
        state_name: str,
        call_input: CallInput,
        options: Options,
    ) -> State:
        """Renders `state_name` of `machine`.

        Uses the exact resolver for the state, else the machine's fallback
        resolver.

        Raises:
            UndefinedStateError: If neither resolver exists.
        """
        definition = self.machine(machine)
        resolver = definition.resolver_for(state_name)
        if resolver is not None:
            directives = resolver(call_input, options)
        elif definition.default_resolver is not None:
            _LOGGER.debug(
                "Using fallback resolver for state.",
                extra={"machine": definition.name, "state_name": state_name},
            )
            directives = definition.default_resolver(state_name, call_input, options)
        else:
            raise UndefinedStateError(definition.name, state_name)

        return State(
            machine=definition.name,
            name=state_name,
            options=options,
            rendered=self._renderer(directives),
        )

    def resolve_transition(
        self,
        machine: StateMachine | str,
        state_name: str,
        call_input: CallInput,
        options: Options,
    ) -> TransitionOutcome:
        """Runs the first matching transition rule from `state_name`.

        Returns:
            The new state. When the rule failed (or none matched) the state
            comes from the recovery hook and `outcome.error` holds the failure.

        Raises:
            FatalTransitionError: If the recovery hook itself fails.
        """
        definition = self.machine(machine)
        try:
            rule = definition.match_rule(state_name, call_input, options)
            if rule is None:
                raise UndefinedTransitionError(definition.name, state_name)
            state = self._follow(definition, rule.action(call_input, options), call_input, options)
        except Exception as error:
            _LOGGER.warning(
                "Transition failed; invoking recovery hook.",
                extra={
                    "machine": definition.name,
                    "state_name": state_name,
                    "error_type": type(error).__name__,
                },
                exc_info=not isinstance(error, UndefinedTransitionError),
            )
            recovered = self._recover(definition, error, state_name, call_input, options)
            return TransitionOutcome(state=recovered, error=error)

        _LOGGER.debug(
            "Transition resolved.",
            extra={
                "machine": definition.name,
                "from_state": state_name,
                "to_machine": state.machine,
                "to_state": state.name,
            },
        )
        return TransitionOutcome(state=state)

    def _recover(
        self,
        machine: StateMachine,
        error: Exception,
        state_name: str,
        call_input: CallInput,
        options: Options,
    ) -> State:
        """Converts a transition failure into the recovery hook's state."""
        try:
            result = machine.transition_error_hook(error, state_name, call_input, options)
            if isinstance(result, State):
                return result
            return self._follow(machine, result, call_input, options)
        except Exception as hook_error:
            _LOGGER.error(
                "Transition recovery hook failed.",
                extra={
                    "machine": machine.name,
                    "state_name": state_name,
                    "error_type": type(hook_error).__name__,
                },
            )
            raise FatalTransitionError(machine.name, state_name, error) from hook_error

    def _follow(
        self,
        machine: StateMachine,
        next_action: Any,
        call_input: CallInput,
        options: Options,
    ) -> State:
        """Executes a next-action into a rendered state."""
        if isinstance(next_action, Goto):
            return self.resolve_state(
                machine,
                next_action.state_name,
                call_input,
                _merge(options, next_action.updates),
            )
        if isinstance(next_action, Delegate):
            target = self._registry.get(next_action.machine)
            _LOGGER.debug(
                "Delegating call to another state machine.",
                extra={"from_machine": machine.name, "to_machine": target.name},
            )
            return self.resolve_state(
                target,
                next_action.state_name or target.initial_state,
                call_input,
                _merge(options, next_action.updates),
            )
        raise TypeError(
            f"Transition actions must return Goto or Delegate, got {type(next_action).__name__}"
        )


def _merge(options: Options, updates: Mapping[str, Any]) -> dict[str, Any]:
    return {**options, **updates}
