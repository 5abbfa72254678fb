"""State machine definitions: state resolvers, ordered transition rules and hooks.

A machine is declared once at import time and sealed when it is registered::

    menu = StateMachine("main_menu", initial_state="greeting")

    @menu.state("greeting")
    def greeting(call_input, options):
        return Gather(prompts=(Say("Press 1 for English."),), num_digits=1)

    menu.goto("greeting", "english", input={"Digits": "1"})
    menu.goto("greeting", "greeting", updates={"error": "invalid"})

Rules are evaluated top to bottom and the first match wins. A rule without
input/options constraints is a catch-all for its state and belongs last.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .state import Delegate, Goto, NextAction, State
from .types import CallInput, DefaultStateResolver, Options, RulePredicate, StateResolver

_LOGGER = logging.getLogger(__name__)

RuleAction = Callable[[CallInput, Options], NextAction]
CompleteHook = Callable[[State, CallInput, Options], Any]
TransitionErrorHook = Callable[[BaseException, str, CallInput, Options], "State | NextAction"]

_MISSING = object()


@dataclass(slots=True, frozen=True)
class TransitionRule:
    """One ordered (pattern -> action) entry of a machine.

    Attributes:
        state_name: State the call must currently be in.
        action: Callable producing the next-action when the rule is selected.
        input_equals: Input fields that must equal the given values.
        input_present: Input fields that must be present and non-empty.
        options_equals: Option keys that must equal the given values.
        options_present: Option keys that must be present.
        when: Optional extra predicate over ``(call_input, options)``.
    """

    state_name: str
    action: RuleAction
    input_equals: Mapping[str, Any] = field(default_factory=dict)
    input_present: tuple[str, ...] = ()
    options_equals: Mapping[str, Any] = field(default_factory=dict)
    options_present: tuple[str, ...] = ()
    when: RulePredicate | None = None

    @property
    def is_catch_all(self) -> bool:
        return not (
            self.input_equals
            or self.input_present
            or self.options_equals
            or self.options_present
            or self.when
        )

    def matches(self, state_name: str, call_input: CallInput, options: Options) -> bool:
        """Returns whether this rule applies. Never runs the action."""
        if state_name != self.state_name:
            return False
        for key, expected in self.input_equals.items():
            if call_input.get(key, _MISSING) != expected:
                return False
        for key in self.input_present:
            if call_input.get(key) in (None, ""):
                return False
        for key, expected in self.options_equals.items():
            if options.get(key, _MISSING) != expected:
                return False
        for key in self.options_present:
            if key not in options:
                return False
        if self.when is not None and not self.when(call_input, options):
            return False
        return True


def _do_nothing(state: State, call_input: CallInput, options: Options) -> None:
    del state, call_input, options


def _reraise(error: BaseException, state_name: str, call_input: CallInput, options: Options) -> State:
    del state_name, call_input, options
    raise error


class StateMachine:
    """Named state-machine definition consumed by the rule engine."""

    def __init__(self, name: str, *, initial_state: str) -> None:
        if not name:
            raise ValueError("State machine name must not be empty")
        self.name = name
        self.initial_state = initial_state
        self._resolvers: dict[str, StateResolver] = {}
        self._default_resolver: DefaultStateResolver | None = None
        self._rules: list[TransitionRule] = []
        self._complete_hook: CompleteHook = _do_nothing
        self._transition_error_hook: TransitionErrorHook = _reraise
        self._sealed = False

    def __repr__(self) -> str:
        return f"StateMachine({self.name!r}, initial_state={self.initial_state!r})"

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def rules(self) -> tuple[TransitionRule, ...]:
        return tuple(self._rules)

    @property
    def state_names(self) -> tuple[str, ...]:
        return tuple(self._resolvers)

    @property
    def complete_hook(self) -> CompleteHook:
        return self._complete_hook

    @property
    def transition_error_hook(self) -> TransitionErrorHook:
        return self._transition_error_hook

    def seal(self) -> None:
        """Freezes the definition; called by the registry on registration."""
        self._sealed = True

    def _ensure_open(self) -> None:
        if self._sealed:
            raise RuntimeError(f"State machine {self.name!r} is sealed and cannot be modified")

    def state(self, name: str) -> Callable[[StateResolver], StateResolver]:
        """Registers the resolver that builds directives for state `name`."""

        def decorator(resolver: StateResolver) -> StateResolver:
            self._ensure_open()
            if name in self._resolvers:
                raise ValueError(f"State {name!r} is already defined on {self.name!r}")
            self._resolvers[name] = resolver
            return resolver

        return decorator

    def default_state(self, resolver: DefaultStateResolver) -> DefaultStateResolver:
        """Registers the fallback resolver used for state names without one."""
        self._ensure_open()
        self._default_resolver = resolver
        return resolver

    def transition(
        self,
        state_name: str,
        *,
        input: Mapping[str, Any] | None = None,  # noqa: A002
        present: Iterable[str] = (),
        options: Mapping[str, Any] | None = None,
        options_present: Iterable[str] = (),
        when: RulePredicate | None = None,
    ) -> Callable[[RuleAction], RuleAction]:
        """Registers a transition rule whose action is the decorated callable."""

        def decorator(action: RuleAction) -> RuleAction:
            self._add_rule(
                TransitionRule(
                    state_name=state_name,
                    action=action,
                    input_equals=dict(input or {}),
                    input_present=tuple(present),
                    options_equals=dict(options or {}),
                    options_present=tuple(options_present),
                    when=when,
                )
            )
            return action

        return decorator

    def goto(
        self,
        state_name: str,
        target: str,
        *,
        updates: Mapping[str, Any] | None = None,
        **pattern: Any,
    ) -> None:
        """Declares a rule that renders `target` with optional option updates."""
        next_action = Goto(target, dict(updates or {}))
        self.transition(state_name, **pattern)(lambda call_input, options: next_action)

    def delegate(
        self,
        state_name: str,
        machine: str,
        target: str | None = None,
        *,
        updates: Mapping[str, Any] | None = None,
        **pattern: Any,
    ) -> None:
        """Declares a rule that hands the call to another registered machine."""
        next_action = Delegate(machine, target, dict(updates or {}))
        self.transition(state_name, **pattern)(lambda call_input, options: next_action)

    def on_complete(self, hook: CompleteHook) -> CompleteHook:
        """Registers the hook invoked once when a call on this machine ends."""
        self._ensure_open()
        self._complete_hook = hook
        return hook

    def on_transition_error(self, hook: TransitionErrorHook) -> TransitionErrorHook:
        """Registers the recovery hook for failed transitions.

        The hook receives ``(error, state_name, call_input, options)`` and
        returns a `State`, `Goto` or `Delegate`.
        """
        self._ensure_open()
        self._transition_error_hook = hook
        return hook

    def resolver_for(self, state_name: str) -> StateResolver | None:
        """Returns the exact resolver for a state name, if defined."""
        return self._resolvers.get(state_name)

    @property
    def default_resolver(self) -> DefaultStateResolver | None:
        return self._default_resolver

    def match_rule(
        self,
        state_name: str,
        call_input: CallInput,
        options: Options,
    ) -> TransitionRule | None:
        """Returns the first rule, in declaration order, matching the request."""
        for rule in self._rules:
            if rule.matches(state_name, call_input, options):
                return rule
        return None

    def _add_rule(self, rule: TransitionRule) -> None:
        self._ensure_open()
        shadowing = next(
            (
                existing
                for existing in self._rules
                if existing.state_name == rule.state_name and existing.is_catch_all
            ),
            None,
        )
        if shadowing is not None:
            _LOGGER.warning(
                "Transition rule declared after a catch-all is unreachable.",
                extra={"machine": self.name, "state_name": rule.state_name},
            )
        self._rules.append(rule)
