"""Value types produced and consumed by the rule engine."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Union


def _frozen_mapping(value: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Copies a mapping into a read-only view."""
    return MappingProxyType(dict(value or {}))


@dataclass(slots=True, frozen=True)
class State:
    """What the caller is currently being shown and where the call sits.

    States are only built by the rule engine, so `rendered` is always the
    renderer's output for this state's resolver.

    Attributes:
        machine: Name of the machine that defines the state.
        name: State name within that machine.
        options: Read-only snapshot of the call options the state was
            resolved with.
        rendered: Markup returned to the telephony provider.
    """

    machine: str
    name: str
    options: Mapping[str, Any]
    rendered: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "options", _frozen_mapping(self.options))


@dataclass(slots=True, frozen=True)
class Goto:
    """Next-action that renders a state of the current machine.

    `updates` are merged over the current options.
    """

    state_name: str
    updates: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Delegate:
    """Next-action that hands the call to another registered machine.

    Attributes:
        machine: Registered name of the machine taking over.
        state_name: State to render; ``None`` renders its initial state.
        updates: Options merged over the current options.
    """

    machine: str
    state_name: str | None = None
    updates: Mapping[str, Any] = field(default_factory=dict)


NextAction = Union[Goto, Delegate]


@dataclass(slots=True, frozen=True)
class TransitionOutcome:
    """Result of one transition: the new state and the error it recovered from."""

    state: State
    error: BaseException | None = None

    @property
    def recovered(self) -> bool:
        return self.error is not None
