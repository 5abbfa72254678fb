"""State-machine call flows: rule engine, session store, processor and event bus."""

from .errors import (
    CallFlowError,
    FatalTransitionError,
    InvalidInputError,
    UndefinedMachineError,
    UndefinedStateError,
    UndefinedTransitionError,
)
from .event_bus import EventBus, Subscription
from .events import CallEventKind, EventHandler, EventPayload
from .machine import StateMachine, TransitionRule
from .processor import DEFAULT_COMPLETED_STATUSES, CallProcessor
from .registry import MachineRegistry
from .rule_engine import RuleEngine
from .session_store import CallSession, CallSessionStore
from .state import Delegate, Goto, NextAction, State, TransitionOutcome
from .types import CallInput, Options, Renderer

__all__ = [
    "CallEventKind",
    "CallFlowError",
    "CallInput",
    "CallProcessor",
    "CallSession",
    "CallSessionStore",
    "DEFAULT_COMPLETED_STATUSES",
    "Delegate",
    "EventBus",
    "EventHandler",
    "EventPayload",
    "FatalTransitionError",
    "Goto",
    "InvalidInputError",
    "MachineRegistry",
    "NextAction",
    "Options",
    "Renderer",
    "RuleEngine",
    "State",
    "StateMachine",
    "Subscription",
    "TransitionOutcome",
    "TransitionRule",
    "UndefinedMachineError",
    "UndefinedStateError",
    "UndefinedTransitionError",
]
