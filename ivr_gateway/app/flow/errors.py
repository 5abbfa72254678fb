"""Error taxonomy for call-flow processing."""

from __future__ import annotations


class CallFlowError(Exception):
    """Base class for all call-flow failures."""


class InvalidInputError(CallFlowError):
    """Raised when an inbound request cannot be tied to a call."""


class UndefinedStateError(CallFlowError):
    """Raised when a machine has no resolver (and no fallback) for a state."""

    def __init__(self, machine: str, state_name: str) -> None:
        super().__init__(f"State machine {machine!r} does not define state {state_name!r}")
        self.machine = machine
        self.state_name = state_name


class UndefinedTransitionError(CallFlowError):
    """Raised when no transition rule matches the current state and input."""

    def __init__(self, machine: str, state_name: str) -> None:
        super().__init__(
            f"State machine {machine!r} has no transition rule matching state {state_name!r}"
        )
        self.machine = machine
        self.state_name = state_name


class UndefinedMachineError(CallFlowError):
    """Raised when a machine name is not present in the registry."""

    def __init__(self, machine: str) -> None:
        super().__init__(f"State machine {machine!r} is not registered")
        self.machine = machine


class FatalTransitionError(CallFlowError):
    """Raised when a transition failed and the recovery hook could not recover.

    Attributes:
        machine: Machine whose transition failed.
        state_name: State the call was in when the transition started.
        error: The transition error handed to the recovery hook. The hook's own
            failure, when different, is chained as ``__cause__``.
    """

    def __init__(self, machine: str, state_name: str, error: BaseException) -> None:
        super().__init__(
            f"Unrecoverable transition error in {machine!r} from state {state_name!r}: {error}"
        )
        self.machine = machine
        self.state_name = state_name
        self.error = error
