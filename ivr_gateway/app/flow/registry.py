"""Registry of state machines, used for lookup by name and cross-machine delegation."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from .errors import UndefinedMachineError
from .machine import StateMachine

_LOGGER = logging.getLogger(__name__)


class MachineRegistry:
    """Maps machine names to sealed definitions."""

    def __init__(self, machines: Iterable[StateMachine] = ()) -> None:
        self._machines: dict[str, StateMachine] = {}
        for machine in machines:
            self.register(machine)

    def register(self, machine: StateMachine) -> StateMachine:
        """Seals and registers a machine under its name.

        Raises:
            ValueError: If another machine already uses the name.
        """
        existing = self._machines.get(machine.name)
        if existing is not None and existing is not machine:
            raise ValueError(f"State machine {machine.name!r} is already registered")
        machine.seal()
        self._machines[machine.name] = machine
        _LOGGER.debug(
            "State machine registered.",
            extra={
                "machine": machine.name,
                "initial_state": machine.initial_state,
                "state_count": len(machine.state_names),
                "rule_count": len(machine.rules),
            },
        )
        return machine

    def get(self, name: str) -> StateMachine:
        """Returns the machine registered under `name`.

        Raises:
            UndefinedMachineError: If no machine uses the name.
        """
        try:
            return self._machines[name]
        except KeyError:
            raise UndefinedMachineError(name) from None

    def resolve(self, machine: StateMachine | str) -> StateMachine:
        """Accepts a machine or its name and returns the registered definition.

        Raises:
            ValueError: If a different machine is registered under the same name.
            UndefinedMachineError: If no machine uses the name.
        """
        if isinstance(machine, StateMachine):
            if self._machines.get(machine.name) is not machine:
                self.register(machine)
            return machine
        return self.get(machine)

    def names(self) -> tuple[str, ...]:
        return tuple(self._machines)

    def __contains__(self, name: object) -> bool:
        return name in self._machines

    def __iter__(self) -> Iterator[StateMachine]:
        return iter(tuple(self._machines.values()))

    def __len__(self) -> int:
        return len(self._machines)
