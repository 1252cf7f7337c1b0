"""Canonical machine lifecycle states.

Every provider speaks its own status vocabulary ("ACTIVE", "BUILD", "off",
...). :func:`to_state` folds any of them into :class:`MachineState`, falling
back to ``Unknown`` with a warning instead of failing.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum

from kloud.observability.logger import logger

log = logger.bind(component="machinestate")


class MachineState(StrEnum):
    """Lifecycle state of a machine, independent of any provider."""

    UNKNOWN = "Unknown"
    BUILDING = "Building"
    RUNNING = "Running"
    STARTING = "Starting"
    STOPPING = "Stopping"
    STOPPED = "Stopped"
    REBOOTING = "Rebooting"
    TERMINATING = "Terminating"
    TERMINATED = "Terminated"

    @property
    def in_progress(self) -> bool:
        return self in _IN_PROGRESS


_IN_PROGRESS = frozenset({
    MachineState.BUILDING,
    MachineState.STARTING,
    MachineState.STOPPING,
    MachineState.REBOOTING,
    MachineState.TERMINATING,
})

_CANONICAL: dict[str, MachineState] = {state.value.lower(): state for state in MachineState}

type StatusVocabulary = Mapping[str, MachineState]


def to_state(status: object, vocabulary: StatusVocabulary | None = None) -> MachineState:
    """Map a provider status string to a MachineState.

    Lookup order: exact key in ``vocabulary``, case-insensitive key in
    ``vocabulary``, then the canonical state names. Anything else is
    ``Unknown`` and logged as a warning.
    """
    text = status if isinstance(status, str) else str(status)
    vocabulary = vocabulary or {}

    if (state := vocabulary.get(text)) is not None:
        return state

    folded = text.strip().lower()
    for key, state in vocabulary.items():
        if key.lower() == folded:
            return state

    if (state := _CANONICAL.get(folded)) is not None:
        return state

    log.warning("Unknown provider status {status!r}, mapping to Unknown", status=text)
    return MachineState.UNKNOWN


__all__ = ["MachineState", "StatusVocabulary", "to_state"]
