"""In-process machine storage."""

from __future__ import annotations

import threading
from dataclasses import replace

from kloud.protocol import MachineData


class MemoryStorage:
    """Thread-safe dict-backed :class:`kloud.protocol.Storage`.

    Updates without an artifact keep the previously stored one, so a Stop
    does not forget the address a Build recorded.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, MachineData] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def get(self, machine_id: str) -> MachineData | None:
        with self._lock:
            return self._data.get(machine_id)

    def update(self, data: MachineData) -> None:
        with self._lock:
            previous = self._data.get(data.machine_id)
            if data.artifact is None and previous is not None:
                data = replace(data, artifact=previous.artifact)
            self._data[data.machine_id] = data

    def delete(self, machine_id: str) -> None:
        with self._lock:
            self._data.pop(machine_id, None)
