"""Process-local transport, used for caching and tests."""

from __future__ import annotations

import threading
from types import MappingProxyType
from typing import Dict, Mapping

from graphcas.errors import ObjectNotFoundError
from graphcas.transports.base import Transport, check_payload


class MemoryTransport(Transport):
    """
    Dict-backed transport.

    ``objects`` is a read-only view of everything stored; ``writes`` counts
    puts that actually stored something (repeat puts of an id do not count).
    """

    def __init__(self, name: str = "memory"):
        super().__init__(name)
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.writes = 0

    @property
    def objects(self) -> Mapping[str, bytes]:
        return MappingProxyType(self._objects)

    def put(self, object_id: str, payload: bytes) -> None:
        payload = check_payload(payload)
        with self._lock:
            if object_id in self._objects:
                return
            self._objects[object_id] = payload
            self.writes += 1

    def get(self, object_id: str) -> bytes:
        with self._lock:
            try:
                return self._objects[object_id]
            except KeyError:
                raise ObjectNotFoundError(self.name, object_id) from None

    def has(self, object_id: str) -> bool:
        with self._lock:
            return object_id in self._objects

    def __len__(self) -> int:
        return len(self._objects)
