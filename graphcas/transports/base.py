"""Transport abstraction: an append-only, content-addressed key/value store."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List

from graphcas.errors import ObjectNotFoundError


class Transport(ABC):
    """
    Content-addressed object store.

    An id maps to exactly one payload for the lifetime of the store, so
    ``put`` of an id that is already present is a no-op. There is no update
    or delete.
    """

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def put(self, object_id: str, payload: bytes) -> None:
        """Store ``payload`` under ``object_id``; idempotent."""

    @abstractmethod
    def get(self, object_id: str) -> bytes:
        """Return the payload, or raise ObjectNotFoundError."""

    @abstractmethod
    def has(self, object_id: str) -> bool:
        """Whether ``object_id`` is stored."""

    def has_many(self, object_ids: Iterable[str]) -> Dict[str, bool]:
        return {oid: self.has(oid) for oid in object_ids}

    def get_many(self, object_ids: Iterable[str]) -> Dict[str, bytes]:
        """Fetch several ids; ids that are not stored are left out."""
        found: Dict[str, bytes] = {}
        for oid in object_ids:
            try:
                found[oid] = self.get(oid)
            except ObjectNotFoundError:
                continue
        return found

    def writer(self) -> "TransportWriter":
        """Writer scoped to a single Send."""
        return DirectWriter(self)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class TransportWriter(ABC):
    """
    Per-Send write session.

    ``put`` may buffer; nothing written through a writer is durable until
    ``flush`` has returned. Writers are safe to call from several threads.
    """

    def __init__(self, transport: Transport):
        self.transport = transport

    @abstractmethod
    def put(self, object_id: str, payload: bytes) -> None:
        ...

    def flush(self) -> None:
        pass

    def __enter__(self) -> "TransportWriter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        # A failed Send must not push further batches.
        if exc_type is None:
            self.flush()


class DirectWriter(TransportWriter):
    """Writer that passes every put straight to the transport."""

    def put(self, object_id: str, payload: bytes) -> None:
        self.transport.put(object_id, payload)


def check_payload(payload: bytes) -> bytes:
    if not isinstance(payload, (bytes, bytearray)):
        raise TypeError(f"payload must be bytes, got {type(payload).__name__}")
    return bytes(payload)


def chunked(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]

