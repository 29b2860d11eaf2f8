"""Error kinds raised by the graphcas engine.

Every error derives from :class:`GraphCasError` so a host application can
catch the whole family at its boundary. Transport errors carry the transport
name and the object id involved, and chain the underlying I/O failure as
``__cause__``.
"""

from __future__ import annotations

from typing import Optional


class GraphCasError(Exception):
    """Base class for all graphcas errors."""
    pass


class UnsupportedType(GraphCasError, TypeError):
    """Raised when a value cannot be represented in the canonical encoding."""

    def __init__(self, value: object, path: str = ""):
        self.value = value
        self.path = path
        where = f" at {path}" if path else ""
        super().__init__(f"Unsupported value of type {type(value).__name__}{where}")


class CyclicGraphError(GraphCasError):
    """Raised when decomposition revisits a node instance on the current path."""

    def __init__(self, key_path: str = ""):
        self.key_path = key_path
        where = f" at {key_path}" if key_path else ""
        super().__init__(f"Cycle detected in object graph{where}")


class MissingObjectError(GraphCasError):
    """Raised when a referenced object is absent at receive time."""

    def __init__(self, object_id: str, parent_id: Optional[str] = None):
        self.object_id = object_id
        self.parent_id = parent_id
        if parent_id:
            msg = f"Object {object_id} referenced by {parent_id} was not found"
        else:
            msg = f"Root object {object_id} was not found"
        super().__init__(msg)


class HashMismatchError(GraphCasError):
    """Raised when a fetched payload does not hash to the requested id."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Payload for {expected} hashes to {actual}")


class OperationCancelled(GraphCasError):
    """Raised when a cancellation request is honored."""
    pass


class ConfigError(GraphCasError):
    """Configuration error."""
    pass


class TransportError(GraphCasError):
    """Base class for failures inside a transport."""

    def __init__(self, transport: str, object_id: Optional[str] = None, message: str = ""):
        self.transport = transport
        self.object_id = object_id
        detail = message or "transport operation failed"
        if object_id:
            detail = f"{detail} (object {object_id})"
        super().__init__(f"[{transport}] {detail}")


class TransportWriteError(TransportError):
    """A write to a transport failed."""
    pass


class TransportReadError(TransportError):
    """A read from a transport failed."""
    pass


class ObjectNotFoundError(TransportError):
    """The requested id is not stored in the transport."""

    def __init__(self, transport: str, object_id: str):
        super().__init__(transport, object_id, "object not found")
