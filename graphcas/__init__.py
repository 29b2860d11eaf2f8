"""
graphcas: content-addressed object graph transport.

Moves large, highly shared object graphs (design-model scenes) between a
local process and one or more object stores.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────┐
    │                         HOST APPLICATION                             │
    │          builds a root Node ─▶ send()      receive() ─▶ Node         │
    │                                                                      │
    │  PIPELINES                                                           │
    │    operations.py   Send (levelled, concurrent) / Receive (memoized)  │
    │                                                                      │
    │  DECOMPOSITION                                                       │
    │    decomposer.py   detachment boundaries, closures, dedup            │
    │    core.py         canonical encoding, SHA-256 content ids           │
    │    node.py         ordered property bag, Ref tokens                  │
    │                                                                      │
    │  STORAGE                                                             │
    │    transports/     memory, disk cache, batched remote                │
    │                                                                      │
    │  AMBIENT                                                             │
    │    config.py  observability.py  resilience.py  errors.py             │
    └─────────────────────────────────────────────────────────────────────┘

Core Concepts
─────────────

    Detachment: a property assigned with ``detach=True`` (or as ``"@key"``)
    is split into its own chunk and replaced by a reference token.

    Content id: SHA-256 of a chunk's canonical payload. Identical content
    always gets the same id, which is what makes deduplication work.

    Closure: for every chunk, the ids it reaches through detachment and the
    minimum number of hops to each.
"""

__version__ = "0.3.0"


def __getattr__(name):
    """Lazy import of the public API on first access."""

    if name in ("Node", "Ref"):
        from graphcas import node
        return getattr(node, name)

    if name in ("canonical_json_bytes", "content_id", "sha256_bytes"):
        from graphcas import core
        return getattr(core, name)

    if name in ("decompose", "Decomposition", "Decomposer", "Closure"):
        from graphcas import decomposer
        return getattr(decomposer, name)

    if name in ("send", "receive", "ProgressEvent", "CancellationToken"):
        from graphcas import operations
        return getattr(operations, name)

    if name in ("Transport", "MemoryTransport", "DiskTransport",
                "RemoteTransport", "RemoteContext"):
        from graphcas import transports
        return getattr(transports, name)

    if name in ("GraphCasConfig", "load_config"):
        from graphcas import config
        return getattr(config, name)

    if name in ("configure_logging",):
        from graphcas import observability
        return getattr(observability, name)

    if name in ("GraphCasError", "UnsupportedType", "CyclicGraphError",
                "MissingObjectError", "HashMismatchError", "TransportError",
                "TransportWriteError", "TransportReadError", "ObjectNotFoundError",
                "OperationCancelled", "ConfigError"):
        from graphcas import errors
        return getattr(errors, name)

    raise AttributeError(f"module 'graphcas' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Model
    "Node",
    "Ref",
    # Encoding
    "canonical_json_bytes",
    "content_id",
    "sha256_bytes",
    # Decomposition
    "decompose",
    "Decomposition",
    "Decomposer",
    "Closure",
    # Pipelines
    "send",
    "receive",
    "ProgressEvent",
    "CancellationToken",
    # Transports
    "Transport",
    "MemoryTransport",
    "DiskTransport",
    "RemoteTransport",
    "RemoteContext",
    # Ambient
    "GraphCasConfig",
    "load_config",
    "configure_logging",
    # Errors
    "GraphCasError",
    "UnsupportedType",
    "CyclicGraphError",
    "MissingObjectError",
    "HashMismatchError",
    "TransportError",
    "TransportWriteError",
    "TransportReadError",
    "ObjectNotFoundError",
    "OperationCancelled",
    "ConfigError",
]
