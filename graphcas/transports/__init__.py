"""Pluggable object stores."""

from graphcas.transports.base import DirectWriter, Transport, TransportWriter
from graphcas.transports.disk import DiskTransport
from graphcas.transports.memory import MemoryTransport
from graphcas.transports.remote import RemoteBatchWriter, RemoteContext, RemoteTransport

__all__ = [
    "Transport",
    "TransportWriter",
    "DirectWriter",
    "MemoryTransport",
    "DiskTransport",
    "RemoteTransport",
    "RemoteContext",
    "RemoteBatchWriter",
]
