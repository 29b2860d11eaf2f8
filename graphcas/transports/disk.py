"""File-per-object transport for a local object cache.

Objects live under a store root using the convention:

  ``<root>/<id[:2]>/<id>``

Where ``<id>`` is the lowercase sha256 hex content id. The two-character fan
out keeps directory sizes manageable for large scenes. Writes go to a
temporary file in the same directory and are renamed into place, so a reader
never sees a partially written object.
"""

from __future__ import annotations

import os
import pathlib
import uuid
from typing import Iterator, Optional, Union

from graphcas.core import normalize_digest
from graphcas.errors import ObjectNotFoundError, TransportReadError, TransportWriteError
from graphcas.transports.base import Transport, check_payload


class DiskTransport(Transport):
    """Content-addressed object store on the local filesystem."""

    def __init__(self, root: Union[str, pathlib.Path], name: Optional[str] = None):
        super().__init__(name or f"disk:{root}")
        self.root = pathlib.Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def object_path(self, object_id: str) -> pathlib.Path:
        dd = normalize_digest(object_id)
        return self.root / dd[:2] / dd

    def put(self, object_id: str, payload: bytes) -> None:
        payload = check_payload(payload)
        dest = self.object_path(object_id)
        if dest.exists():
            return

        tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.tmp")
        try:
            os.makedirs(str(dest.parent), exist_ok=True)
            tmp.write_bytes(payload)
            os.replace(tmp, dest)
        except OSError as exc:
            raise TransportWriteError(self.name, object_id, str(exc)) from exc
        finally:
            if tmp.exists():
                tmp.unlink()

    def get(self, object_id: str) -> bytes:
        path = self.object_path(object_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise ObjectNotFoundError(self.name, object_id) from None
        except OSError as exc:
            raise TransportReadError(self.name, object_id, str(exc)) from exc

    def has(self, object_id: str) -> bool:
        return self.object_path(object_id).is_file()

    def iter_ids(self) -> Iterator[str]:
        """Ids of every stored object, in directory order."""
        for fan in sorted(self.root.iterdir()):
            if not fan.is_dir() or len(fan.name) != 2:
                continue
            for path in sorted(fan.iterdir()):
                if path.is_file() and not path.name.startswith("."):
                    yield path.name
