"""Canonical encoding and hashing primitives.

This module provides the foundational utilities the engine builds on:
- Canonical JSON serialization of node payloads
- Content ids (SHA-256 over canonical bytes)
- Digest validation
- Payload decoding and integrity verification

Canonical form:
- Keys in the node's own insertion order (never sorted)
- No whitespace
- UTF-8 encoded, non-ASCII kept as-is
- NaN and Infinity rejected

Callers that want sorted keys must insert them sorted.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from typing import Any, Dict, Tuple

from graphcas.errors import HashMismatchError, UnsupportedType
from graphcas.node import CLOSURE_KEY, Ref, check_text

SHA256_HEX_RE = re.compile(r"^[a-f0-9]{64}$")


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def is_valid_sha256(digest: str) -> bool:
    """Check if string is a valid SHA-256 hex digest."""
    return bool(SHA256_HEX_RE.match(digest or ""))


def normalize_digest(digest: str) -> str:
    dd = str(digest or "").strip().lower()
    if not SHA256_HEX_RE.match(dd):
        raise ValueError(f"object id must be 64 lowercase hex chars: {digest!r}")
    return dd


def _to_json_tree(obj: Any, path: str = "") -> Any:
    """Validate and convert to plain JSON types, replacing Ref with its token."""
    if isinstance(obj, str):
        return check_text(obj, path)
    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise UnsupportedType(obj, path)
        return obj
    if isinstance(obj, Ref):
        return obj.to_token()
    if isinstance(obj, (list, tuple)):
        return [_to_json_tree(v, f"{path}[{i}]") for i, v in enumerate(obj)]
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise UnsupportedType(k, f"{path}.<key>")
            check_text(k, f"{path}.<key>")
            out[k] = _to_json_tree(v, f"{path}.{k}" if path else k)
        return out
    raise UnsupportedType(obj, path)


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize a payload to canonical JSON bytes.

    Raises UnsupportedType for values outside the JSON/Ref subset.
    """
    return json.dumps(
        _to_json_tree(obj),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def content_id(payload: Any) -> str:
    """Content id of a payload: SHA-256 of its canonical bytes."""
    return sha256_bytes(canonical_json_bytes(payload))


def decode_payload(data: bytes) -> Dict[str, Any]:
    """Decode stored payload bytes, preserving key order."""
    obj = json.loads(data.decode("utf-8"))
    if not isinstance(obj, dict):
        raise ValueError("stored payload must be a JSON object")
    return obj


def strip_closure(payload: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, int]]:
    """Split a decoded payload into (hash input, closure)."""
    tmp = dict(payload)
    closure = tmp.pop(CLOSURE_KEY, None) or {}
    return tmp, {str(k): int(v) for k, v in closure.items()}


def verify_payload(object_id: str, data: bytes) -> Dict[str, Any]:
    """Decode a stored payload and check it hashes to ``object_id``.

    The closure is not part of the hash input and is removed before
    re-encoding. Returns the decoded payload (closure included).
    """
    payload = decode_payload(data)
    body, _ = strip_closure(payload)
    actual = content_id(body)
    if actual != object_id:
        raise HashMismatchError(object_id, actual)
    return payload
