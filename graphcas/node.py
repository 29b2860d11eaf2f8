"""Node model: the ordered property bag that makes up an object graph.

A value stored on a :class:`Node` is one of::

    None | bool | int | float | str | list[Value] | Node | Ref

Values are checked once, when they are assigned, so the encoder and the
decomposer never have to sniff types ad hoc. A property is *detached* when it
is assigned with ``detach=True`` (or through the ``"@key"`` shorthand); the
``@`` prefix itself only reappears in the canonical wire encoding.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple, Union

from graphcas.errors import UnsupportedType

DETACH_PREFIX = "@"
RESERVED_PREFIX = "__"
REF_KEY = "__ref"
CLOSURE_KEY = "__closure"


@dataclass(frozen=True)
class Ref:
    """Reference token pointing at a detached chunk by content id."""
    id: str

    def to_token(self) -> Dict[str, str]:
        return {REF_KEY: self.id}


Value = Union[None, bool, int, float, str, List[Any], "Node", Ref]


def check_text(value: str, path: str = "") -> str:
    """Strings must be encodable as UTF-8 (no lone surrogates)."""
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise UnsupportedType(value, path) from None
    return value


def check_value(value: Any, path: str = "") -> Any:
    """Validate a value against the closed Value union.

    Returns the value to store: tuples become lists, everything else is
    returned as-is (nodes are kept by identity).
    """
    if isinstance(value, str):
        return check_text(value, path)
    if value is None or isinstance(value, (bool, Node, Ref)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise UnsupportedType(value, path)
        return value
    if isinstance(value, (list, tuple)):
        return [check_value(v, f"{path}[{i}]") for i, v in enumerate(value)]
    raise UnsupportedType(value, path)


def _split_key(key: str) -> Tuple[str, bool]:
    if not isinstance(key, str):
        raise TypeError(f"Node keys must be strings, got {type(key).__name__}")
    if key.startswith(DETACH_PREFIX):
        return key[len(DETACH_PREFIX):], True
    return key, False


class Node:
    """
    Ordered, string-keyed property bag.

    Example:
        wall = Node(name="wall", height=3.2)
        wall["@geometry"] = mesh            # detached property
        wall.set("layers", [a, b], detach=True)

        wall["geometry"] is mesh            # prefix is optional on read
        wall.is_detached("geometry")        # True
    """

    __slots__ = ("_props", "_detached")

    def __init__(self, properties: Optional[Dict[str, Any]] = None, **kwargs: Any):
        self._props: Dict[str, Any] = {}
        self._detached: Set[str] = set()
        for key, value in (properties or {}).items():
            self[key] = value
        for key, value in kwargs.items():
            self[key] = value

    # -- mutation ---------------------------------------------------------

    def set(self, key: str, value: Any, detach: bool = False) -> None:
        """Assign a property, optionally marking it detachable."""
        name, prefixed = _split_key(key)
        if not name:
            raise ValueError("Node keys must be non-empty")
        if name.startswith(RESERVED_PREFIX):
            raise ValueError(f"Keys starting with {RESERVED_PREFIX!r} are reserved: {name}")
        if name.startswith(DETACH_PREFIX):
            raise ValueError(f"Key has more than one detach prefix: {key}")
        check_text(name, name)

        self._props[name] = check_value(value, name)
        if detach or prefixed:
            self._detached.add(name)
        else:
            self._detached.discard(name)

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __delitem__(self, key: str) -> None:
        name, _ = _split_key(key)
        del self._props[name]
        self._detached.discard(name)

    # -- access -----------------------------------------------------------

    def __getitem__(self, key: str) -> Any:
        name, _ = _split_key(key)
        return self._props[name]

    def get(self, key: str, default: Any = None) -> Any:
        name, _ = _split_key(key)
        return self._props.get(name, default)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        name, _ = _split_key(key)
        return name in self._props

    def __iter__(self) -> Iterator[str]:
        return iter(self._props)

    def __len__(self) -> int:
        return len(self._props)

    def keys(self) -> List[str]:
        return list(self._props)

    def values(self) -> List[Any]:
        return list(self._props.values())

    def items(self) -> List[Tuple[str, Any]]:
        return list(self._props.items())

    def is_detached(self, key: str) -> bool:
        name, _ = _split_key(key)
        return name in self._detached

    def detached_keys(self) -> List[str]:
        """Detached keys in property order."""
        return [k for k in self._props if k in self._detached]

    def wire_key(self, key: str) -> str:
        """Key as spelled in the canonical encoding."""
        return DETACH_PREFIX + key if key in self._detached else key

    # -- typed accessors --------------------------------------------------

    def _typed(self, key: str, kind: Union[type, Tuple[type, ...]], label: str) -> Any:
        value = self[key]
        if not isinstance(value, kind) or (kind is not bool and isinstance(value, bool)):
            raise TypeError(f"Property {key!r} is {type(value).__name__}, not {label}")
        return value

    def get_str(self, key: str) -> str:
        return self._typed(key, str, "str")

    def get_bool(self, key: str) -> bool:
        return self._typed(key, bool, "bool")

    def get_number(self, key: str) -> Union[int, float]:
        return self._typed(key, (int, float), "number")

    def get_node(self, key: str) -> "Node":
        return self._typed(key, Node, "Node")

    def get_list(self, key: str) -> List[Any]:
        return self._typed(key, list, "list")

    # -- comparison / debugging -------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Node):
            return NotImplemented
        if self is other:
            return True
        return self._detached == other._detached and self.items() == other.items()

    __hash__ = None  # type: ignore[assignment]

    def to_dict(self) -> Dict[str, Any]:
        """Plain nested dict using wire keys; nodes are expanded inline."""
        def plain(v: Any) -> Any:
            if isinstance(v, Node):
                return v.to_dict()
            if isinstance(v, Ref):
                return v.to_token()
            if isinstance(v, list):
                return [plain(x) for x in v]
            return v

        return {self.wire_key(k): plain(v) for k, v in self._props.items()}

    def __repr__(self) -> str:
        inner = ", ".join(f"{self.wire_key(k)!r}: {v!r}" for k, v in self._props.items())
        return f"Node({{{inner}}})"
