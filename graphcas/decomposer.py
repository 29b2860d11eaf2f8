"""Decomposition of a node graph into content-addressed chunks.

Every detached node becomes its own chunk; everything else is encoded inline
inside the chunk of its nearest detached ancestor. The walk is post-order, so
a chunk's children always have ids (and closures) before the chunk itself is
hashed.

    d1 ──@detach──▶ d2 ──@detach──▶ d3 ──@detach──▶ d4 ──@detach──▶ d5
     │               │                                               ▲
     └──@joker───────┴──@joker[0]────────────────────────────────────┘

    closure(d1) = {d2: 1, d5: 1, d3: 2, d4: 3}

When an id is reachable along several paths its closure depth is the minimum
over all of them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from graphcas.core import canonical_json_bytes, content_id
from graphcas.errors import CyclicGraphError
from graphcas.node import CLOSURE_KEY, Node, Ref
from graphcas.observability import Component, get_logger, timed_operation

logger = get_logger("decomposer", Component.DECOMPOSER)


class Closure(Mapping[str, int]):
    """Immutable map of transitively detached ids to their minimum depth."""

    __slots__ = ("_depths",)

    def __init__(self, depths: Optional[Mapping[str, int]] = None):
        self._depths: Dict[str, int] = dict(depths or {})

    @classmethod
    def from_children(cls, children: Iterable[Tuple[str, "Closure"]]) -> "Closure":
        """Build a closure from direct children and their own closures."""
        depths: Dict[str, int] = {}

        def offer(object_id: str, depth: int) -> None:
            current = depths.get(object_id)
            if current is None or depth < current:
                depths[object_id] = depth

        for child_id, child_closure in children:
            offer(child_id, 1)
            for object_id, depth in child_closure.items():
                offer(object_id, depth + 1)
        return cls(depths)

    def __getitem__(self, object_id: str) -> int:
        return self._depths[object_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._depths)

    def __len__(self) -> int:
        return len(self._depths)

    def depth_of(self, object_id: str) -> Optional[int]:
        return self._depths.get(object_id)

    def to_dict(self) -> Dict[str, int]:
        """Entries ordered by depth, then id."""
        return dict(sorted(self._depths.items(), key=lambda kv: (kv[1], kv[0])))

    def __repr__(self) -> str:
        return f"Closure({self.to_dict()!r})"


@dataclass
class Decomposition:
    """Result of decomposing one root."""
    root_id: str
    objects: Dict[str, bytes] = field(default_factory=dict)  # children before parents
    closures: Dict[str, Closure] = field(default_factory=dict)
    children: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    dedup_hits: int = 0

    @property
    def total_bytes(self) -> int:
        return sum(len(p) for p in self.objects.values())

    def levels(self) -> List[List[str]]:
        """Group ids by height above the leaves.

        Every child of an id in level k sits in a level below k, so writing
        levels in order writes children before parents.
        """
        height: Dict[str, int] = {}
        for object_id in self.objects:
            kids = self.children.get(object_id, ())
            height[object_id] = 1 + max((height.get(c, -1) for c in kids), default=-1)

        grouped: List[List[str]] = []
        for object_id, h in height.items():
            while len(grouped) <= h:
                grouped.append([])
            grouped[h].append(object_id)
        return grouped


class Decomposer:
    """
    Single-use decomposition run.

    Holds the per-run state: the identity memo of finished instances, the set
    of instances on the current walk path, and the emitted chunks. Create one
    per decomposition; nothing here is shared between runs.
    """

    def __init__(self) -> None:
        self._memo: Dict[int, Tuple[Node, str, Closure]] = {}
        self._path: Set[int] = set()
        self._result = Decomposition(root_id="")
        self._used = False

    def decompose(self, root: Optional[Node]) -> Decomposition:
        if self._used:
            raise RuntimeError("Decomposer instances are single-use")
        if root is None:
            root = Node()
        if not isinstance(root, Node):
            raise TypeError(f"root must be a Node, got {type(root).__name__}")

        self._used = True
        root_id, _ = self._visit(root, "$")
        self._result.root_id = root_id

        logger.debug(
            "Decomposed graph",
            operation="decompose",
            root_id=root_id,
            objects=len(self._result.objects),
            dedup_hits=self._result.dedup_hits,
        )
        return self._result

    def _visit(self, node: Node, key_path: str) -> Tuple[str, Closure]:
        memo = self._memo.get(id(node))
        if memo is not None:
            return memo[1], memo[2]

        direct: List[Tuple[str, Closure]] = []
        self._enter(node, key_path)
        try:
            payload = self._payload(node, direct, key_path)
        finally:
            self._path.discard(id(node))

        closure = Closure.from_children(direct)
        object_id = content_id(payload)

        result = self._result
        if object_id in result.objects:
            result.dedup_hits += 1
        else:
            stored = dict(payload)
            if closure:
                stored[CLOSURE_KEY] = closure.to_dict()
            result.objects[object_id] = canonical_json_bytes(stored)
            result.closures[object_id] = closure
            result.children[object_id] = tuple(dict.fromkeys(cid for cid, _ in direct))

        self._memo[id(node)] = (node, object_id, closure)
        return object_id, closure

    def _enter(self, node: Node, key_path: str) -> None:
        if id(node) in self._path:
            raise CyclicGraphError(key_path)
        self._path.add(id(node))

    def _payload(self, node: Node, direct: List[Tuple[str, Closure]], key_path: str) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, value in node.items():
            wire = node.wire_key(key)
            path = f"{key_path}.{wire}"
            if node.is_detached(key):
                out[wire] = self._detach(value, direct, path)
            else:
                out[wire] = self._inline(value, direct, path)
        return out

    def _detach(self, value: Any, direct: List[Tuple[str, Closure]], key_path: str) -> Any:
        if isinstance(value, Ref):
            direct.append((value.id, Closure()))
            return value
        if isinstance(value, Node):
            child_id, child_closure = self._visit(value, key_path)
            direct.append((child_id, child_closure))
            return Ref(child_id)
        if isinstance(value, list):
            return [self._detach(v, direct, f"{key_path}[{i}]") for i, v in enumerate(value)]
        return value

    def _inline(self, value: Any, direct: List[Tuple[str, Closure]], key_path: str) -> Any:
        if isinstance(value, Ref):
            direct.append((value.id, Closure()))
            return value
        if isinstance(value, Node):
            # Inline nodes get no id; chunks they detach are direct children here.
            self._enter(value, key_path)
            try:
                return self._payload(value, direct, key_path)
            finally:
                self._path.discard(id(value))
        if isinstance(value, list):
            return [self._inline(v, direct, f"{key_path}[{i}]") for i, v in enumerate(value)]
        return value


@timed_operation(logger, "decompose")
def decompose(root: Optional[Node]) -> Decomposition:
    """Decompose ``root`` into chunks, closures and the root id."""
    return Decomposer().decompose(root)
