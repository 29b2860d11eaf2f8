"""Send and Receive pipelines.

Send
────

    root ──decompose──▶ levels [leaves] [parents of leaves] ... [root]
                              │
              ┌───────────────┼────────────────┐
              ▼               ▼                ▼
         transport A     transport B      transport C      (one thread each)
         level 0 ║║║     level 0 ║║║      level 0 ║║║      (pool_size workers)
         level 1 ║║      level 1 ║║       level 1 ║║
         ...             ...              ...
         flush           flush            flush

Within one transport a level starts only after the previous one has been
written, so a reader never sees a parent whose children are unresolvable.
The first failure anywhere aborts every transport before its next operation.

Receive
───────

Fetch the root, prefetch its closure in batches (ordered by depth), then
rebuild the graph with an id → Node memo so that shared chunks come back as
one shared instance.
"""

from __future__ import annotations

import contextvars
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from graphcas.config import GraphCasConfig, load_config
from graphcas.core import content_id, decode_payload, normalize_digest, strip_closure, verify_payload
from graphcas.decomposer import Decomposition, decompose
from graphcas.errors import (
    CyclicGraphError,
    MissingObjectError,
    ObjectNotFoundError,
    OperationCancelled,
    TransportError,
    TransportReadError,
    TransportWriteError,
)
from graphcas.node import DETACH_PREFIX, REF_KEY, Node
from graphcas.observability import (
    Component,
    generate_operation_id,
    get_logger,
    reset_operation_id,
    set_operation_id,
)
from graphcas.transports.base import Transport, TransportWriter, chunked

send_logger = get_logger("send", Component.SEND)
receive_logger = get_logger("receive", Component.RECEIVE)


@dataclass(frozen=True)
class ProgressEvent:
    """Running totals for one transport.

    ``total_objects`` is 0 while the total is not yet known.
    """
    transport: str
    objects: int
    bytes: int
    total_objects: int


ProgressCallback = Callable[[ProgressEvent], None]


class CancellationToken:
    """Cooperative cancellation, checked before every transport operation."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation was cancelled")


class _ProgressDispatcher:
    """Runs the progress callback on its own thread so writers never wait on it."""

    def __init__(self, callback: Optional[ProgressCallback], logger: Any):
        self._callback = callback
        self._logger = logger
        self._executor: Optional[ThreadPoolExecutor] = None
        if callback is not None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="graphcas-progress")

    def report(self, event: ProgressEvent) -> None:
        if self._executor is not None:
            self._executor.submit(self._deliver, event)

    def _deliver(self, event: ProgressEvent) -> None:
        callback = self._callback
        if callback is None:
            return
        try:
            callback(event)
        except Exception as exc:
            self._logger.warning("Progress callback failed", transport=event.transport, error=repr(exc))

    def close(self, wait_for_pending: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait_for_pending)


class _Aborted(Exception):
    """Another transport failed first; stop quietly."""
    pass


class _SendRun:
    """State shared by the per-transport jobs of one Send."""

    def __init__(
        self,
        decomposition: Decomposition,
        pool_size: int,
        dispatcher: _ProgressDispatcher,
        cancel: Optional[CancellationToken],
    ):
        self.decomposition = decomposition
        self.levels = decomposition.levels()
        self.pool_size = pool_size
        self.dispatcher = dispatcher
        self.cancel = cancel
        self._abort = threading.Event()
        self._lock = threading.Lock()
        self.first_error: Optional[BaseException] = None

    def fail(self, exc: BaseException) -> None:
        with self._lock:
            if self.first_error is None:
                self.first_error = exc
        self._abort.set()

    def checkpoint(self) -> None:
        """Called before every transport operation."""
        if self._abort.is_set():
            raise _Aborted()
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

    def run_transport(self, transport: Transport) -> None:
        try:
            _TransportJob(self, transport).run()
        except _Aborted:
            return
        except BaseException as exc:
            self.fail(exc)
            raise


class _TransportJob:
    def __init__(self, send_run: _SendRun, transport: Transport):
        self.send_run = send_run
        self.transport = transport
        self._lock = threading.Lock()
        self._objects = 0
        self._bytes = 0

    def run(self) -> None:
        objects = self.send_run.decomposition.objects
        with ThreadPoolExecutor(
            max_workers=self.send_run.pool_size,
            thread_name_prefix=f"graphcas-put-{self.transport.name}",
        ) as pool:
            writer = self.transport.writer()
            for level in self.send_run.levels:
                futures: List[Future] = [
                    pool.submit(contextvars.copy_context().run, self._put, writer, oid, objects[oid])
                    for oid in level
                ]
                done, pending = wait(futures, return_when=FIRST_EXCEPTION)
                for future in pending:
                    future.cancel()
                for future in done:
                    exc = future.exception()
                    if exc is not None:
                        raise exc
            self.send_run.checkpoint()
            self._wrap(writer.flush, None)

        send_logger.debug(
            "Transport complete",
            transport=self.transport.name,
            objects=self._objects,
            bytes=self._bytes,
        )

    def _wrap(self, func: Callable[[], None], object_id: Optional[str]) -> None:
        try:
            func()
        except TransportError:
            raise
        except Exception as exc:
            raise TransportWriteError(self.transport.name, object_id, str(exc)) from exc

    def _put(self, writer: TransportWriter, object_id: str, payload: bytes) -> None:
        self.send_run.checkpoint()
        try:
            self._wrap(lambda: writer.put(object_id, payload), object_id)
        except BaseException as exc:
            # Stop sibling workers and other transports before their next operation.
            self.send_run.fail(exc)
            raise

        with self._lock:
            self._objects += 1
            self._bytes += len(payload)
            event = ProgressEvent(
                transport=self.transport.name,
                objects=self._objects,
                bytes=self._bytes,
                total_objects=len(self.send_run.decomposition.objects),
            )
            self.send_run.dispatcher.report(event)


def send(
    root: Optional[Node],
    transports: Sequence[Transport],
    on_progress: Optional[ProgressCallback] = None,
    *,
    pool_size: Optional[int] = None,
    cancel: Optional[CancellationToken] = None,
    config: Optional[GraphCasConfig] = None,
) -> str:
    """
    Decompose ``root`` once and write every chunk to every transport.

    Returns the root id once every transport has flushed. The first failure
    aborts the whole Send and is re-raised; chunks already written stay in
    place, which is safe because stores are append-only.
    """
    transports = list(transports)
    if not transports:
        raise ValueError("send requires at least one transport")
    cfg = config or load_config()
    workers = pool_size or cfg.send.pool_size.get()
    if workers < 1:
        raise ValueError("pool_size must be at least 1")

    token = set_operation_id(generate_operation_id())
    start = time.monotonic()
    dispatcher = _ProgressDispatcher(on_progress, send_logger)
    try:
        if cancel is not None:
            cancel.raise_if_cancelled()
        decomposition = decompose(root)
        send_run = _SendRun(decomposition, workers, dispatcher, cancel)

        with ThreadPoolExecutor(max_workers=len(transports), thread_name_prefix="graphcas-send") as outer:
            futures = [
                outer.submit(contextvars.copy_context().run, send_run.run_transport, t)
                for t in transports
            ]
            wait(futures)

        if send_run.first_error is not None:
            send_logger.error(
                "Send failed",
                root_id=decomposition.root_id,
                error=str(send_run.first_error),
            )
            raise send_run.first_error

        dispatcher.close()
        send_logger.operation(
            "send",
            (time.monotonic() - start) * 1000,
            root_id=decomposition.root_id,
            objects=len(decomposition.objects),
            bytes=decomposition.total_bytes,
            dedup_hits=decomposition.dedup_hits,
            transports=[t.name for t in transports],
        )
        return decomposition.root_id
    finally:
        dispatcher.close(wait_for_pending=False)
        reset_operation_id(token)


class _ReceiveRun:
    """Per-call fetch cache, memo and cycle guard for one Receive."""

    def __init__(
        self,
        transport: Transport,
        local: Optional[Transport],
        verify: bool,
        prefetch_batch: int,
        cancel: Optional[CancellationToken],
        on_progress: Optional[ProgressCallback],
    ):
        self.transport = transport
        self.local = local
        self.verify = verify
        self.prefetch_batch = prefetch_batch
        self.cancel = cancel
        self.on_progress = on_progress
        self._raw: Dict[str, bytes] = {}
        self._nodes: Dict[str, Node] = {}
        self._building: Set[str] = set()
        self.fetched_objects = 0
        self.fetched_bytes = 0
        self.total_objects = 0  # unknown until the root's closure is read

    def _checkpoint(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

    def _report(self, nbytes: int) -> None:
        self.fetched_objects += 1
        self.fetched_bytes += nbytes
        if self.on_progress is None:
            return
        try:
            self.on_progress(ProgressEvent(
                transport=self.transport.name,
                objects=self.fetched_objects,
                bytes=self.fetched_bytes,
                total_objects=self.total_objects,
            ))
        except Exception as exc:
            receive_logger.warning("Progress callback failed", error=repr(exc))

    def _load(self, object_id: str, parent_id: Optional[str]) -> Tuple[bytes, bool]:
        """Return the payload and whether it came from ``transport``."""
        data = self._raw.pop(object_id, None)
        if data is not None:
            return data, True

        if self.local is not None:
            self._checkpoint()
            try:
                return self.local.get(object_id), False
            except ObjectNotFoundError:
                pass

        self._checkpoint()
        try:
            data = self.transport.get(object_id)
        except ObjectNotFoundError:
            raise MissingObjectError(object_id, parent_id) from None
        # The root is reported once its closure size is known.
        if parent_id is not None:
            self._report(len(data))
        return data, True

    def _write_through(self, object_id: str, data: bytes, body: Dict[str, Any]) -> None:
        """Copy a fetched payload into the local cache once its hash checks out."""
        if self.local is None:
            return
        if not self.verify and content_id(body) != object_id:
            receive_logger.warning("Payload hash mismatch, not caching", object_id=object_id)
            return
        self._checkpoint()
        self.local.put(object_id, data)

    def _decode(self, object_id: str, data: bytes) -> Dict[str, Any]:
        try:
            if self.verify:
                return verify_payload(object_id, data)
            return decode_payload(data)
        except (ValueError, UnicodeDecodeError) as exc:
            raise TransportReadError(self.transport.name, object_id, f"undecodable payload: {exc}") from exc

    def prefetch(self, closure: Dict[str, int]) -> None:
        """Fetch a closure in depth order using batched reads."""
        wanted = [oid for oid in sorted(closure, key=lambda k: (closure[k], k)) if oid not in self._nodes]
        if self.local is not None and wanted:
            self._checkpoint()
            cached = self.local.has_many(wanted)
            wanted = [oid for oid in wanted if not cached.get(oid)]

        for batch in chunked(wanted, self.prefetch_batch):
            self._checkpoint()
            found = self.transport.get_many(batch)
            for oid in batch:
                data = found.get(oid)
                if data is None:
                    continue
                self._raw[oid] = data
                self._report(len(data))

    def node_for(self, object_id: str, parent_id: Optional[str] = None) -> Node:
        node = self._nodes.get(object_id)
        if node is not None:
            return node
        if object_id in self._building:
            raise CyclicGraphError(object_id)

        self._building.add(object_id)
        try:
            data, fetched = self._load(object_id, parent_id)
            body, closure = strip_closure(self._decode(object_id, data))
            if parent_id is None:
                self.total_objects = len(closure) + 1
                if fetched:
                    self._report(len(data))
            if fetched:
                self._write_through(object_id, data, body)
            if parent_id is None and closure:
                self.prefetch(closure)
            node = self._build(body, object_id)
        finally:
            self._building.discard(object_id)

        self._nodes[object_id] = node
        return node

    def _build(self, obj: Dict[str, Any], owner_id: str) -> Node:
        node = Node()
        for wire_key, value in obj.items():
            detached = wire_key.startswith(DETACH_PREFIX)
            name = wire_key[len(DETACH_PREFIX):] if detached else wire_key
            try:
                node.set(name, self._value(value, owner_id), detach=detached)
            except ValueError as exc:
                raise TransportReadError(self.transport.name, owner_id, f"malformed payload: {exc}") from exc
        return node

    def _value(self, value: Any, owner_id: str) -> Any:
        if isinstance(value, dict):
            if len(value) == 1 and REF_KEY in value:
                return self.node_for(str(value[REF_KEY]), owner_id)
            return self._build(value, owner_id)
        if isinstance(value, list):
            return [self._value(v, owner_id) for v in value]
        return value


def receive(
    object_id: str,
    transport: Transport,
    *,
    local: Optional[Transport] = None,
    verify: Optional[bool] = None,
    cancel: Optional[CancellationToken] = None,
    on_progress: Optional[ProgressCallback] = None,
    config: Optional[GraphCasConfig] = None,
) -> Node:
    """
    Fetch ``object_id`` and everything it references, and rebuild the graph.

    ``local`` is an optional cache transport consulted before ``transport``;
    everything fetched remotely is written into it. Chunks referenced from
    several places come back as one shared Node instance.
    """
    object_id = normalize_digest(object_id)
    cfg = config or load_config()
    run = _ReceiveRun(
        transport=transport,
        local=local,
        verify=cfg.receive.verify_hashes.get() if verify is None else verify,
        prefetch_batch=cfg.receive.prefetch_batch_size.get(),
        cancel=cancel,
        on_progress=on_progress,
    )

    token = set_operation_id(generate_operation_id())
    start = time.monotonic()
    try:
        node = run.node_for(object_id)
    except Exception:
        receive_logger.operation(
            "receive",
            (time.monotonic() - start) * 1000,
            success=False,
            root_id=object_id,
            transport=transport.name,
        )
        raise
    else:
        receive_logger.operation(
            "receive",
            (time.monotonic() - start) * 1000,
            root_id=object_id,
            transport=transport.name,
            fetched_objects=run.fetched_objects,
            fetched_bytes=run.fetched_bytes,
        )
        return node
    finally:
        reset_operation_id(token)
