"""Remote transport: a network object store reached over HTTP.

Wire contract (all bodies JSON, ids are sha256 hex strings)::

    POST {server}/objects/{stream}        {"objects": [{"id": .., "payload": ..}]}
    POST {server}/objects/{stream}/get    {"ids": [..]}  ->  {"objects": {id: payload}}
    POST {server}/objects/{stream}/has    {"ids": [..]}  ->  {"present": {id: bool}}

Authentication is attached to the session once, when the transport is built
from its :class:`RemoteContext`; nothing is looked up per call.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import requests
from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError as SchemaValidationError

from graphcas.config import GraphCasConfig
from graphcas.errors import ObjectNotFoundError, TransportReadError, TransportWriteError
from graphcas.observability import Component, get_logger
from graphcas.resilience import BackoffStrategy, RetryExhaustedError, RetryPolicy
from graphcas.transports.base import Transport, TransportWriter, check_payload, chunked

logger = get_logger("remote", Component.TRANSPORT)

TRANSIENT_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})

GET_RESPONSE_SCHEMA = Draft202012Validator({
    "type": "object",
    "required": ["objects"],
    "properties": {
        "objects": {"type": "object", "additionalProperties": {"type": "string"}},
    },
})

HAS_RESPONSE_SCHEMA = Draft202012Validator({
    "type": "object",
    "required": ["present"],
    "properties": {
        "present": {"type": "object", "additionalProperties": {"type": "boolean"}},
    },
})


class TransientRemoteError(Exception):
    """A failure worth retrying: dropped connection, timeout, throttling, 5xx."""
    pass


# What a request can fail with once retries are spent or skipped.
REMOTE_FAILURES = (RetryExhaustedError, requests.RequestException, ValueError)


@dataclass(frozen=True)
class RemoteContext:
    """Account and batching settings for one remote transport."""
    server_url: str
    token: str
    stream_id: str
    max_batch_objects: int = 1000
    max_batch_bytes: int = 1024 * 1024
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    base_delay_seconds: float = 0.5

    def __post_init__(self) -> None:
        if not self.server_url:
            raise ValueError("server_url is required")
        if not self.stream_id:
            raise ValueError("stream_id is required")
        if self.max_batch_objects < 1 or self.max_batch_bytes < 1:
            raise ValueError("batch limits must be positive")

    @classmethod
    def from_config(
        cls,
        config: GraphCasConfig,
        *,
        server_url: str,
        token: str,
        stream_id: str,
    ) -> "RemoteContext":
        remote = config.remote
        return cls(
            server_url=server_url,
            token=token,
            stream_id=stream_id,
            max_batch_objects=remote.max_batch_objects.get(),
            max_batch_bytes=remote.max_batch_bytes.get(),
            timeout_seconds=remote.timeout_seconds.get(),
            max_attempts=remote.max_attempts.get(),
            base_delay_seconds=remote.base_delay_seconds.get(),
        )

    @property
    def objects_url(self) -> str:
        return f"{self.server_url.rstrip('/')}/objects/{self.stream_id}"


class RemoteTransport(Transport):
    """
    Transport backed by a remote object service.

    Example:
        ctx = RemoteContext("https://cas.example.com", token, "stream-42")
        remote = RemoteTransport(ctx)
        root_id = send(root, [remote])
    """

    def __init__(
        self,
        context: RemoteContext,
        session: Optional[requests.Session] = None,
        name: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        super().__init__(name or f"remote:{context.stream_id}")
        self.context = context
        self._session = session if session is not None else requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {context.token}",
            "Accept": "application/json",
        })
        self._retry = retry or RetryPolicy(
            max_attempts=context.max_attempts,
            base_delay_seconds=context.base_delay_seconds,
            backoff_strategy=BackoffStrategy.EXPONENTIAL_JITTER,
            retryable_exceptions=(TransientRemoteError,),
            on_retry=self._log_retry,
        )

    def _log_retry(self, attempt: int, exc: Exception, delay: float) -> None:
        logger.warning(
            "Retrying remote request",
            transport=self.name,
            attempt=attempt,
            delay_seconds=round(delay, 3),
            error=str(exc),
        )

    def _post(self, suffix: str, body: Dict[str, Any]) -> Any:
        url = self.context.objects_url + suffix

        def call() -> Any:
            try:
                resp = self._session.post(url, json=body, timeout=self.context.timeout_seconds)
            except (requests.ConnectionError, requests.Timeout) as exc:
                raise TransientRemoteError(str(exc)) from exc
            if resp.status_code in TRANSIENT_STATUS:
                raise TransientRemoteError(f"HTTP {resp.status_code} from {url}")
            resp.raise_for_status()
            return resp.json() if resp.content else {}

        return self._retry.execute(call)

    # -- writes -----------------------------------------------------------

    def upload_batch(self, batch: List[Tuple[str, bytes]]) -> None:
        """Upload one batch; all of it is durable once this returns."""
        if not batch:
            return
        body = {
            "objects": [
                {"id": oid, "payload": payload.decode("utf-8")} for oid, payload in batch
            ]
        }
        try:
            self._post("", body)
        except REMOTE_FAILURES as exc:
            raise TransportWriteError(
                self.name,
                batch[0][0],
                f"upload of batch with {len(batch)} objects failed: {exc}",
            ) from exc
        logger.debug("Uploaded batch", transport=self.name, objects=len(batch))

    def put(self, object_id: str, payload: bytes) -> None:
        self.upload_batch([(object_id, check_payload(payload))])

    def writer(self) -> "RemoteBatchWriter":
        return RemoteBatchWriter(self)

    # -- reads ------------------------------------------------------------

    def get_many(self, object_ids: Iterable[str]) -> Dict[str, bytes]:
        wanted = list(dict.fromkeys(object_ids))
        found: Dict[str, bytes] = {}
        for chunk in chunked(wanted, self.context.max_batch_objects):
            try:
                data = self._post("/get", {"ids": chunk})
                GET_RESPONSE_SCHEMA.validate(data)
            except SchemaValidationError as exc:
                raise TransportReadError(self.name, chunk[0], f"malformed response: {exc.message}") from exc
            except REMOTE_FAILURES as exc:
                raise TransportReadError(self.name, chunk[0], f"fetch failed: {exc}") from exc
            requested = set(chunk)
            for oid, payload in data["objects"].items():
                if oid in requested:
                    found[oid] = payload.encode("utf-8")
        return found

    def get(self, object_id: str) -> bytes:
        found = self.get_many([object_id])
        if object_id not in found:
            raise ObjectNotFoundError(self.name, object_id)
        return found[object_id]

    def has_many(self, object_ids: Iterable[str]) -> Dict[str, bool]:
        wanted = list(dict.fromkeys(object_ids))
        present: Dict[str, bool] = {}
        for chunk in chunked(wanted, self.context.max_batch_objects):
            try:
                data = self._post("/has", {"ids": chunk})
                HAS_RESPONSE_SCHEMA.validate(data)
            except SchemaValidationError as exc:
                raise TransportReadError(self.name, chunk[0], f"malformed response: {exc.message}") from exc
            except REMOTE_FAILURES as exc:
                raise TransportReadError(self.name, chunk[0], f"lookup failed: {exc}") from exc
            for oid in chunk:
                present[oid] = bool(data["present"].get(oid, False))
        return present

    def has(self, object_id: str) -> bool:
        return self.has_many([object_id])[object_id]


class RemoteBatchWriter(TransportWriter):
    """
    Buffers puts into batches bounded by object count and byte size.

    Batches are cut and uploaded in put order under one lock, so a batch
    holding a parent is never uploaded ahead of the batch holding its
    children. A payload larger than ``max_batch_bytes`` travels alone.
    """

    transport: RemoteTransport

    def __init__(self, transport: RemoteTransport):
        super().__init__(transport)
        self._lock = threading.Lock()
        self._buffer: List[Tuple[str, bytes]] = []
        self._buffer_bytes = 0
        self._seen: Set[str] = set()
        self.batches_sent = 0

    def put(self, object_id: str, payload: bytes) -> None:
        payload = check_payload(payload)
        ctx = self.transport.context
        with self._lock:
            if object_id in self._seen:
                return
            would_overflow = (
                len(self._buffer) + 1 > ctx.max_batch_objects
                or self._buffer_bytes + len(payload) > ctx.max_batch_bytes
            )
            if self._buffer and would_overflow:
                self._flush_locked()
            self._buffer.append((object_id, payload))
            self._buffer_bytes += len(payload)
            self._seen.add(object_id)

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def _flush_locked(self) -> None:
        if not self._buffer:
            return
        batch = self._buffer
        self._buffer = []
        self._buffer_bytes = 0
        self.transport.upload_batch(batch)
        self.batches_sent += 1
