import json
import os
import pathlib
import sys

import pytest
import requests


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import graphcas`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from graphcas.node import Node  # noqa: E402
from graphcas.transports.remote import RemoteContext, RemoteTransport  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: large-graph tests (skipped unless GRAPHCAS_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('GRAPHCAS_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set GRAPHCAS_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _clean_graphcas_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer GRAPHCAS_* settings out of the tests."""
    for key in list(os.environ):
        if key.startswith("GRAPHCAS_") and key != "GRAPHCAS_RUN_SLOW":
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def depth_chain():
    """The five-level graph used for closure checks.

    d1 ─@detach▶ d2 ─@detach▶ d3 ─@detach▶ d4 ─@detach▶ d5
    d1 ─@joker▶ d5, d2 ─@joker[0]▶ d5
    """
    d5 = Node(name="depth five")

    d4 = Node(name="depth four")
    d4["@detach"] = d5

    d3 = Node(name="depth three")
    d3["@detach"] = d4

    d2 = Node(name="depth two")
    d2["@detach"] = d3
    d2["@joker"] = [d5]

    d1 = Node(name="depth one")
    d1["@detach"] = d2
    d1["@joker"] = d5

    return {"d1": d1, "d2": d2, "d3": d3, "d4": d4, "d5": d5}


class FakeResponse:
    """Just enough of requests.Response for the remote transport."""

    def __init__(self, status_code: int, body=None):
        self.status_code = status_code
        self._body = body
        self.content = json.dumps(body).encode("utf-8") if body is not None else b""

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}", response=self)


class FakeObjectServer:
    """
    In-process stand-in for a requests.Session talking to the object service.

    ``failures`` is consumed one entry per request before routing: an int is
    returned as that HTTP status, an exception instance is raised.
    ``override`` replaces the body of every successful read response.
    """

    def __init__(self):
        self.headers = {}
        self.objects = {}
        self.calls = []
        self.failures = []
        self.override = None

    def post(self, url, json=None, timeout=None):
        self.calls.append((url, json, timeout))
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, BaseException):
                raise failure
            return FakeResponse(failure, {"error": "scripted"})

        if url.endswith("/get"):
            body = {"objects": {i: self.objects[i] for i in json["ids"] if i in self.objects}}
        elif url.endswith("/has"):
            body = {"present": {i: i in self.objects for i in json["ids"]}}
        else:
            for obj in json["objects"]:
                self.objects.setdefault(obj["id"], obj["payload"])
            return FakeResponse(200, {"stored": len(json["objects"])})

        if self.override is not None:
            body = self.override
        return FakeResponse(200, body)

    def uploads(self):
        return [body for url, body, _ in self.calls if not url.endswith(("/get", "/has"))]


@pytest.fixture
def remote_server():
    return FakeObjectServer()


@pytest.fixture
def remote_context():
    return RemoteContext(
        server_url="https://cas.test/api/",
        token="secret-token",
        stream_id="stream-1",
        base_delay_seconds=0.0,
    )


@pytest.fixture
def remote(remote_context, remote_server):
    return RemoteTransport(remote_context, session=remote_server)
