import json
import pathlib
import sys
import threading
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from broker.dispatcher import WorkflowDispatcher
from broker.health import HealthChecker
from broker.main import create_app
from broker.model_server import ModelServerClient
from broker.services import build_services
from broker.settings import BrokerSettings


class ManualClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingTransport:
    """Stands in for ``_post_json``; records every dispatched job."""

    def __init__(self, *, response: object = None, error: BaseException | None = None):
        self.calls: list[dict[str, object]] = []
        self.response = {"ok": True} if response is None else response
        self.error = error
        self._cond = threading.Condition()

    def __call__(self, *, endpoint: str, payload: dict[str, object], timeout_s: float) -> object:
        with self._cond:
            self.calls.append({"endpoint": endpoint, "payload": payload, "timeout_s": timeout_s})
            self._cond.notify_all()
        if self.error is not None:
            raise self.error
        return self.response

    def wait_for(self, count: int, timeout_s: float = 2.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.calls) >= count, timeout=timeout_s)


class FakeResponse:
    def __init__(self, body: bytes = b"", lines: list[bytes] | None = None, error: BaseException | None = None):
        self._body = body
        self._lines = lines if lines is not None else body.splitlines(keepends=True)
        self._error = error
        self.closed = False

    def read(self) -> bytes:
        return self._body

    def __iter__(self):
        for line in self._lines:
            if self.closed:
                return
            yield line
        if self._error is not None:
            raise self._error

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
        return False


def json_response(data: object) -> FakeResponse:
    return FakeResponse(json.dumps(data).encode("utf-8"))


def ndjson_response(*chunks: object, error: BaseException | None = None) -> FakeResponse:
    lines = []
    for chunk in chunks:
        if isinstance(chunk, bytes):
            lines.append(chunk)
        else:
            lines.append(json.dumps(chunk).encode("utf-8") + b"\n")
    return FakeResponse(lines=lines, error=error)


class FakeModelServer:
    """Opener for ``ModelServerClient`` that answers by URL path suffix."""

    def __init__(self):
        self.routes: dict[str, object] = {
            "version": json_response({"version": "0.5.1"}),
            "tags": json_response({"models": [{"name": "turboforge-architect:latest"}]}),
        }
        self.requests: list[dict[str, object]] = []

    def __call__(self, req, *, timeout: float):
        body = json.loads(req.data.decode("utf-8")) if req.data else None
        self.requests.append({"url": req.full_url, "method": req.get_method(), "body": body, "timeout": timeout})
        suffix = req.full_url.rsplit("/", 1)[-1]
        answer = self.routes.get(suffix)
        if answer is None:
            raise OSError(f"no fake route for {req.full_url}")
        if isinstance(answer, BaseException):
            raise answer
        if callable(answer) and not isinstance(answer, FakeResponse):
            return answer(body)
        return answer


class FakeProbe:
    def __init__(self):
        self.error: BaseException | None = None
        self.urls: list[str] = []

    def __call__(self, url: str, *, timeout_s: float) -> None:
        self.urls.append(url)
        if self.error is not None:
            raise self.error


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> BrokerSettings:
    return BrokerSettings(
        api_base_url="http://broker.test",
        n8n_url="http://engine.test/webhook",
        ollama_url="http://models.test/api",
        servicenow_instance="acme.service-now.com",
        cors_allow_origins=("http://localhost:5173",),
    )


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def model_server() -> FakeModelServer:
    return FakeModelServer()


@pytest.fixture
def engine_probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def services(settings, clock, transport, model_server, engine_probe):
    model_client = ModelServerClient(
        base_url=settings.ollama_url,
        model=settings.ollama_model,
        timeout_s=5.0,
        opener=model_server,
    )
    built = build_services(
        settings,
        clock=clock,
        dispatcher=WorkflowDispatcher(
            engine_base_url=settings.n8n_url,
            webhooks=settings.webhooks,
            public_base_url=settings.api_base_url,
            timeout_s=settings.dispatch_timeout_s,
            transport=transport,
        ),
        model_client=model_client,
        health=HealthChecker(
            engine_url=settings.n8n_url,
            webhooks=settings.webhooks,
            model_client=model_client,
            probe=engine_probe,
            clock=clock,
        ),
    )
    yield built
    built.dispatcher.shutdown(wait=True)


@pytest.fixture
def app(settings, services):
    return create_app(settings, services)


@pytest.fixture
def client(app) -> TestClient:
    # No context manager: the lifespan (and its sweep thread) stays off in tests.
    return TestClient(app)
