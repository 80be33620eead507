from __future__ import annotations

import logging
from urllib.error import HTTPError, URLError

import pytest

from broker.dispatcher import WorkflowDispatcher
from broker.errors import UpstreamUnreachable

from conftest import FakeResponse, RecordingTransport


def _dispatcher(transport) -> WorkflowDispatcher:
    return WorkflowDispatcher(
        engine_base_url="http://engine.test/webhook",
        webhooks={"research": "process-research", "implement": "/process-implementation"},
        public_base_url="http://broker.test/",
        timeout_s=7.5,
        transport=transport,
    )


def test_callback_url_is_deterministic():
    dispatcher = _dispatcher(RecordingTransport())
    try:
        url = dispatcher.build_callback_url("1234", "research")
        assert url == "http://broker.test/api/callback/research/1234"
        assert dispatcher.build_callback_url("1234", "research") == url
    finally:
        dispatcher.shutdown()


def test_webhook_url_joins_engine_base_and_path():
    dispatcher = _dispatcher(RecordingTransport())
    try:
        assert dispatcher.webhook_url("research") == "http://engine.test/webhook/process-research"
        assert dispatcher.webhook_url("implement") == "http://engine.test/webhook/process-implementation"
        with pytest.raises(ValueError):
            dispatcher.webhook_url("unknown")
    finally:
        dispatcher.shutdown()


def test_dispatch_posts_job_fields_and_callback_url():
    transport = RecordingTransport(response={"accepted": True})
    dispatcher = _dispatcher(transport)
    try:
        result = dispatcher.dispatch(
            operation_id="op-1",
            kind="research",
            fields={"processType": "Onboarding", "industry": "Finance"},
        )
    finally:
        dispatcher.shutdown()

    assert result == {"accepted": True}
    assert transport.calls == [
        {
            "endpoint": "http://engine.test/webhook/process-research",
            "payload": {
                "operationId": "op-1",
                "processType": "Onboarding",
                "industry": "Finance",
                "callbackUrl": "http://broker.test/api/callback/research/op-1",
            },
            "timeout_s": 7.5,
        }
    ]


@pytest.mark.parametrize(
    "error",
    [
        URLError("connection refused"),
        TimeoutError("timed out"),
        HTTPError("http://engine.test", 500, "boom", {}, None),
    ],
)
def test_dispatch_failure_is_upstream_unreachable(error):
    dispatcher = _dispatcher(RecordingTransport(error=error))
    try:
        with pytest.raises(UpstreamUnreachable) as exc_info:
            dispatcher.dispatch(operation_id="op-1", kind="implement", fields={})
    finally:
        dispatcher.shutdown()
    assert exc_info.value.http_status == 502
    assert exc_info.value.retryable is True
    assert exc_info.value.details["upstream"] == "workflow_engine"


def test_background_dispatch_logs_failure_without_raising(caplog):
    dispatcher = _dispatcher(RecordingTransport(error=URLError("down")))
    with caplog.at_level(logging.ERROR, logger="broker.dispatcher"):
        future = dispatcher.dispatch_in_background(operation_id="op-9", kind="research", fields={})
        assert future.result(timeout=2) is None
    dispatcher.shutdown(wait=True)
    assert any("op-9" in record.getMessage() for record in caplog.records)


def test_background_dispatch_returns_response():
    transport = RecordingTransport(response={"ok": 1})
    dispatcher = _dispatcher(transport)
    future = dispatcher.dispatch_in_background(operation_id="op-2", kind="research", fields={"a": 1})
    assert future.result(timeout=2) == {"ok": 1}
    dispatcher.shutdown(wait=True)


def test_default_transport_tolerates_non_json_body(monkeypatch):
    seen = {}

    def fake_urlopen(req, timeout):
        seen["url"] = req.full_url
        seen["timeout"] = timeout
        seen["content_type"] = req.get_header("Content-type")
        return FakeResponse(b"Workflow was started")

    monkeypatch.setattr("broker.dispatcher.request.urlopen", fake_urlopen)
    dispatcher = WorkflowDispatcher(
        engine_base_url="http://engine.test/webhook/",
        webhooks={"research": "process-research"},
        public_base_url="http://broker.test",
        timeout_s=3,
    )
    try:
        result = dispatcher.dispatch(operation_id="op-3", kind="research", fields={})
    finally:
        dispatcher.shutdown()
    assert result == "Workflow was started"
    assert seen == {
        "url": "http://engine.test/webhook/process-research",
        "timeout": 3,
        "content_type": "application/json",
    }


def test_engine_url_without_scheme_is_upstream_unreachable():
    dispatcher = WorkflowDispatcher(
        engine_base_url="engine.internal/webhook",
        webhooks={"research": "process-research"},
        public_base_url="http://broker.test",
    )
    try:
        with pytest.raises(UpstreamUnreachable) as exc_info:
            dispatcher.dispatch(operation_id="op-4", kind="research", fields={})
    finally:
        dispatcher.shutdown()
    assert "unknown url type" in exc_info.value.cause


def test_background_dispatch_logs_unreachable_engine_url(caplog):
    dispatcher = WorkflowDispatcher(
        engine_base_url="engine.internal/webhook",
        webhooks={"research": "process-research"},
        public_base_url="http://broker.test",
    )
    with caplog.at_level(logging.ERROR, logger="broker.dispatcher"):
        future = dispatcher.dispatch_in_background(operation_id="op-5", kind="research", fields={})
        assert future.exception(timeout=2) is None
        assert future.result() is None
    dispatcher.shutdown(wait=True)
    assert any("op-5" in record.getMessage() for record in caplog.records)


def test_background_dispatch_logs_unexpected_errors(caplog):
    dispatcher = _dispatcher(RecordingTransport(error=RuntimeError("bad payload")))
    with caplog.at_level(logging.ERROR, logger="broker.dispatcher"):
        future = dispatcher.dispatch_in_background(operation_id="op-6", kind="research", fields={})
        assert future.result(timeout=2) is None
    dispatcher.shutdown(wait=True)
    records = [r for r in caplog.records if "op-6" in r.getMessage()]
    assert records
    assert records[0].exc_info is not None
