"""API-key authentication, log redaction and request context headers."""

from __future__ import annotations

import pytest

from broker.errors import ApiError
from broker.main import create_app
from broker.security import ApiKeyConfig, redact_sensitive, verify_api_key
from broker.settings import BrokerSettings

API_KEY = "broker-test-key-123"


@pytest.fixture
def settings() -> BrokerSettings:
    return BrokerSettings(
        api_base_url="http://broker.test",
        n8n_url="http://engine.test/webhook",
        ollama_url="http://models.test/api",
        servicenow_instance="acme.service-now.com",
        enable_api_key_auth=True,
        api_key=API_KEY,
    )


class TestApiKeyAuthentication:
    def test_missing_key_is_unauthorized(self, client, transport):
        resp = client.post("/api/research", json={"processType": "Incident", "industry": "Retail"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
        assert resp.headers["x-trace-id"]
        assert transport.calls == []

    def test_wrong_key_is_unauthorized(self, client):
        resp = client.get("/api/status/00000000-0000-4000-8000-000000000000", headers={"x-api-key": "nope"})
        assert resp.status_code == 401

    def test_valid_key_is_admitted(self, client):
        resp = client.post(
            "/api/research",
            json={"processType": "Incident", "industry": "Retail"},
            headers={"x-api-key": API_KEY},
        )
        assert resp.status_code == 202

    def test_health_endpoints_need_no_key(self, client):
        assert client.get("/healthz").status_code == 200
        assert client.get("/health").status_code == 200

    def test_enabling_auth_without_key_fails_at_startup(self):
        with pytest.raises(ValueError):
            create_app(BrokerSettings(enable_api_key_auth=True, api_key=""))


def test_verify_api_key_is_noop_when_disabled():
    verify_api_key(presented=None, cfg=ApiKeyConfig(enabled=False, api_key=""))


def test_verify_api_key_rejects_mismatch():
    with pytest.raises(ApiError) as exc_info:
        verify_api_key(presented="wrong", cfg=ApiKeyConfig(enabled=True, api_key="right"))
    assert exc_info.value.http_status == 401


def test_api_key_only_guards_api_paths():
    cfg = ApiKeyConfig(enabled=True, api_key="k")
    assert cfg.applies_to("/api/research")
    assert not cfg.applies_to("/health")


def test_redact_sensitive_masks_keys_and_token_like_values():
    redacted = redact_sensitive(
        {
            "x-api-key": "abc",
            "Authorization": "Bearer something",
            "nested": [{"password": "p"}, "bearer abcdefghijklmnopqrstuvwxyz"],
            "accept": "application/json",
        }
    )
    assert redacted == {
        "x-api-key": "***REDACTED***",
        "Authorization": "***REDACTED***",
        "nested": [{"password": "***REDACTED***"}, "***REDACTED***"],
        "accept": "application/json",
    }


def test_request_and_trace_ids_are_echoed(client):
    resp = client.get("/healthz", headers={"x-request-id": "req_fixed", "x-trace-id": "trace-fixed"})
    assert resp.headers["x-request-id"] == "req_fixed"
    assert resp.headers["x-trace-id"] == "trace-fixed"
    assert resp.json()["meta"]["trace_id"] == "trace-fixed"
