from __future__ import annotations

import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from broker.errors import ApiError
from broker.settings import BrokerSettings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"
SENSITIVE_KEYS = {"authorization", "token", "secret", "password", "api_key", "apikey", "access_token", "x-api-key"}


def redact_sensitive(value: object) -> object:
    if isinstance(value, Mapping):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            key_lower = str(key).lower()
            if key_lower in SENSITIVE_KEYS:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("sk-", "bearer ", "token")):
            return "***REDACTED***"
    return value


@dataclass(frozen=True)
class ApiKeyConfig:
    enabled: bool
    api_key: str
    protected_prefix: str = "/api/"

    @classmethod
    def from_settings(cls, settings: BrokerSettings) -> "ApiKeyConfig":
        return cls(enabled=settings.enable_api_key_auth, api_key=settings.api_key)

    def applies_to(self, path: str) -> bool:
        return self.enabled and path.startswith(self.protected_prefix)


def verify_api_key(*, presented: str | None, cfg: ApiKeyConfig) -> None:
    if not cfg.enabled:
        return
    if not cfg.api_key:
        raise ApiError(
            code="AUTH_UNAUTHORIZED",
            message="api key authentication is not configured",
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )
    if not presented or not hmac.compare_digest(presented.encode("utf-8"), cfg.api_key.encode("utf-8")):
        raise ApiError(
            code="AUTH_UNAUTHORIZED",
            message="Invalid or missing API key",
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )
