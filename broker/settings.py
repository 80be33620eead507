from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    return env.get(name, "").strip() or default


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass(frozen=True)
class BrokerSettings:
    host: str = "0.0.0.0"
    port: int = 3000
    api_base_url: str = "http://localhost:3000"
    n8n_url: str = "http://localhost:5678/webhook"
    research_webhook: str = "process-research"
    implement_webhook: str = "process-implementation"
    dispatch_timeout_s: float = 30.0
    dispatch_max_workers: int = 4
    ollama_url: str = "http://localhost:11434/api"
    ollama_model: str = "turboforge-architect"
    ollama_timeout_s: float = 120.0
    servicenow_instance: str = "yourinstance.service-now.com"
    operation_expiry_hours: float = 24.0
    operation_sweep_interval_s: float = 3600.0
    enable_api_key_auth: bool = False
    api_key: str = ""
    rate_limit_window_s: float = 60.0
    rate_limit_max_requests: int = 60
    cors_allow_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BrokerSettings":
        env = os.environ if environ is None else environ
        expiry_hours = _env_float(env, "OPERATION_EXPIRY_HOURS", default=24.0)
        if expiry_hours <= 0:
            logger.warning("Invalid OPERATION_EXPIRY_HOURS, using default: 24")
            expiry_hours = 24.0
        log_level = _env_str(env, "LOG_LEVEL", "INFO").upper()
        if log_level not in VALID_LOG_LEVELS:
            logger.warning("Invalid LOG_LEVEL: %s, using default: INFO", log_level)
            log_level = "INFO"
        return cls(
            host=_env_str(env, "HOST", "0.0.0.0"),
            port=_env_int(env, "PORT", default=3000, minimum=1),
            api_base_url=_env_str(env, "API_BASE_URL", "http://localhost:3000"),
            n8n_url=_env_str(env, "N8N_URL", "http://localhost:5678/webhook"),
            research_webhook=env.get("RESEARCH_WEBHOOK", "process-research").strip(),
            implement_webhook=env.get("IMPLEMENT_WEBHOOK", "process-implementation").strip(),
            dispatch_timeout_s=_env_float(env, "DISPATCH_TIMEOUT_S", default=30.0, minimum=0.1),
            dispatch_max_workers=_env_int(env, "DISPATCH_MAX_WORKERS", default=4, minimum=1),
            ollama_url=_env_str(env, "OLLAMA_URL", "http://localhost:11434/api"),
            ollama_model=_env_str(env, "OLLAMA_MODEL", "turboforge-architect"),
            ollama_timeout_s=_env_float(env, "OLLAMA_TIMEOUT_S", default=120.0, minimum=0.1),
            servicenow_instance=_env_str(env, "SERVICENOW_INSTANCE", "yourinstance.service-now.com"),
            operation_expiry_hours=expiry_hours,
            operation_sweep_interval_s=_env_float(env, "OPERATION_SWEEP_INTERVAL_S", default=3600.0, minimum=1.0),
            enable_api_key_auth=_env_bool(env, "ENABLE_API_KEY_AUTH", default=False),
            api_key=env.get("API_KEY", "").strip(),
            rate_limit_window_s=_env_float(env, "RATE_LIMIT_WINDOW_S", default=60.0, minimum=1.0),
            rate_limit_max_requests=_env_int(env, "RATE_LIMIT_MAX_REQUESTS", default=60, minimum=1),
            cors_allow_origins=tuple(_split_csv(env.get("CORS_ALLOW_ORIGINS", "*"))),
            log_level=log_level,
        )

    @property
    def webhooks(self) -> dict[str, str]:
        return {
            "research": self.research_webhook or "process-research",
            "implement": self.implement_webhook or "process-implementation",
        }


def validate_settings(settings: BrokerSettings) -> list[str]:
    """Log warnings for suspicious values; raise for unusable ones.

    Returns the warnings so callers (and tests) can inspect them.
    """
    if settings.enable_api_key_auth and not settings.api_key:
        raise ValueError("API key authentication is enabled but API_KEY is not set")

    warnings: list[str] = []
    if not settings.n8n_url.startswith("http"):
        warnings.append(f"N8N_URL doesn't start with http(s): {settings.n8n_url}")
    if not settings.ollama_url.startswith("http"):
        warnings.append(f"OLLAMA_URL doesn't start with http(s): {settings.ollama_url}")
    if not settings.research_webhook:
        warnings.append("RESEARCH_WEBHOOK is not set, using default: process-research")
    if not settings.implement_webhook:
        warnings.append("IMPLEMENT_WEBHOOK is not set, using default: process-implementation")
    if "yourinstance" in settings.servicenow_instance:
        warnings.append(f"SERVICENOW_INSTANCE is set to a placeholder: {settings.servicenow_instance}")
    for message in warnings:
        logger.warning(message)
    return warnings


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)
