"""Composition root: builds the process-scoped services from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from broker.callbacks import CallbackReconciler
from broker.dispatcher import WorkflowDispatcher
from broker.health import HealthChecker
from broker.model_server import ModelServerClient
from broker.operation_store import Clock, InMemoryOperationStore, OperationSweeper
from broker.rate_limit import FixedWindowRateLimiter
from broker.security import ApiKeyConfig
from broker.settings import BrokerSettings

logger = logging.getLogger(__name__)


@dataclass
class BrokerServices:
    settings: BrokerSettings
    store: InMemoryOperationStore
    sweeper: OperationSweeper
    reconciler: CallbackReconciler
    dispatcher: WorkflowDispatcher
    model_client: ModelServerClient
    health: HealthChecker
    rate_limiter: FixedWindowRateLimiter
    api_key: ApiKeyConfig

    def start(self) -> None:
        self.sweeper.start()
        logger.info("Broker services started")

    def stop(self) -> None:
        self.sweeper.stop()
        self.dispatcher.shutdown(wait=False)
        logger.info("Broker services stopped")


def build_services(
    settings: BrokerSettings,
    *,
    store: InMemoryOperationStore | None = None,
    dispatcher: WorkflowDispatcher | None = None,
    model_client: ModelServerClient | None = None,
    health: HealthChecker | None = None,
    rate_limiter: FixedWindowRateLimiter | None = None,
    clock: Clock | None = None,
) -> BrokerServices:
    store = store or InMemoryOperationStore(ttl_hours=settings.operation_expiry_hours, clock=clock)
    dispatcher = dispatcher or WorkflowDispatcher(
        engine_base_url=settings.n8n_url,
        webhooks=settings.webhooks,
        public_base_url=settings.api_base_url,
        timeout_s=settings.dispatch_timeout_s,
        max_workers=settings.dispatch_max_workers,
    )
    model_client = model_client or ModelServerClient(
        base_url=settings.ollama_url,
        model=settings.ollama_model,
        timeout_s=settings.ollama_timeout_s,
    )
    health = health or HealthChecker(
        engine_url=settings.n8n_url,
        webhooks=settings.webhooks,
        model_client=model_client,
    )
    return BrokerServices(
        settings=settings,
        store=store,
        sweeper=OperationSweeper(store, interval_s=settings.operation_sweep_interval_s),
        reconciler=CallbackReconciler(store=store, external_instance=settings.servicenow_instance, clock=clock),
        dispatcher=dispatcher,
        model_client=model_client,
        health=health,
        rate_limiter=rate_limiter
        or FixedWindowRateLimiter(
            max_requests=settings.rate_limit_max_requests,
            window_s=settings.rate_limit_window_s,
        ),
        api_key=ApiKeyConfig.from_settings(settings),
    )
