"""
Reconciliation of workflow-engine callbacks with tracked operations.

A callback names an operation id and reports either a result or an error. The
reconciler looks the operation up, post-processes a successful result for the
operation's kind and performs the single terminal transition. Unknown or
expired ids are a routine outcome ("not processed"), and a replayed callback
on an operation that is already terminal is accepted without touching the
stored result or error.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from broker.operation_store import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    InMemoryOperationStore,
    Operation,
    utcnow,
)

logger = logging.getLogger(__name__)

SCORE_KEYS = ("authorityScore", "authority_score", "score")


@dataclass(frozen=True)
class CallbackPayload:
    operation_id: str
    success: bool
    result: Mapping[str, Any] | None = None
    error: Any = None


@dataclass(frozen=True)
class ReconcileOutcome:
    processed: bool
    status: str | None = None
    applied: bool = False
    kind_mismatch: bool = False


NOT_PROCESSED = ReconcileOutcome(processed=False)


def authority_score(item: Any) -> float:
    if not isinstance(item, Mapping):
        return 0.0
    for key in SCORE_KEYS:
        value = item.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return float(value)
    return 0.0


def sort_by_authority(items: list[Any]) -> list[Any]:
    # sorted() is stable with reverse=True: equal scores keep their arrival order.
    return sorted(items, key=authority_score, reverse=True)


def normalize_error(error: Any) -> dict[str, Any]:
    if isinstance(error, Mapping):
        return dict(error)
    if error is None:
        return {"message": "unknown error"}
    return {"message": str(error)}


def elapsed_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))


class CallbackReconciler:
    def __init__(
        self,
        *,
        store: InMemoryOperationStore,
        external_instance: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.external_instance = external_instance
        self._clock = clock or utcnow
        self._post_processors: dict[str, Callable[[dict[str, Any], Operation, datetime], dict[str, Any]]] = {
            "research": self._post_process_research,
            "implement": self._post_process_implement,
        }

    def reconcile(self, *, expected_kind: str, payload: CallbackPayload) -> ReconcileOutcome:
        operation = self.store.get(payload.operation_id)
        if operation is None:
            logger.warning(
                "%s callback received for unknown operation: %s",
                expected_kind,
                payload.operation_id,
            )
            return NOT_PROCESSED

        kind_mismatch = operation.kind != expected_kind
        if kind_mismatch:
            logger.warning(
                "Kind mismatch in %s callback for operation %s: recorded kind is %s",
                expected_kind,
                payload.operation_id,
                operation.kind,
            )

        if operation.is_terminal:
            logger.info(
                "Operation %s already %s, ignoring replayed callback",
                payload.operation_id,
                operation.status,
            )
            return ReconcileOutcome(processed=True, status=operation.status, kind_mismatch=kind_mismatch)

        now = self._clock()
        if payload.success:
            result = self._post_process(expected_kind, dict(payload.result or {}), operation, now)
            stored, applied = self.store.transition(payload.operation_id, STATUS_COMPLETED, result=result)
            if applied:
                logger.info("%s operation completed successfully: %s", expected_kind, payload.operation_id)
        else:
            error = normalize_error(payload.error)
            error.setdefault("timestamp", now.isoformat())
            stored, applied = self.store.transition(payload.operation_id, STATUS_FAILED, error=error)
            if applied:
                logger.error(
                    "%s operation failed: %s (%s)",
                    expected_kind,
                    payload.operation_id,
                    error.get("message"),
                )

        if stored is None:
            # Expired or removed between lookup and transition.
            return NOT_PROCESSED
        return ReconcileOutcome(
            processed=True,
            status=stored.status,
            applied=applied,
            kind_mismatch=kind_mismatch,
        )

    def _post_process(
        self,
        kind: str,
        result: dict[str, Any],
        operation: Operation,
        now: datetime,
    ) -> dict[str, Any]:
        processor = self._post_processors.get(kind)
        if processor is None:
            result["metadata"] = self._metadata(operation, now)
            return result
        return processor(result, operation, now)

    def _metadata(self, operation: Operation, now: datetime) -> dict[str, Any]:
        return {
            "serviceNowInstance": self.external_instance,
            "timestamp": now.isoformat(),
            "processingTime": elapsed_ms(operation.created_at, now),
        }

    def _post_process_research(
        self,
        result: dict[str, Any],
        operation: Operation,
        now: datetime,
    ) -> dict[str, Any]:
        if isinstance(result.get("sources"), list):
            result["sources"] = sort_by_authority(result["sources"])
        research_data = result.get("researchData")
        if isinstance(research_data, Mapping) and isinstance(research_data.get("searchResults"), list):
            result["researchData"] = {
                **research_data,
                "searchResults": sort_by_authority(research_data["searchResults"]),
            }
        metadata = self._metadata(operation, now)
        metadata["confidence"] = result.get("confidence") or {"overall": "medium"}
        result["metadata"] = metadata
        return result

    def _post_process_implement(
        self,
        result: dict[str, Any],
        operation: Operation,
        now: datetime,
    ) -> dict[str, Any]:
        result["links"] = self.build_links(result)
        result["metadata"] = self._metadata(operation, now)
        return result

    def build_links(self, result: Mapping[str, Any]) -> dict[str, str]:
        instance = self.external_instance
        links: dict[str, str] = {}
        process_id = result.get("processId")
        if process_id:
            links["admin"] = f"https://{instance}/x_312987_turbofo_0_process.do?sys_id={process_id}"
            links["user"] = f"https://{instance}/sp?id=tf_step_form&process={process_id}"
        links["processList"] = f"https://{instance}/nav_to.do?uri=x_312987_turbofo_0_process_list.do"
        return links
