"""
In-memory registry of asynchronous operations.

Every operation created by the request path lives here until it expires or is
removed. All reads and read-modify-write sequences run under one re-entrant
lock, so a terminal transition and an expiry eviction can never interleave
with another writer. Readers always receive detached copies.

Lifecycle:
  pending -> in_progress -> completed | failed
  (pending may go straight to a terminal status; terminal statuses are final)
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from broker.errors import ApiError, DuplicateOperation

logger = logging.getLogger(__name__)

OPERATION_KINDS = ("research", "implement")

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Operation:
    id: str
    kind: str
    status: str
    payload: dict[str, Any]
    created_at: datetime
    last_updated_at: datetime
    expires_at: datetime
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    progress: Any = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_status_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "operation_id": self.id,
            "type": self.kind,
            "status": self.status,
            "timestamp": self.last_updated_at.isoformat(),
        }
        if self.status == STATUS_COMPLETED and self.result is not None:
            doc["result"] = self.result
        if self.status == STATUS_FAILED and self.error is not None:
            doc["error"] = self.error
        if self.progress is not None:
            doc["progress"] = self.progress
        return doc

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status,
            "payload": self.payload,
            "result": self.result,
            "error": self.error,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "expires_at": self.expires_at.isoformat(),
        }


class InMemoryOperationStore:
    ALLOWED_TRANSITIONS: dict[str, set[str]] = {
        STATUS_PENDING: {STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_FAILED},
        STATUS_IN_PROGRESS: {STATUS_COMPLETED, STATUS_FAILED},
        STATUS_COMPLETED: set(),
        STATUS_FAILED: set(),
    }
    MUTABLE_FIELDS = frozenset({"status", "result", "error", "progress"})

    def __init__(self, *, ttl_hours: float = 24.0, clock: Clock | None = None) -> None:
        if ttl_hours <= 0:
            raise ValueError("ttl_hours must be positive")
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock or utcnow
        self._lock = threading.RLock()
        self._operations: dict[str, Operation] = {}
        logger.info("Initialized operation store with %sh expiry", ttl_hours)

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _snapshot(operation: Operation) -> Operation:
        return copy.deepcopy(operation)

    def _live_locked(self, operation_id: str, now: datetime) -> Operation | None:
        operation = self._operations.get(operation_id)
        if operation is None:
            return None
        if operation.is_expired(now):
            del self._operations[operation_id]
            logger.debug("Operation expired: %s", operation_id)
            return None
        return operation

    def create(
        self,
        operation_id: str,
        kind: str,
        payload: Mapping[str, Any] | None = None,
        *,
        status: str = STATUS_IN_PROGRESS,
    ) -> Operation:
        if not operation_id:
            raise ValueError("operation id is required")
        if status not in (STATUS_PENDING, STATUS_IN_PROGRESS):
            raise ValueError(f"invalid initial status: {status}")
        with self._lock:
            now = self._now()
            if self._live_locked(operation_id, now) is not None:
                raise DuplicateOperation(operation_id)
            operation = Operation(
                id=operation_id,
                kind=kind,
                status=status,
                payload=copy.deepcopy(dict(payload or {})),
                created_at=now,
                last_updated_at=now,
                expires_at=now + self.ttl,
            )
            self._operations[operation_id] = operation
            logger.debug("Operation created: %s (kind=%s, status=%s)", operation_id, kind, status)
            return self._snapshot(operation)

    def get(self, operation_id: str) -> Operation | None:
        with self._lock:
            operation = self._live_locked(operation_id, self._now())
            if operation is None:
                return None
            return self._snapshot(operation)

    def update(self, operation_id: str, fields: Mapping[str, Any]) -> Operation | None:
        unknown = set(fields) - self.MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"fields are not updatable: {sorted(unknown)}")
        with self._lock:
            now = self._now()
            operation = self._live_locked(operation_id, now)
            if operation is None:
                logger.debug("Cannot update missing operation: %s", operation_id)
                return None
            if operation.is_terminal:
                logger.debug("Operation %s already %s, update ignored", operation_id, operation.status)
                return self._snapshot(operation)

            new_status = fields.get("status", operation.status)
            if new_status != operation.status:
                allowed = self.ALLOWED_TRANSITIONS.get(operation.status, set())
                if new_status not in allowed:
                    raise ApiError(
                        code="OPERATION_TRANSITION_INVALID",
                        message=f"invalid transition: {operation.status} -> {new_status}",
                        error_class="business_rule",
                        retryable=False,
                        http_status=409,
                    )
            if new_status == STATUS_COMPLETED and "error" in fields:
                raise ValueError("a completed operation cannot carry an error")
            if new_status == STATUS_FAILED and "result" in fields:
                raise ValueError("a failed operation cannot carry a result")
            if new_status not in TERMINAL_STATUSES and ("result" in fields or "error" in fields):
                raise ValueError("result and error are only set by a terminal transition")

            if "progress" in fields:
                operation.progress = copy.deepcopy(fields["progress"])
            if new_status == STATUS_COMPLETED:
                operation.result = copy.deepcopy(fields.get("result"))
                operation.completed_at = now
            elif new_status == STATUS_FAILED:
                operation.error = copy.deepcopy(fields.get("error"))
                operation.completed_at = now
            operation.status = new_status
            operation.last_updated_at = now
            logger.debug("Operation updated: %s (status=%s)", operation_id, operation.status)
            return self._snapshot(operation)

    def transition(
        self,
        operation_id: str,
        status: str,
        *,
        result: Mapping[str, Any] | None = None,
        error: Mapping[str, Any] | None = None,
    ) -> tuple[Operation | None, bool]:
        """Terminal transition; the flag tells whether this call set the outcome."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status}")
        with self._lock:
            operation = self._live_locked(operation_id, self._now())
            if operation is None:
                return None, False
            if operation.is_terminal:
                logger.debug("Operation %s already %s, transition ignored", operation_id, operation.status)
                return self._snapshot(operation), False
            if status == STATUS_COMPLETED:
                fields: dict[str, Any] = {"status": status, "result": dict(result or {})}
            else:
                fields = {"status": status, "error": dict(error or {})}
            return self.update(operation_id, fields), True

    def complete(self, operation_id: str, result: Mapping[str, Any] | None) -> Operation | None:
        return self.transition(operation_id, STATUS_COMPLETED, result=result)[0]

    def fail(self, operation_id: str, error: Mapping[str, Any] | None) -> Operation | None:
        return self.transition(operation_id, STATUS_FAILED, error=error)[0]

    def set_progress(self, operation_id: str, progress: Any) -> Operation | None:
        return self.update(operation_id, {"progress": progress})

    def remove(self, operation_id: str) -> bool:
        with self._lock:
            if self._operations.pop(operation_id, None) is None:
                return False
        logger.debug("Operation removed: %s", operation_id)
        return True

    def sweep(self) -> int:
        with self._lock:
            now = self._now()
            expired = [op_id for op_id, op in self._operations.items() if op.is_expired(now)]
            for op_id in expired:
                del self._operations[op_id]
        if expired:
            logger.info("Cleaned up %d expired operations", len(expired))
        return len(expired)

    def count(self) -> int:
        with self._lock:
            return len(self._operations)

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()


class OperationSweeper:
    """Evicts expired operations once at start and then every interval."""

    def __init__(self, store: InMemoryOperationStore, *, interval_s: float = 3600.0) -> None:
        self.store = store
        self.interval_s = max(0.01, float(interval_s))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self.store.sweep()
        self._thread = threading.Thread(target=self._run, name="operation-sweeper", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.store.sweep()
            except Exception:
                # Keep the sweep loop alive for the lifetime of the process.
                logger.exception("Operation sweep failed")

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
            self._thread = None
