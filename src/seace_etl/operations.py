"""Operation registry: lifecycle, progress and history of background jobs."""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from .models import (
    Counts,
    ErrorType,
    Operation,
    OperationDetails,
    OperationKind,
    OperationMessage,
    OperationPage,
    OperationStats,
    OperationStatus,
)
from .store import StateStore

logger = logging.getLogger(__name__)

STORE_NAMESPACE = "operations"

EVENT_CREATED = "created"
EVENT_STARTED = "started"
EVENT_PROGRESS = "progress"
EVENT_MESSAGE = "message"
EVENT_COMPLETED = "completed"
EVENT_FAILED = "failed"

Listener = Callable[[str, Operation], None]


class OperationNotFound(LookupError):
    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Operation '{operation_id}' not found")


class InvalidTransition(ValueError):
    """A lifecycle or progress update that the current state does not allow."""


class AlreadyTerminal(ValueError):
    """A second, different terminal call on a finished operation."""

    def __init__(self, operation_id: str, status: OperationStatus):
        self.operation_id = operation_id
        self.status = status
        super().__init__(f"Operation '{operation_id}' is already {status.value}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_percentage(step_current: int, step_total: int) -> int:
    """Integer share of work done; 0 when there is nothing to do."""
    if step_total <= 0:
        return 0
    return int(round(100 * min(step_current, step_total) / step_total))


def _add_counts(counts: Counts, delta: Union[Counts, Dict[str, int], None]) -> Counts:
    if not delta:
        return counts
    if isinstance(delta, Counts):
        delta = delta.model_dump()
    return Counts(
        inserted=counts.inserted + int(delta.get("inserted", 0)),
        updated=counts.updated + int(delta.get("updated", 0)),
        errors=counts.errors + int(delta.get("errors", 0)),
    )


class OperationRegistry:
    """
    Authoritative store of operation state.

    Writers serialize on one lock and replace the stored snapshot with a new
    immutable copy; readers take the current snapshot without locking.
    Persistence and listener callbacks run after the lock is released.
    """

    def __init__(
        self,
        store: Optional[StateStore] = None,
        max_history: int = 200,
        max_messages: int = 200,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self.max_history = max_history
        self.max_messages = max_messages
        self._clock = clock
        self._operations: Dict[str, Operation] = {}
        self._write_lock = RLock()
        self._listeners: List[Listener] = []
        self._version = 0
        if store is not None:
            self._load()

    # Internals

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    def _load(self) -> None:
        loaded: Dict[str, Operation] = {}
        for operation_id, payload in self._store.load(STORE_NAMESPACE).items():
            try:
                loaded[operation_id] = Operation.model_validate(payload)
            except ValidationError:
                logger.warning("Skipping malformed operation '%s' in state store", operation_id)
        with self._write_lock:
            self._operations = loaded
            self._trim_history_locked()

    def _require(self, operation_id: str) -> Operation:
        operation = self._operations.get(operation_id)
        if operation is None:
            raise OperationNotFound(operation_id)
        return operation

    def _trim_history_locked(self) -> None:
        """Drop the oldest finished operations beyond the history bound."""
        if self.max_history <= 0 or len(self._operations) <= self.max_history:
            return
        finished = sorted(
            (op for op in self._operations.values() if op.is_terminal),
            key=lambda op: op.created_at,
        )
        to_remove = len(self._operations) - self.max_history
        for operation in finished[:to_remove]:
            self._operations.pop(operation.operation_id, None)

    def _commit_locked(self, operation: Operation) -> tuple[int, Dict[str, Any]]:
        self._operations[operation.operation_id] = operation
        if operation.is_terminal:
            self._trim_history_locked()
        self._version += 1
        items = {
            op_id: op.model_dump(mode="json", by_alias=True)
            for op_id, op in self._operations.items()
        } if self._store is not None else {}
        return self._version, items

    def _after_commit(self, event: str, operation: Operation, snapshot: tuple[int, Dict[str, Any]]) -> None:
        if self._store is not None:
            version, items = snapshot
            self._store.save(STORE_NAMESPACE, items, version=version)
        for listener in list(self._listeners):
            try:
                listener(event, operation)
            except Exception:
                logger.exception("Operation listener failed for %s on %s", event, operation.operation_id)

    def _append_message(
        self, operation: Operation, text: str, credential_alias: Optional[str]
    ) -> List[OperationMessage]:
        messages = list(operation.messages)
        messages.append(
            OperationMessage(timestamp=self._now_iso(), text=text, credential_alias=credential_alias)
        )
        if len(messages) > self.max_messages:
            messages = messages[-self.max_messages:]
        return messages

    def _require_running(self, operation: Operation, action: str) -> None:
        if operation.status != OperationStatus.RUNNING:
            raise InvalidTransition(
                f"Cannot {action} operation '{operation.operation_id}' in status {operation.status.value}"
            )

    # Listeners

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Lifecycle

    def create(self, kind: OperationKind, params_snapshot: Optional[Dict[str, Any]] = None) -> str:
        now = self._now_iso()
        operation = Operation(
            operation_id=str(uuid.uuid4()),
            kind=OperationKind(kind),
            search_params=dict(params_snapshot or {}),
            current_message="Queued",
            created_at=now,
            updated_at=now,
        )
        with self._write_lock:
            snapshot = self._commit_locked(operation)
        self._after_commit(EVENT_CREATED, operation, snapshot)
        logger.info("Created %s operation %s", operation.kind.value, operation.operation_id)
        return operation.operation_id

    def transition_to_running(self, operation_id: str, step_total: int = 0, message: str = "Started") -> Operation:
        with self._write_lock:
            current = self._require(operation_id)
            if current.status != OperationStatus.PENDING:
                raise InvalidTransition(
                    f"Operation '{operation_id}' cannot start from status {current.status.value}"
                )
            now = self._now_iso()
            updated = current.model_copy(update={
                "status": OperationStatus.RUNNING,
                "step_total": max(int(step_total), 0),
                "current_message": message,
                "messages": self._append_message(current, message, None),
                "started_at": now,
                "updated_at": now,
            })
            snapshot = self._commit_locked(updated)
        self._after_commit(EVENT_STARTED, updated, snapshot)
        return updated

    def report_progress(
        self,
        operation_id: str,
        step_current: int,
        message: Optional[str] = None,
        counts_delta: Union[Counts, Dict[str, int], None] = None,
        step_total: Optional[int] = None,
        percentage: Optional[int] = None,
        credential_alias: Optional[str] = None,
    ) -> Operation:
        """
        Record forward progress of a running operation.

        `step_current` may not go backwards and `percentage` never decreases.
        The percentage stays below 100 until `complete` is called.

        Raises:
            InvalidTransition: operation not running, or step_current regressed.
        """
        with self._write_lock:
            current = self._require(operation_id)
            self._require_running(current, "report progress on")
            if step_current < current.step_current:
                raise InvalidTransition(
                    f"step_current went backwards for '{operation_id}' "
                    f"({current.step_current} -> {step_current})"
                )
            total = current.step_total if step_total is None else max(int(step_total), 0)
            if percentage is None:
                percentage = derive_percentage(step_current, total)
            percentage = min(max(int(percentage), current.percentage), 99)

            update: Dict[str, Any] = {
                "step_current": int(step_current),
                "step_total": total,
                "percentage": percentage,
                "counts": _add_counts(current.counts, counts_delta),
                "updated_at": self._now_iso(),
            }
            if credential_alias is not None:
                update["credential_alias"] = credential_alias
            if message is not None and message != current.current_message:
                update["current_message"] = message
                update["messages"] = self._append_message(
                    current, message, update.get("credential_alias", current.credential_alias)
                )
            updated = current.model_copy(update=update)
            snapshot = self._commit_locked(updated)
        self._after_commit(EVENT_PROGRESS, updated, snapshot)
        return updated

    def narrate(self, operation_id: str, message: str, credential_alias: Optional[str] = None) -> Operation:
        """Append an advisory status line without moving progress."""
        with self._write_lock:
            current = self._require(operation_id)
            self._require_running(current, "narrate")
            alias = credential_alias if credential_alias is not None else current.credential_alias
            updated = current.model_copy(update={
                "current_message": message,
                "credential_alias": alias,
                "messages": self._append_message(current, message, alias),
                "updated_at": self._now_iso(),
            })
            snapshot = self._commit_locked(updated)
        self._after_commit(EVENT_MESSAGE, updated, snapshot)
        return updated

    def _duration_ms(self, operation: Operation) -> Optional[int]:
        if not operation.started_at:
            return None
        started = datetime.fromisoformat(operation.started_at)
        return max(int((self._clock() - started).total_seconds() * 1000), 0)

    def complete(self, operation_id: str, details: OperationDetails) -> Operation:
        """
        Finish successfully. Repeating the same call is a no-op.

        Raises:
            AlreadyTerminal: the operation already finished differently.
            InvalidTransition: the operation never started.
        """
        with self._write_lock:
            current = self._require(operation_id)
            if current.is_terminal:
                if (
                    current.status == OperationStatus.COMPLETED
                    and current.details is not None
                    and current.details.model_dump() == details.model_dump()
                ):
                    return current
                raise AlreadyTerminal(operation_id, current.status)
            self._require_running(current, "complete")
            detail_kind = getattr(details, "kind", None)
            if detail_kind != current.kind.value:
                raise ValueError(
                    f"Details of kind '{detail_kind}' do not match operation kind '{current.kind.value}'"
                )
            message = "Completed"
            now = self._now_iso()
            updated = current.model_copy(update={
                "status": OperationStatus.COMPLETED,
                "percentage": 100,
                "step_current": max(current.step_current, current.step_total),
                "details": details,
                "counts": Counts(inserted=details.inserted, updated=details.updated, errors=details.errors),
                "current_message": message,
                "messages": self._append_message(current, message, current.credential_alias),
                "updated_at": now,
                "finished_at": now,
                "duration_ms": self._duration_ms(current),
            })
            snapshot = self._commit_locked(updated)
        self._after_commit(EVENT_COMPLETED, updated, snapshot)
        logger.info("Operation %s completed", operation_id)
        return updated

    def fail(self, operation_id: str, message: str, error_type: Optional[ErrorType] = None) -> Operation:
        """
        Finish with an error. Repeating the same call is a no-op.

        Raises:
            AlreadyTerminal: the operation already finished differently.
            InvalidTransition: the operation never started.
        """
        error_type = ErrorType(error_type) if error_type else ErrorType.INTERNAL
        with self._write_lock:
            current = self._require(operation_id)
            if current.is_terminal:
                if (
                    current.status == OperationStatus.FAILED
                    and current.error_message == message
                    and current.error_type == error_type
                ):
                    return current
                raise AlreadyTerminal(operation_id, current.status)
            self._require_running(current, "fail")
            now = self._now_iso()
            updated = current.model_copy(update={
                "status": OperationStatus.FAILED,
                "error_message": message,
                "error_type": error_type,
                "current_message": message,
                "messages": self._append_message(current, message, current.credential_alias),
                "updated_at": now,
                "finished_at": now,
                "duration_ms": self._duration_ms(current),
            })
            snapshot = self._commit_locked(updated)
        self._after_commit(EVENT_FAILED, updated, snapshot)
        logger.warning("Operation %s failed: %s", operation_id, message)
        return updated

    # Reads

    def get(self, operation_id: str) -> Operation:
        return self._require(operation_id).model_copy(deep=True)

    def list(
        self,
        kind: Optional[OperationKind] = None,
        status: Optional[OperationStatus] = None,
        operation_id: Optional[str] = None,
        page: int = 1,
        size: int = 50,
    ) -> OperationPage:
        """Newest-first page of operations matching the filters."""
        page = max(int(page), 1)
        size = max(int(size), 1)
        items = [
            op for op in list(self._operations.values())
            if (kind is None or op.kind == kind)
            and (status is None or op.status == status)
            and (operation_id is None or op.operation_id == operation_id)
        ]
        items.sort(key=lambda op: op.created_at, reverse=True)
        total = len(items)
        start = (page - 1) * size
        return OperationPage(
            items=[op.model_copy(deep=True) for op in items[start:start + size]],
            total=total,
            page=page,
            size=size,
            pages=math.ceil(total / size) if total else 0,
        )

    def stats(self) -> OperationStats:
        operations = list(self._operations.values())
        stats = OperationStats(total=len(operations))
        durations: List[int] = []
        for op in operations:
            setattr(stats, op.status.value, getattr(stats, op.status.value) + 1)
            stats.by_kind[op.kind.value] = stats.by_kind.get(op.kind.value, 0) + 1
            if op.status == OperationStatus.COMPLETED and op.duration_ms is not None:
                durations.append(op.duration_ms)
        if durations:
            stats.avg_duration_ms = int(round(sum(durations) / len(durations)))
        return stats

    def reap_stale(
        self,
        max_idle_seconds: int,
        is_queued: Optional[Callable[[str], bool]] = None,
    ) -> List[str]:
        """
        Fail unfinished operations that have not been updated for too long.

        `is_queued` tells which pending operations are still waiting for a
        worker; those are left alone until they start.
        """
        cutoff = self._clock() - timedelta(seconds=max_idle_seconds)
        reaped: List[str] = []
        for operation in list(self._operations.values()):
            if operation.is_terminal:
                continue
            if (
                operation.status == OperationStatus.PENDING
                and is_queued is not None
                and is_queued(operation.operation_id)
            ):
                continue
            if datetime.fromisoformat(operation.updated_at) > cutoff:
                continue
            message = f"No progress for more than {max_idle_seconds} seconds; marked as abandoned"
            try:
                if operation.status == OperationStatus.PENDING:
                    self.transition_to_running(operation.operation_id, message="Recovered by reaper")
                self.fail(operation.operation_id, message, error_type=ErrorType.STALE)
            except (InvalidTransition, AlreadyTerminal):
                # Its worker finished it between the scan and the update.
                continue
            reaped.append(operation.operation_id)
        if reaped:
            logger.warning("Reaped %d stale operation(s)", len(reaped))
        return reaped
