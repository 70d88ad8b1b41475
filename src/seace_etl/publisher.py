"""Push-side progress delivery: registry events fanned out to SSE subscribers."""

import asyncio
import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from .models import ErrorType, Operation, OperationKind
from .operations import (
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_MESSAGE,
    EVENT_PROGRESS,
    EVENT_STARTED,
    OperationRegistry,
)

logger = logging.getLogger(__name__)

CONNECTION_ESTABLISHED = "connection_established"
SESSION_STATUS = "session_status"
SESSION_START = "session_start"
PROGRESS_UPDATE = "progress_update"
SCRAPER_STATUS = "scraper_status"
SESSION_COMPLETE = "session_complete"
SESSION_ERROR = "session_error"
DETAILED_ERROR = "detailed_error"
PING = "ping"

TERMINAL_EVENTS = {SESSION_COMPLETE, SESSION_ERROR}

SUGGESTIONS = {
    ErrorType.CREDENTIALS_EXHAUSTED: (
        "Add an API key or re-enable one in the credentials panel, "
        "or wait until the quota window resets."
    ),
    ErrorType.FAILOVER_EXHAUSTED: "Several keys hit their quota in a row. Retry later or add keys with spare quota.",
    ErrorType.NETWORK: "Check connectivity to the SEACE portal and retry the operation.",
    ErrorType.STALE: "The worker stopped reporting progress. Start the operation again.",
    ErrorType.INTERNAL: "Check the server logs for the operation id and retry.",
}

Event = Dict[str, Any]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def operation_payload(operation: Operation) -> Dict[str, Any]:
    """Wire shape of an operation inside push events (message log omitted)."""
    return operation.model_dump(mode="json", by_alias=True, exclude={"messages"})


def make_event(event: str, operation_id: str, **data: Any) -> Event:
    return {"event": event, "data": {"operation_id": operation_id, "timestamp": _now_iso(), **data}}


def status_event(operation: Operation) -> Event:
    """Full snapshot sent on every (re)connect so clients can resync."""
    return make_event(SESSION_STATUS, operation.operation_id, operation=operation_payload(operation))


def events_for(registry_event: str, operation: Operation) -> List[Event]:
    """Translate one registry change into the push events clients understand."""
    op_id = operation.operation_id
    payload = operation_payload(operation)
    if registry_event == EVENT_STARTED:
        return [make_event(SESSION_START, op_id, operation=payload)]
    if registry_event == EVENT_PROGRESS:
        return [make_event(PROGRESS_UPDATE, op_id, operation=payload)]
    if registry_event == EVENT_MESSAGE:
        name = SCRAPER_STATUS if operation.kind == OperationKind.SCRAPE else PROGRESS_UPDATE
        return [make_event(name, op_id, message=operation.current_message, operation=payload)]
    if registry_event == EVENT_COMPLETED:
        return [make_event(SESSION_COMPLETE, op_id, operation=payload)]
    if registry_event == EVENT_FAILED:
        error_type = operation.error_type or ErrorType.INTERNAL
        return [
            make_event(
                DETAILED_ERROR,
                op_id,
                error_type=error_type.value,
                message=operation.error_message,
                suggestion=SUGGESTIONS.get(error_type, SUGGESTIONS[ErrorType.INTERNAL]),
                technical_details={
                    "kind": operation.kind.value,
                    "credential_alias": operation.credential_alias,
                    "step_current": operation.step_current,
                    "step_total": operation.step_total,
                },
            ),
            make_event(SESSION_ERROR, op_id, message=operation.error_message, operation=payload),
        ]
    return []


class ProgressPublisher:
    """
    Bridges registry callbacks (worker threads) to asyncio queues (SSE handlers).

    Each subscriber gets its own queue bound to the loop it subscribed from;
    events are handed over with `call_soon_threadsafe`.
    """

    def __init__(self, registry: OperationRegistry):
        self.registry = registry
        self._subscribers: Dict[str, List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = {}
        self._lock = Lock()
        registry.subscribe(self.handle_registry_event)

    def subscribe(self, operation_id: str) -> asyncio.Queue:
        """Register a queue for one operation. Must run inside an event loop."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._subscribers.setdefault(operation_id, []).append((loop, queue))
        logger.debug("Created SSE subscription for operation %s", operation_id)
        return queue

    def unsubscribe(self, operation_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            entries = [entry for entry in self._subscribers.get(operation_id, []) if entry[1] is not queue]
            if entries:
                self._subscribers[operation_id] = entries
            else:
                self._subscribers.pop(operation_id, None)
        logger.debug("Removed SSE subscription for operation %s", operation_id)

    def has_subscribers(self, operation_id: str) -> bool:
        with self._lock:
            return bool(self._subscribers.get(operation_id))

    def handle_registry_event(self, registry_event: str, operation: Operation) -> None:
        with self._lock:
            targets = list(self._subscribers.get(operation.operation_id, []))
        if not targets:
            return
        for event in events_for(registry_event, operation):
            for loop, queue in targets:
                try:
                    loop.call_soon_threadsafe(queue.put_nowait, event)
                except RuntimeError:
                    # Loop already closed; the stream is gone.
                    self.unsubscribe(operation.operation_id, queue)

    async def stream(
        self,
        operation_id: str,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        ping_interval: float = 15.0,
    ) -> AsyncIterator[Event]:
        """
        Yield push events for one operation until it reaches a terminal state.

        The first two events are always `connection_established` and a
        `session_status` snapshot.
        """
        queue = self.subscribe(operation_id)
        try:
            yield make_event(CONNECTION_ESTABLISHED, operation_id)
            snapshot = self.registry.get(operation_id)
            yield status_event(snapshot)
            if snapshot.is_terminal:
                return
            while True:
                if is_disconnected is not None and await is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=ping_interval)
                except asyncio.TimeoutError:
                    yield make_event(PING, operation_id)
                    continue
                yield event
                if event["event"] in TERMINAL_EVENTS:
                    break
        finally:
            self.unsubscribe(operation_id, queue)
