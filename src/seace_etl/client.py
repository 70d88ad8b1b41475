"""HTTP client for watching operations: polling, SSE streaming and cached-id reconciliation."""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional

import requests

from .models import Operation, OperationKind
from .operations import OperationNotFound

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8001"
POLL_INTERVAL_SECONDS = 1.0
POLL_MAX_ATTEMPTS = 120
RECONNECT_BASE_SECONDS = 1.0
MAX_RECONNECT_ATTEMPTS = 5
TERMINAL_EVENTS = {"session_complete", "session_error"}


class PollingTimeout(TimeoutError):
    """The client ran out of patience; the server-side operation is untouched."""

    def __init__(self, operation_id: str, attempts: int):
        self.operation_id = operation_id
        self.attempts = attempts
        super().__init__(f"Operation {operation_id} still running after {attempts} polls")


class StreamConnectionError(ConnectionError):
    """The event stream could not be (re)established."""


@dataclass(frozen=True)
class Reconciliation:
    cached_id: Optional[str]
    operation: Optional[Operation] = None


def reconcile_cached_operation(
    cached_id: Optional[str],
    fetch: Callable[[str], Optional[Operation]],
) -> Reconciliation:
    """
    Decide whether a locally cached operation id is still worth watching.

    The id is kept only while the fetched operation is non-terminal. Unknown
    ids (fetch returns None or raises OperationNotFound) are discarded.
    """
    if not cached_id:
        return Reconciliation(cached_id=None)
    try:
        operation = fetch(cached_id)
    except OperationNotFound:
        operation = None
    if operation is None:
        return Reconciliation(cached_id=None)
    if operation.is_terminal:
        return Reconciliation(cached_id=None, operation=operation)
    return Reconciliation(cached_id=cached_id, operation=operation)


@dataclass
class StreamEvent:
    event: str
    data: Dict[str, Any] = field(default_factory=dict)


def iter_sse_events(lines: Iterator[str]) -> Iterator[StreamEvent]:
    """Parse `text/event-stream` lines into events. Comment lines are skipped."""
    event_name = "message"
    data_lines = []
    for raw in lines:
        line = raw.rstrip("\r") if raw is not None else ""
        if not line:
            if data_lines:
                payload = "\n".join(data_lines)
                try:
                    decoded = json.loads(payload)
                except json.JSONDecodeError:
                    decoded = {"raw": payload}
                if isinstance(decoded, dict) and "event" in decoded and "data" in decoded and event_name == "message":
                    yield StreamEvent(event=decoded["event"], data=decoded["data"])
                else:
                    yield StreamEvent(event=event_name, data=decoded if isinstance(decoded, dict) else {"value": decoded})
            event_name = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event_name = value
        elif name == "data":
            data_lines.append(value)


class OperationClient:
    """Thin wrapper over the operations API."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self._sleep = sleep

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def start(self, kind: OperationKind, params: Optional[Dict[str, Any]] = None) -> str:
        response = self.session.post(
            self._url(f"/operations/{OperationKind(kind).value}"), json=params or {}, timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()["operation_id"]

    def get(self, operation_id: str) -> Operation:
        response = self.session.get(self._url(f"/operations/{operation_id}"), timeout=self.timeout)
        if response.status_code == 404:
            raise OperationNotFound(operation_id)
        response.raise_for_status()
        return Operation.model_validate(response.json())

    def reconcile(self, cached_id: Optional[str]) -> Reconciliation:
        return reconcile_cached_operation(cached_id, self.get)

    def poll_until_terminal(
        self,
        operation_id: str,
        interval: float = POLL_INTERVAL_SECONDS,
        max_attempts: int = POLL_MAX_ATTEMPTS,
        on_update: Optional[Callable[[Operation], None]] = None,
    ) -> Operation:
        for _ in range(max_attempts):
            operation = self.get(operation_id)
            if on_update is not None:
                on_update(operation)
            if operation.is_terminal:
                return operation
            self._sleep(interval)
        raise PollingTimeout(operation_id, max_attempts)

    def stream(
        self,
        operation_id: str,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        base_delay: float = RECONNECT_BASE_SECONDS,
    ) -> Iterator[StreamEvent]:
        """
        Follow an operation over SSE until a terminal event arrives.

        Every (re)connect starts with a fresh GET; an operation that finished
        while we were disconnected is reported as a single `session_status`.
        """
        attempt = 0
        while True:
            try:
                snapshot = self.get(operation_id)
                if snapshot.is_terminal:
                    yield StreamEvent(
                        event="session_status",
                        data={"operation_id": operation_id, "operation": snapshot.model_dump(mode="json", by_alias=True)},
                    )
                    return
                with self.session.get(
                    self._url(f"/operations/{operation_id}/events"),
                    headers={"Accept": "text/event-stream"},
                    stream=True,
                    timeout=(self.timeout, None),
                ) as response:
                    response.raise_for_status()
                    for event in iter_sse_events(response.iter_lines(decode_unicode=True)):
                        attempt = 0
                        yield event
                        if event.event in TERMINAL_EVENTS:
                            return
                logger.info("Event stream for %s closed before a terminal event", operation_id)
            except OperationNotFound:
                raise
            except requests.RequestException as exc:
                logger.warning("Event stream for %s dropped: %s", operation_id, exc)

            if attempt >= max_attempts:
                raise StreamConnectionError(
                    f"Could not reconnect to operation {operation_id} after {max_attempts} attempts"
                )
            delay = base_delay * (2 ** attempt)
            attempt += 1
            self._sleep(delay)
