"""Tests for the operations HTTP client: reconciliation, polling and SSE parsing."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from seace_etl.client import (
    OperationClient,
    PollingTimeout,
    StreamConnectionError,
    iter_sse_events,
    reconcile_cached_operation,
)
from seace_etl.models import CategorizeDetails, OperationKind, OperationStatus
from seace_etl.operations import OperationNotFound


def _response(status_code=200, payload=None, lines=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    response.iter_lines.return_value = iter(lines or [])
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    return response


def _payload(operation):
    return operation.model_dump(mode="json", by_alias=True)


class TestReconcile:
    """Keeping or dropping a cached operation id."""

    def test_no_cached_id(self):
        result = reconcile_cached_operation(None, lambda op_id: pytest.fail("should not fetch"))
        assert result.cached_id is None
        assert result.operation is None

    def test_unknown_id_is_discarded(self):
        def _fetch(op_id):
            raise OperationNotFound(op_id)

        assert reconcile_cached_operation("gone", _fetch).cached_id is None
        assert reconcile_cached_operation("gone", lambda op_id: None).cached_id is None

    def test_running_operation_is_kept(self, registry):
        op_id = registry.create(OperationKind.CATEGORIZE)
        registry.transition_to_running(op_id)
        result = reconcile_cached_operation(op_id, registry.get)
        assert result.cached_id == op_id
        assert result.operation.status == OperationStatus.RUNNING

    def test_finished_operation_is_shown_once_and_dropped(self, registry):
        op_id = registry.create(OperationKind.CATEGORIZE)
        registry.transition_to_running(op_id)
        registry.complete(op_id, CategorizeDetails())
        result = reconcile_cached_operation(op_id, registry.get)
        assert result.cached_id is None
        assert result.operation.status == OperationStatus.COMPLETED


def test_iter_sse_events_parses_named_events_and_skips_comments():
    lines = [
        "event: session_status",
        'data: {"operation_id": "abc"}',
        "",
        ": keep-alive",
        "",
        "event: progress_update",
        'data: {"operation": {"percentage": 40}}',
        "",
        'data: {"event": "session_complete", "data": {"operation_id": "abc"}}',
        "",
    ]
    events = list(iter_sse_events(iter(lines)))
    assert [e.event for e in events] == ["session_status", "progress_update", "session_complete"]
    assert events[1].data["operation"]["percentage"] == 40
    assert events[2].data == {"operation_id": "abc"}


def test_start_posts_params_and_returns_id():
    session = MagicMock()
    session.post.return_value = _response(200, {"operation_id": "op-1", "status": "running"})
    client = OperationClient("http://api/", session=session)

    assert client.start("categorize", {"limit": 5}) == "op-1"
    args, kwargs = session.post.call_args
    assert args[0] == "http://api/operations/categorize"
    assert kwargs["json"] == {"limit": 5}


def test_get_maps_404_to_not_found():
    session = MagicMock()
    session.get.return_value = _response(404, {"detail": "missing"})
    client = OperationClient(session=session)
    with pytest.raises(OperationNotFound):
        client.get("missing")
    assert client.reconcile("missing").cached_id is None


def test_poll_until_terminal(registry):
    op_id = registry.create(OperationKind.CATEGORIZE)
    registry.transition_to_running(op_id)
    running = _payload(registry.get(op_id))
    registry.complete(op_id, CategorizeDetails(updated=1))
    finished = _payload(registry.get(op_id))

    session = MagicMock()
    session.get.side_effect = [_response(200, running), _response(200, running), _response(200, finished)]
    sleeps = []
    seen = []
    client = OperationClient(session=session, sleep=sleeps.append)

    operation = client.poll_until_terminal(op_id, interval=0.5, on_update=seen.append)
    assert operation.status == OperationStatus.COMPLETED
    assert sleeps == [0.5, 0.5]
    assert len(seen) == 3


def test_poll_gives_up_without_touching_the_operation(registry):
    op_id = registry.create(OperationKind.CATEGORIZE)
    session = MagicMock()
    session.get.return_value = _response(200, _payload(registry.get(op_id)))
    client = OperationClient(session=session, sleep=lambda s: None)

    with pytest.raises(PollingTimeout) as excinfo:
        client.poll_until_terminal(op_id, max_attempts=3)
    assert excinfo.value.attempts == 3
    session.post.assert_not_called()
    session.delete.assert_not_called()


class StreamSession:
    """Serves snapshots for GET /operations/{id} and scripted event streams."""

    def __init__(self, snapshots, streams):
        self.snapshots = list(snapshots)
        self.streams = list(streams)

    def get(self, url, **kwargs):
        if url.endswith("/events"):
            outcome = self.streams.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return _response(200, lines=outcome)
        return _response(200, self.snapshots.pop(0))


def test_stream_reconnects_and_resyncs_from_snapshot(registry):
    op_id = registry.create(OperationKind.CATEGORIZE)
    registry.transition_to_running(op_id)
    running = _payload(registry.get(op_id))
    registry.complete(op_id, CategorizeDetails())
    finished = _payload(registry.get(op_id))

    first_stream = ["event: progress_update", 'data: {"operation_id": "%s"}' % op_id, ""]
    session = StreamSession([running, finished], [first_stream])
    sleeps = []
    client = OperationClient(session=session, sleep=sleeps.append)

    events = list(client.stream(op_id, base_delay=1.0))
    assert [e.event for e in events] == ["progress_update", "session_status"]
    assert events[1].data["operation"]["status"] == "completed"
    assert sleeps == [1.0]


def test_stream_stops_on_terminal_event(registry):
    op_id = registry.create(OperationKind.CATEGORIZE)
    lines = [
        "event: connection_established", "data: {}", "",
        "event: session_error", 'data: {"message": "boom"}', "",
        "event: progress_update", "data: {}", "",
    ]
    session = StreamSession([_payload(registry.get(op_id))], [lines])
    client = OperationClient(session=session, sleep=lambda s: None)

    events = list(client.stream(op_id))
    assert [e.event for e in events] == ["connection_established", "session_error"]


def test_stream_gives_up_after_bounded_backoff(registry):
    op_id = registry.create(OperationKind.CATEGORIZE)
    snapshot = _payload(registry.get(op_id))
    error = requests.exceptions.ConnectionError("refused")
    session = StreamSession([snapshot] * 3, [error] * 3)
    sleeps = []
    client = OperationClient(session=session, sleep=sleeps.append)

    with pytest.raises(StreamConnectionError):
        list(client.stream(op_id, max_attempts=2, base_delay=1.0))
    assert sleeps == [1.0, 2.0]
