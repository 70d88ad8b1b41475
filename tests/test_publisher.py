"""Tests for registry-to-SSE event translation and streaming."""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from seace_etl.models import CategorizeDetails, ErrorType, OperationKind
from seace_etl.operations import EVENT_FAILED, EVENT_MESSAGE
from seace_etl.publisher import (
    CONNECTION_ESTABLISHED,
    DETAILED_ERROR,
    PING,
    PROGRESS_UPDATE,
    SCRAPER_STATUS,
    SESSION_COMPLETE,
    SESSION_ERROR,
    SESSION_START,
    SESSION_STATUS,
    SUGGESTIONS,
    ProgressPublisher,
    events_for,
)


def _names(events):
    return [event["event"] for event in events]


def test_messages_map_to_scraper_status_only_for_scrapes(registry):
    scrape_id = registry.create(OperationKind.SCRAPE)
    registry.transition_to_running(scrape_id)
    scrape = registry.narrate(scrape_id, "Read results page 1")
    assert _names(events_for(EVENT_MESSAGE, scrape)) == [SCRAPER_STATUS]
    assert events_for(EVENT_MESSAGE, scrape)[0]["data"]["message"] == "Read results page 1"

    other_id = registry.create(OperationKind.CATEGORIZE)
    registry.transition_to_running(other_id)
    other = registry.narrate(other_id, "switching key")
    assert _names(events_for(EVENT_MESSAGE, other)) == [PROGRESS_UPDATE]


def test_failure_emits_detailed_error_with_suggestion(registry):
    op_id = registry.create(OperationKind.CATEGORIZE)
    registry.transition_to_running(op_id)
    failed = registry.fail(op_id, "No API keys available", error_type=ErrorType.CREDENTIALS_EXHAUSTED)

    events = events_for(EVENT_FAILED, failed)
    assert _names(events) == [DETAILED_ERROR, SESSION_ERROR]
    detail = events[0]["data"]
    assert detail["error_type"] == "credentials_exhausted"
    assert detail["suggestion"] == SUGGESTIONS[ErrorType.CREDENTIALS_EXHAUSTED]
    assert detail["technical_details"]["kind"] == "categorize"
    assert events[1]["data"]["operation"]["status"] == "failed"
    assert "messages" not in events[1]["data"]["operation"]


def test_unknown_registry_events_are_ignored(registry):
    op_id = registry.create(OperationKind.CATEGORIZE)
    assert events_for("created", registry.get(op_id)) == []


def test_stream_of_finished_operation_sends_snapshot_and_stops(registry):
    publisher = ProgressPublisher(registry)
    op_id = registry.create(OperationKind.CATEGORIZE)
    registry.transition_to_running(op_id)
    registry.complete(op_id, CategorizeDetails(updated=1))

    async def _collect():
        return [event async for event in publisher.stream(op_id)]

    events = asyncio.run(_collect())
    assert _names(events) == [CONNECTION_ESTABLISHED, SESSION_STATUS]
    assert events[1]["data"]["operation"]["percentage"] == 100
    assert publisher.has_subscribers(op_id) is False


def test_stream_follows_live_updates_until_terminal(registry):
    publisher = ProgressPublisher(registry)
    op_id = registry.create(OperationKind.CATEGORIZE)

    async def _collect():
        stream = publisher.stream(op_id, ping_interval=5.0)
        events = [await stream.__anext__(), await stream.__anext__()]
        assert publisher.has_subscribers(op_id)
        registry.transition_to_running(op_id, step_total=2)
        registry.report_progress(op_id, 1, "halfway")
        registry.complete(op_id, CategorizeDetails(updated=2))
        async for event in stream:
            events.append(event)
        return events

    events = asyncio.run(_collect())
    assert _names(events) == [
        CONNECTION_ESTABLISHED, SESSION_STATUS, SESSION_START, PROGRESS_UPDATE, SESSION_COMPLETE,
    ]
    assert events[3]["data"]["operation"]["percentage"] == 50
    assert publisher.has_subscribers(op_id) is False


def test_stream_sends_pings_while_idle_and_stops_on_disconnect(registry):
    publisher = ProgressPublisher(registry)
    op_id = registry.create(OperationKind.SCRAPE)
    checks = []

    async def _disconnected():
        checks.append(True)
        return len(checks) > 1

    async def _collect():
        return [event async for event in publisher.stream(op_id, _disconnected, ping_interval=0.01)]

    events = asyncio.run(_collect())
    assert _names(events) == [CONNECTION_ESTABLISHED, SESSION_STATUS, PING]
    assert publisher.has_subscribers(op_id) is False
