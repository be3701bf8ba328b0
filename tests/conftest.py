"""
Shared pytest fixtures and configuration for tapline tests.

This module provides:
- An in-memory capture store with the schema applied
- Fast timing settings so worker contexts finish in a fraction of a second
- Factories for targets, schedules and channel messages
- An async polling helper for tests that watch a running context

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments:

    async def test_something(store, fast_settings, make_schedule):
        ...
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from tapline.core.database import connect
from tapline.core.repository import ScheduleCreate, SqliteCaptureStore, TargetCreate
from tapline.core.schema import create_tables
from tapline.core.settings import TaplineSettings, clear_settings_cache
from tapline.interception.events import now_ms

PDP_URL = "https://shop.example/api/v4/pdp/get_pc?item_id=42&shop_id=7"
PDP_PATTERN = "api/v4/pdp/get_pc"
MODELS = [{"modelid": 1, "stock": 5}, {"modelid": 2, "stock": 0}]


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without an explicit marker as unit tests."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Each test sees settings built from its own environment."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def fast_settings() -> TaplineSettings:
    """Settings with sub-second timers."""
    return TaplineSettings(
        database_path=":memory:",
        tick_interval_seconds=0.05,
        batch_size=3,
        inter_batch_delay_seconds=0.0,
        context_timeout_seconds=1.0,
        observation_seconds=0.1,
        injection_delays=[0.0, 0.01, 0.02],
        heartbeat_interval_seconds=1.0,
        stall_after_seconds=30.0,
        url_pattern=PDP_PATTERN,
        alternate_patterns=[],
        extraction_path="data.item.models",
        dedup_window_seconds=2.0,
    )


# =============================================================================
# Storage
# =============================================================================


@pytest.fixture
def conn():
    """In-memory SQLite connection with the capture schema."""
    connection = connect(":memory:")
    create_tables(connection)
    yield connection
    connection.close()


@pytest.fixture
def store(conn) -> SqliteCaptureStore:
    return SqliteCaptureStore(conn, max_exchanges_per_schedule=1000)


@pytest.fixture
def target(store):
    """A stored target pointing at a product page."""
    return store.create_target(TargetCreate(name="pdp", url="https://shop.example/item/42"))


@pytest.fixture
def make_schedule(store, target):
    """Factory for stored schedules. ``due=True`` backdates the next run."""

    def _make(
        kind: str = "interval",
        *,
        due: bool = True,
        quantity: int = 1,
        interval_minutes: int | None = 15,
        cron_expression: str | None = None,
        fire_at: datetime | None = None,
        target_id: str | None = None,
        name: str = "",
    ):
        now = datetime.now(UTC)
        if kind == "once" and fire_at is None:
            fire_at = now - timedelta(minutes=1) if due else now + timedelta(hours=1)
        payload = ScheduleCreate(
            target_id=target_id or target.id,
            kind=kind,
            name=name,
            cron_expression=cron_expression,
            interval_minutes=interval_minutes if kind == "interval" else None,
            fire_at=fire_at,
            quantity=quantity,
        )
        created_at = now - timedelta(hours=1) if due else now
        return store.create_schedule(payload, now=created_at)

    return _make


# =============================================================================
# Channel messages
# =============================================================================


@pytest.fixture
def pdp_body() -> str:
    return json.dumps({"error": None, "data": {"item": {"itemid": 42, "models": MODELS}}})


@pytest.fixture
def exchange_messages(pdp_body):
    """Factory for an EXCHANGE_STARTED / EXCHANGE_COMPLETED pair."""

    def _make(
        url: str = PDP_URL,
        *,
        body: str | None = pdp_body,
        layer: str = "page",
        exchange_id: str = "fetch_1",
        started_ms: int | None = None,
        status: int = 200,
    ) -> list[dict]:
        started_ms = started_ms if started_ms is not None else now_ms()
        return [
            {
                "type": "EXCHANGE_STARTED",
                "layer": layer,
                "id": exchange_id,
                "url": url,
                "method": "get",
                "requestHeaders": {"Accept": "application/json"},
                "requestBody": None,
                "timestamp": started_ms,
            },
            {
                "type": "EXCHANGE_COMPLETED",
                "layer": layer,
                "id": exchange_id,
                "url": url,
                "status": status,
                "statusText": "OK",
                "responseHeaders": {"Content-Type": "application/json"},
                "responseBody": body,
                "timestamp": started_ms + 120,
            },
        ]

    return _make


# =============================================================================
# Async helpers
# =============================================================================


@pytest.fixture
def wait_until():
    """Poll ``predicate`` on the event loop until it holds or time runs out."""

    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached before timeout")
            await asyncio.sleep(interval)

    return _wait
