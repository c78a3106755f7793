"""Shared test fixtures."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

import grouper.main as main_module
from grouper.config import AppConfig
from grouper.core.models import Coordinate, Priority, Report

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

# Lyon, with a 5 m GPS fix.
ORIGIN = Coordinate(45.764043, 4.835659, accuracy_m=5.0)

# Meters per degree of latitude on the haversine sphere.
M_PER_DEG_LAT = 6_371_000.0 * math.pi / 180


@pytest.fixture(autouse=True)
def _init_server():
    """Initialize server singletons for every test."""
    config = AppConfig()
    config.logging.level = "warning"
    # Tests flush explicitly; keep the debounce timer out of the way.
    config.batching.batch_processing_delay_ms = 60_000
    config.retry.retry_delay_ms = 1

    components = main_module.build_components(config)

    # Patch module-level singletons
    main_module._config = config
    main_module._stats = components["stats"]
    main_module._errors = components["errors"]
    main_module._registry = components["registry"]
    main_module._store = components["store"]
    main_module._hooks = components["hooks"]

    yield components

    # Cleanup
    main_module._config = None
    main_module._stats = None
    main_module._errors = None
    main_module._registry = None
    main_module._store = None
    main_module._hooks = None


@pytest.fixture
async def client():
    from grouper.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def make_report():
    """Factory for reports around ORIGIN, created relative to BASE_TIME."""

    def _make(
        report_id: str = "r1",
        *,
        title: str = "Large pothole near Central Park",
        description: str = "",
        category: str = "Roads",
        status: str = "open",
        priority: Priority = Priority.HIGH,
        days: float = 0.0,
        minutes: float = 0.0,
        meters_north: float = 0.0,
        location: Coordinate | None = ORIGIN,
        user_id: str | None = None,
    ) -> Report:
        if location is not None and meters_north:
            location = Coordinate(
                location.latitude + meters_north / M_PER_DEG_LAT,
                location.longitude,
                location.accuracy_m,
            )
        created = BASE_TIME + timedelta(days=days, minutes=minutes)
        return Report(
            id=report_id,
            title=title,
            description=description,
            category=category,
            status=status,
            priority=priority,
            created_at=created,
            updated_at=created,
            location=location,
            user_id=user_id,
        )

    return _make


@pytest.fixture
def pothole_pair(make_report):
    """Two reports of the same pothole, 10 m and 5 minutes apart."""
    first = make_report("r1", title="Large pothole near Central Park")
    second = make_report("r2", title="Dangerous pothole on Main Road",
                         meters_north=10, minutes=5, priority=Priority.MEDIUM)
    return first, second
