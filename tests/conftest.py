"""Shared fixtures for collector and client tests.

Collaborators that leave the process (GeoIP database, SQL database) are
replaced with small in-memory fakes so tests stay fast and deterministic.
"""

import time
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from collector.errors import StorageError
from collector.ingestion import IngestionService
from collector.rate_limiter import SlidingWindowRateLimiter
from collector.storage import COLUMNS, BatchInsert, StorageGateway


class FakeCountryLookup:
    """Country lookup backed by a dict, recording every address asked for."""

    def __init__(self, countries: dict[str, str] | None = None):
        self.countries = countries or {}
        self.calls: list[str] = []

    def lookup_country(self, ip_address: str) -> str:
        self.calls.append(ip_address)
        return self.countries.get(ip_address, "")


class RecordingGateway:
    """Storage gateway that keeps batches in memory instead of writing them."""

    def __init__(self, error: Exception | None = None, delay: float = 0.0):
        self.batches: list[BatchInsert] = []
        self.error = error
        self.delay = delay

    def execute(self, batch: BatchInsert) -> int:
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.batches.append(batch)
        return batch.row_count

    def dispose(self) -> None:
        pass


def stored_rows(batch: BatchInsert) -> list[dict[str, Any]]:
    """Split a batch's flat argument list back into one dict per row."""
    width = len(COLUMNS)
    return [
        dict(zip(COLUMNS, batch.arguments[i : i + width]))
        for i in range(0, len(batch.arguments), width)
    ]


def make_request(**overrides: Any) -> dict[str, Any]:
    request = {
        "method": "GET",
        "path": "/x",
        "hostname": "api.example.com",
        "ip_address": "8.8.8.8",
        "user_agent": "ua",
        "status": 200,
        "response_time": 12,
        "created_at": "2024-01-01T00:00:00Z",
    }
    request.update(overrides)
    return request


def make_payload(requests: list[dict[str, Any]] | None = None, **overrides: Any) -> dict[str, Any]:
    payload = {
        "api_key": "k1",
        "framework": "Flask",
        "privacy_level": 1,
        "requests": [make_request()] if requests is None else requests,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def lookup():
    return FakeCountryLookup({"8.8.8.8": "US", "81.2.69.142": "GB"})


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def rate_limiter():
    return SlidingWindowRateLimiter(limit=100, window_seconds=60)


@pytest.fixture
def service(rate_limiter, lookup, gateway):
    return IngestionService(
        rate_limiter=rate_limiter,
        lookup=lookup,
        gateway=gateway,
        max_insert=2000,
        storage_timeout=1.0,
    )


@pytest.fixture
def sqlite_gateway():
    """Storage gateway over a single shared in-memory SQLite connection."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    gateway = StorageGateway(engine)
    gateway.create_tables()
    yield gateway
    gateway.dispose()


@pytest.fixture
def failing_gateway():
    return RecordingGateway(error=StorageError())
