"""Pytest fixtures for the vote API tests.

Provides in-memory stand-ins for the PostgreSQL store and the RabbitMQ
dispatcher, a deterministic clock, and an HTTP client bound to the app.
"""

import asyncio
import os
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, List, Optional, Tuple

# Settings are read at import time
os.environ.setdefault("RATE_LIMIT", "1000/minute")
os.environ.setdefault("REFRESH_SECRET", "test-refresh-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx
import pytest
from httpx import ASGITransport

from services.shared.models import (
    AGE_ATTESTATION_FIELD,
    CONSENT_ACCEPTED,
    PRIVACY_POLICY_FIELD,
    VoteEvent,
    VoteRecord,
)
from services.vote_api.cache import ConfirmationCache
from services.vote_api.lifecycle import (
    DuplicateSubmissionError,
    StoreUnavailableError,
    VoteLifecycle,
)

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class InMemoryVoteStore:
    """Dict-backed vote store with the same contract as the PostgreSQL one."""

    def __init__(self):
        self.records: Dict[str, VoteRecord] = {}
        self.unavailable = False
        self.confirm_calls = 0

    def _check(self):
        if self.unavailable:
            raise StoreUnavailableError("store is down")

    def add(self, record: VoteRecord) -> VoteRecord:
        """Seed a record directly, bypassing the lifecycle."""
        if record.id is None:
            record = record.with_id(str(uuid.uuid4()))
        self.records[record.id] = record
        return record

    async def find_by_id(self, vote_id: str) -> Optional[VoteRecord]:
        self._check()
        return self.records.get(vote_id)

    async def find_by_email(self, email: str) -> Optional[VoteRecord]:
        self._check()
        return next((r for r in self.records.values() if r.email == email), None)

    async def insert(self, record: VoteRecord) -> VoteRecord:
        self._check()
        if any(r.email == record.email for r in self.records.values()):
            raise DuplicateSubmissionError(record.email)
        return self.add(record.with_id(str(uuid.uuid4())))

    async def confirm(self, vote_id: str, confirmed_at: datetime) -> Optional[VoteRecord]:
        self._check()
        self.confirm_calls += 1
        record = self.records.get(vote_id)
        if record is None or record.confirmed is not None:
            return None
        updated = replace(record, confirmed=confirmed_at)
        self.records[vote_id] = updated
        return updated

    async def list_confirmed(self) -> List[VoteRecord]:
        self._check()
        public = [r for r in self.records.values() if r.is_public]
        return sorted(public, key=lambda r: r.confirmed, reverse=True)

    async def check_health(self) -> bool:
        return not self.unavailable


class RecordingDispatcher:
    """Job dispatcher that records what it was given."""

    def __init__(self):
        self.jobs: List[Tuple[VoteRecord, VoteEvent]] = []
        self.accept = True
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.healthy = True

    async def submit(self, record: VoteRecord, event: VoteEvent) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.jobs.append((record, event))
        return self.accept

    async def check_health(self) -> bool:
        return self.healthy

    def events(self) -> List[VoteEvent]:
        return [event for _, event in self.jobs]


class SteppingClock:
    """Returns a later instant, one second apart, on every call."""

    def __init__(self, start: datetime = BASE_TIME):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def store() -> InMemoryVoteStore:
    return InMemoryVoteStore()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def cache() -> ConfirmationCache:
    return ConfirmationCache(recent_limit=3)


@pytest.fixture
def lifecycle(store, dispatcher, cache, clock) -> VoteLifecycle:
    return VoteLifecycle(
        store=store,
        dispatcher=dispatcher,
        cache=cache,
        dispatch_timeout=0.5,
        clock=clock,
    )


@pytest.fixture
def make_record():
    """Factory for stored vote records.

    `confirmed_after` is an offset in minutes from BASE_TIME, or None for a
    pending vote.
    """
    def _make(
        country_code: str = "DE",
        email: Optional[str] = None,
        confirmed_after: Optional[int] = 10,
        disabled: bool = False,
    ) -> VoteRecord:
        return VoteRecord(
            id=str(uuid.uuid4()),
            email=email or f"{uuid.uuid4().hex[:8]}@example.org",
            country_code=country_code,
            privacy_policy=CONSENT_ACCEPTED,
            age_attestation=CONSENT_ACCEPTED,
            created=BASE_TIME,
            confirmed=(
                BASE_TIME + timedelta(minutes=confirmed_after)
                if confirmed_after is not None else None
            ),
            disabled=disabled,
        )

    return _make


@pytest.fixture
def vote_payload() -> Dict[str, str]:
    """Valid submission body as the signup form posts it."""
    return {
        "email": "Voter@Example.org",
        "countryCode": "de",
        PRIVACY_POLICY_FIELD: CONSENT_ACCEPTED,
        AGE_ATTESTATION_FIELD: CONSENT_ACCEPTED,
    }


@pytest.fixture
async def api_client(lifecycle) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client talking to the app in-process, wired to the fakes."""
    from services.vote_api.main import app, get_lifecycle

    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    async with httpx.AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client
    app.dependency_overrides.clear()


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )
