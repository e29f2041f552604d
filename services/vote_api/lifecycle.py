"""
Vote lifecycle: submission, confirmation and cache refresh.

A vote is stored as pending on submission and only counts once the voter
follows the confirmation link. Every stored or confirmed record is handed to
the job dispatcher (at-least-once, best effort) and every confirmation is
folded into the in-memory cache the public endpoints read from.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Protocol, Set

from prometheus_client import Counter, Gauge, Histogram

from ..shared.models import (
    PublicVote,
    Stats,
    SubmissionStatus,
    VoteEvent,
    VoteRecord,
    VoteSubmission,
    project_public,
)
from .cache import CacheSnapshot, ConfirmationCache

logger = logging.getLogger(__name__)

# Prometheus metrics
vote_submissions = Counter(
    "vote_submissions_total",
    "Total number of vote submissions",
    ["outcome"]
)
vote_confirmations = Counter(
    "vote_confirmations_total",
    "Total number of confirmation requests",
    ["result"]
)
dispatch_failures = Counter(
    "vote_dispatch_failures_total",
    "Total number of job submissions that failed or timed out",
    ["event"]
)
cache_entries = Gauge(
    "vote_cache_entries",
    "Number of confirmed votes in the in-memory cache"
)
cache_refresh_duration = Histogram(
    "vote_cache_refresh_seconds",
    "Time spent rebuilding the cache from the store"
)


class VoteServiceError(Exception):
    """Base exception for vote service errors."""
    pass


class DuplicateSubmissionError(VoteServiceError):
    """A vote for this email is already on file."""
    pass


class StoreUnavailableError(VoteServiceError):
    """The vote record store could not be reached."""
    pass


class VoteStore(Protocol):
    async def find_by_id(self, vote_id: str) -> Optional[VoteRecord]: ...

    async def find_by_email(self, email: str) -> Optional[VoteRecord]: ...

    async def insert(self, record: VoteRecord) -> VoteRecord: ...

    async def confirm(self, vote_id: str, confirmed_at: datetime) -> Optional[VoteRecord]: ...

    async def list_confirmed(self) -> Iterable[VoteRecord]: ...

    async def check_health(self) -> bool: ...


class JobDispatcher(Protocol):
    async def submit(self, record: VoteRecord, event: VoteEvent) -> bool: ...

    async def check_health(self) -> bool: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class VoteLifecycle:
    """Coordinates the store, the job dispatcher and the confirmation cache."""

    def __init__(
        self,
        store: VoteStore,
        dispatcher: JobDispatcher,
        cache: ConfirmationCache,
        dispatch_timeout: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.cache = cache
        self.dispatch_timeout = dispatch_timeout
        self.clock = clock
        self._jobs: Set[asyncio.Task] = set()

    async def submit(self, submission: VoteSubmission) -> SubmissionStatus:
        """
        Register a new pending vote.

        The email check happens before the consent check, so a known email is
        reported as a conflict even when the consent boxes are unchecked.

        Returns:
            SubmissionStatus: ACCEPTED, CONFLICT or REJECTED

        Raises:
            StoreUnavailableError: If the store cannot be read or written
        """
        existing = await self.store.find_by_email(submission.email)
        if existing is not None:
            vote_submissions.labels(outcome=SubmissionStatus.CONFLICT.value).inc()
            logger.info(f"Vote already on file: id={existing.id}")
            return SubmissionStatus.CONFLICT

        if not submission.has_consent():
            vote_submissions.labels(outcome=SubmissionStatus.REJECTED.value).inc()
            logger.info("Vote rejected: consent not given")
            return SubmissionStatus.REJECTED

        try:
            record = await self.store.insert(
                VoteRecord.from_submission(submission, created=self.clock())
            )
        except DuplicateSubmissionError:
            # Lost the race against a concurrent submission for the same email
            vote_submissions.labels(outcome=SubmissionStatus.CONFLICT.value).inc()
            return SubmissionStatus.CONFLICT

        self._dispatch(record, VoteEvent.SUBMITTED)

        vote_submissions.labels(outcome=SubmissionStatus.ACCEPTED.value).inc()
        logger.info(f"Vote submitted: id={record.id}, country={record.country_code}")
        return SubmissionStatus.ACCEPTED

    async def confirm(self, vote_id: str) -> Optional[PublicVote]:
        """
        Confirm a pending vote, once.

        Confirming an already confirmed vote changes nothing and returns the
        same projection as the first confirmation did.

        Returns:
            PublicVote, or None if no vote has this id
        """
        record = await self.store.find_by_id(vote_id)
        if record is None:
            vote_confirmations.labels(result="not_found").inc()
            return None

        if record.confirmed is not None:
            vote_confirmations.labels(result="already_confirmed").inc()
            return project_public(record)

        updated = await self.store.confirm(vote_id, self.clock())
        if updated is None:
            # Another request confirmed it between the read and the update
            vote_confirmations.labels(result="already_confirmed").inc()
            current = await self.store.find_by_id(vote_id)
            return project_public(current) if current else None

        self._dispatch(updated, VoteEvent.CONFIRMED)
        await self.cache.insert(updated)
        cache_entries.set(len(self.cache.snapshot))

        vote_confirmations.labels(result="confirmed").inc()
        logger.info(f"Vote confirmed: id={updated.id}, country={updated.country_code}")
        return project_public(updated)

    async def refresh_all(self) -> CacheSnapshot:
        """
        Rebuild the cache from every confirmed, enabled record in the store.

        Raises:
            StoreUnavailableError: If the store cannot be read
        """
        with cache_refresh_duration.time():
            snapshot = await self.cache.refresh(self.store.list_confirmed)

        cache_entries.set(len(snapshot))
        logger.info(f"Cache refreshed: {len(snapshot)} confirmed votes (v{snapshot.version})")
        return snapshot

    def list_by_country(self, country_code: str) -> List[PublicVote]:
        return self.cache.lookup(country_code)

    def get_stats(self) -> Stats:
        return self.cache.stats

    async def drain(self):
        """Wait for outstanding job submissions."""
        if self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)

    def _dispatch(self, record: VoteRecord, event: VoteEvent) -> asyncio.Task:
        task = asyncio.create_task(self._run_dispatch(record, event))
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)
        return task

    async def _run_dispatch(self, record: VoteRecord, event: VoteEvent):
        try:
            accepted = await asyncio.wait_for(
                self.dispatcher.submit(record, event),
                timeout=self.dispatch_timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Job submission timed out after {self.dispatch_timeout}s: "
                f"id={record.id}, event={event.value}"
            )
            accepted = False
        except Exception as e:
            logger.error(
                f"Job submission failed: id={record.id}, event={event.value}: {e}",
                exc_info=True
            )
            accepted = False

        if not accepted:
            dispatch_failures.labels(event=event.value).inc()
