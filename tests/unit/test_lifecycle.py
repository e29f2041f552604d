"""Unit tests for the vote lifecycle (submit, confirm, refresh)."""

import asyncio
from dataclasses import FrozenInstanceError, replace

import pytest

from services.shared.models import (
    CONSENT_ACCEPTED,
    CountryCount,
    PublicVote,
    SubmissionStatus,
    VoteEvent,
    VoteSubmission,
)
from services.vote_api.lifecycle import StoreUnavailableError


def submission(email="voter@example.org", country="DE",
               privacy=CONSENT_ACCEPTED, age=CONSENT_ACCEPTED) -> VoteSubmission:
    return VoteSubmission(
        email=email,
        country_code=country,
        privacy_policy=privacy,
        age_attestation=age,
    )


@pytest.mark.asyncio
class TestSubmit:
    """Tests for vote submission."""

    async def test_fresh_email_is_accepted_and_stored_pending(self, lifecycle, store, dispatcher):
        outcome = await lifecycle.submit(submission())
        await lifecycle.drain()

        assert outcome == SubmissionStatus.ACCEPTED
        (record,) = store.records.values()
        assert record.email == "voter@example.org"
        assert record.country_code == "DE"
        assert record.privacy_policy == CONSENT_ACCEPTED
        assert record.age_attestation == CONSENT_ACCEPTED
        assert record.confirmed is None
        assert record.disabled is False
        assert dispatcher.jobs == [(record, VoteEvent.SUBMITTED)]

    async def test_second_submission_with_same_email_conflicts(self, lifecycle, store, dispatcher):
        await lifecycle.submit(submission())
        outcome = await lifecycle.submit(submission(country="FR"))
        await lifecycle.drain()

        assert outcome == SubmissionStatus.CONFLICT
        assert len(store.records) == 1
        assert len(dispatcher.jobs) == 1

    @pytest.mark.parametrize("privacy,age", [
        (None, CONSENT_ACCEPTED),
        (CONSENT_ACCEPTED, None),
        ("off", CONSENT_ACCEPTED),
        (CONSENT_ACCEPTED, "yes"),
    ])
    async def test_missing_consent_is_rejected(self, lifecycle, store, dispatcher, privacy, age):
        outcome = await lifecycle.submit(submission(privacy=privacy, age=age))
        await lifecycle.drain()

        assert outcome == SubmissionStatus.REJECTED
        assert store.records == {}
        assert dispatcher.jobs == []

    async def test_known_email_conflicts_before_consent_check(self, lifecycle):
        await lifecycle.submit(submission())

        outcome = await lifecycle.submit(submission(privacy=None))

        assert outcome == SubmissionStatus.CONFLICT

    async def test_insert_race_reports_conflict(self, lifecycle, store, make_record, monkeypatch):
        store.add(make_record(email="voter@example.org", confirmed_after=None))

        async def nobody_yet(email):
            return None

        # Existence check passes, the unique email constraint catches it
        monkeypatch.setattr(store, "find_by_email", nobody_yet)

        assert await lifecycle.submit(submission()) == SubmissionStatus.CONFLICT
        assert len(store.records) == 1

    async def test_dispatch_failure_does_not_fail_submission(self, lifecycle, store, dispatcher):
        dispatcher.error = ConnectionError("broker down")

        outcome = await lifecycle.submit(submission())
        await lifecycle.drain()

        assert outcome == SubmissionStatus.ACCEPTED
        assert len(store.records) == 1

    async def test_refused_dispatch_does_not_fail_submission(self, lifecycle, store, dispatcher):
        dispatcher.accept = False

        assert await lifecycle.submit(submission()) == SubmissionStatus.ACCEPTED
        await lifecycle.drain()
        assert len(store.records) == 1

    async def test_slow_dispatch_is_bounded(self, lifecycle, dispatcher):
        dispatcher.delay = 5.0

        outcome = await asyncio.wait_for(lifecycle.submit(submission()), timeout=1.0)
        await asyncio.wait_for(lifecycle.drain(), timeout=2.0)

        assert outcome == SubmissionStatus.ACCEPTED
        assert dispatcher.jobs == []

    async def test_store_outage_propagates(self, lifecycle, store, dispatcher):
        store.unavailable = True

        with pytest.raises(StoreUnavailableError):
            await lifecycle.submit(submission())
        assert dispatcher.jobs == []


@pytest.mark.asyncio
class TestConfirm:
    """Tests for vote confirmation."""

    async def test_unknown_id_is_not_found(self, lifecycle):
        assert await lifecycle.confirm("does-not-exist") is None

    async def test_pending_vote_is_confirmed_and_cached(self, lifecycle, store, dispatcher, cache):
        await lifecycle.submit(submission(country="PL"))
        (vote_id,) = store.records
        total_before = lifecycle.get_stats().total

        public = await lifecycle.confirm(vote_id)
        await lifecycle.drain()

        assert isinstance(public, PublicVote)
        assert public.confirmed is not None
        assert public.country_code == "PL"
        assert store.records[vote_id].confirmed == public.confirmed
        assert lifecycle.list_by_country("PL") == [public]
        assert lifecycle.get_stats().total == total_before + 1
        assert dispatcher.events() == [VoteEvent.SUBMITTED, VoteEvent.CONFIRMED]

    async def test_confirming_twice_is_idempotent(self, lifecycle, store, dispatcher, cache):
        await lifecycle.submit(submission())
        (vote_id,) = store.records

        first = await lifecycle.confirm(vote_id)
        size_after_first = len(cache.snapshot)
        second = await lifecycle.confirm(vote_id)
        await lifecycle.drain()

        assert second == first
        assert len(cache.snapshot) == size_after_first == 1
        assert dispatcher.events().count(VoteEvent.CONFIRMED) == 1
        assert store.confirm_calls == 1

    async def test_lost_confirmation_race_returns_winner(self, lifecycle, store, dispatcher, cache, make_record):
        record = store.add(make_record(confirmed_after=None))
        winner = replace(record, confirmed=record.created)
        real_find_by_id = store.find_by_id
        calls = []

        async def stale_then_fresh(vote_id):
            calls.append(vote_id)
            if len(calls) == 1:
                return record
            return await real_find_by_id(vote_id)

        store.records[record.id] = winner
        store.find_by_id = stale_then_fresh

        public = await lifecycle.confirm(record.id)
        await lifecycle.drain()

        assert public.confirmed == winner.confirmed
        assert dispatcher.jobs == []
        assert len(cache.snapshot) == 0

    async def test_disabled_vote_is_confirmed_but_not_cached(self, lifecycle, store, cache, make_record):
        record = store.add(make_record(confirmed_after=None, disabled=True))

        public = await lifecycle.confirm(record.id)

        assert public.confirmed is not None
        assert len(cache.snapshot) == 0

    async def test_dispatch_failure_does_not_fail_confirmation(self, lifecycle, store, dispatcher):
        await lifecycle.submit(submission())
        await lifecycle.drain()
        dispatcher.error = RuntimeError("queue full")
        (vote_id,) = store.records

        public = await lifecycle.confirm(vote_id)
        await lifecycle.drain()

        assert public.confirmed is not None
        assert lifecycle.get_stats().total == 1

    async def test_store_outage_propagates(self, lifecycle, store):
        store.unavailable = True

        with pytest.raises(StoreUnavailableError):
            await lifecycle.confirm("any")


@pytest.mark.asyncio
class TestRefreshAll:
    """Tests for rebuilding the cache from the store."""

    async def test_only_confirmed_enabled_records_are_cached(self, lifecycle, store, make_record):
        enabled = store.add(make_record("DE", confirmed_after=5))
        store.add(make_record("FR", confirmed_after=6, disabled=True))
        store.add(make_record("IT", confirmed_after=None))

        snapshot = await lifecycle.refresh_all()

        assert len(snapshot) == 1
        assert lifecycle.list_by_country("DE")[0].confirmed == enabled.confirmed
        assert lifecycle.list_by_country("FR") == []
        assert lifecycle.get_stats().total == 1

    async def test_refresh_picks_up_out_of_band_changes(self, lifecycle, store, make_record):
        record = store.add(make_record("DE"))
        await lifecycle.refresh_all()

        store.records[record.id] = replace(record, disabled=True)
        await lifecycle.refresh_all()

        assert lifecycle.get_stats().total == 0

    async def test_concurrent_confirmations_and_refresh_lose_nothing(self, lifecycle, store, make_record):
        pending = [store.add(make_record(confirmed_after=None)) for _ in range(10)]
        store.add(make_record("FR"))

        await asyncio.gather(
            lifecycle.refresh_all(),
            *(lifecycle.confirm(r.id) for r in pending),
            lifecycle.refresh_all(),
        )
        await lifecycle.drain()

        assert lifecycle.get_stats().total == 11
        rebuilt = await lifecycle.refresh_all()
        assert rebuilt.entries == lifecycle.cache.entries

    async def test_store_outage_keeps_previous_cache(self, lifecycle, store, make_record):
        store.add(make_record())
        await lifecycle.refresh_all()
        store.unavailable = True

        with pytest.raises(StoreUnavailableError):
            await lifecycle.refresh_all()
        assert lifecycle.get_stats().total == 1

    async def test_published_stats_cannot_be_changed_by_readers(self, lifecycle, store, make_record):
        store.add(make_record("DE"))
        await lifecycle.refresh_all()
        stats = lifecycle.get_stats()

        with pytest.raises(AttributeError):
            stats.countries.append(CountryCount("XX", 99))
        with pytest.raises(AttributeError):
            stats.recent.clear()
        with pytest.raises(FrozenInstanceError):
            stats.total = 0

        assert lifecycle.cache.snapshot.stats.countries == (CountryCount("DE", 1),)
        assert len(lifecycle.get_stats().recent) == 1
