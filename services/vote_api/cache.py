"""
In-memory projection of confirmed votes.

The cache is published as immutable snapshots. Writers (full rebuilds and
single inserts) are serialized behind one asyncio lock and swap in a new
snapshot when done; readers just take the current snapshot reference and
never see a partially built view.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Iterable, List, Tuple

from ..shared.models import PublicVote, Stats, VoteRecord, project_public
from .stats import compute_stats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheSnapshot:
    """One published version of the cache and the stats derived from it."""
    entries: Tuple[PublicVote, ...] = ()
    ids: FrozenSet[str] = frozenset()
    stats: Stats = field(default_factory=Stats)
    version: int = 0

    def __len__(self) -> int:
        return len(self.entries)


def build_snapshot(records: Iterable[VoteRecord], version: int = 0,
                   recent_limit: int = 10) -> CacheSnapshot:
    """
    Build a snapshot from raw records.

    Pending and disabled records are dropped, the rest are projected and
    sorted newest confirmation first. No I/O.
    """
    seen = set()
    entries = []
    for record in records:
        if not record.is_public:
            continue
        if record.id is not None:
            if record.id in seen:
                continue
            seen.add(record.id)
        entries.append(project_public(record))

    entries.sort(key=PublicVote.sort_key, reverse=True)
    entries = tuple(entries)
    return CacheSnapshot(
        entries=entries,
        ids=frozenset(seen),
        stats=compute_stats(entries, recent_limit),
        version=version,
    )


def _insert_position(entries: Tuple[PublicVote, ...], key: tuple) -> int:
    # Binary search over a descending sequence; equal keys go after existing ones
    lo, hi = 0, len(entries)
    while lo < hi:
        mid = (lo + hi) // 2
        if entries[mid].sort_key() < key:
            hi = mid
        else:
            lo = mid + 1
    return lo


class ConfirmationCache:
    """Confirmed, enabled votes ordered by confirmation time, newest first."""

    def __init__(self, recent_limit: int = 10):
        self.recent_limit = recent_limit
        self._snapshot = CacheSnapshot()
        self._write_lock = asyncio.Lock()

    @property
    def snapshot(self) -> CacheSnapshot:
        return self._snapshot

    @property
    def entries(self) -> Tuple[PublicVote, ...]:
        return self._snapshot.entries

    @property
    def stats(self) -> Stats:
        return self._snapshot.stats

    def lookup(self, country_code: str) -> List[PublicVote]:
        """Entries for one country, in cache order."""
        code = country_code.strip().upper()
        return [entry for entry in self._snapshot.entries if entry.country_code == code]

    async def rebuild_from(self, records: Iterable[VoteRecord]) -> CacheSnapshot:
        """Replace the whole cache with the given records."""
        async with self._write_lock:
            return self._publish(
                build_snapshot(records, self._snapshot.version + 1, self.recent_limit)
            )

    async def refresh(self, loader: Callable[[], Awaitable[Iterable[VoteRecord]]]) -> CacheSnapshot:
        """
        Reload from the store and publish the result.

        The write lock is held while the loader runs, so an insert that
        arrives during the load is applied on top of the new snapshot
        instead of being overwritten by it.
        """
        async with self._write_lock:
            records = await loader()
            return self._publish(
                build_snapshot(records, self._snapshot.version + 1, self.recent_limit)
            )

    async def insert(self, record: VoteRecord) -> bool:
        """
        Add one confirmed record.

        Returns:
            bool: False if the record is not public or already cached
        """
        if not record.is_public:
            return False

        async with self._write_lock:
            current = self._snapshot
            if record.id is not None and record.id in current.ids:
                return False

            entry = project_public(record)
            position = _insert_position(current.entries, entry.sort_key())
            entries = current.entries[:position] + (entry,) + current.entries[position:]
            ids = (current.ids | {record.id}) if record.id is not None else current.ids

            self._publish(CacheSnapshot(
                entries=entries,
                ids=ids,
                stats=compute_stats(entries, self.recent_limit),
                version=current.version + 1,
            ))
            return True

    def _publish(self, snapshot: CacheSnapshot) -> CacheSnapshot:
        self._snapshot = snapshot
        logger.debug(f"Cache snapshot v{snapshot.version} published: {len(snapshot)} entries")
        return snapshot
