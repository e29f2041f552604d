"""Public statistics computed from the confirmation cache."""
from collections import Counter
from typing import Sequence

from ..shared.models import CountryCount, PublicVote, Stats


def compute_stats(entries: Sequence[PublicVote], recent_limit: int = 10) -> Stats:
    """
    Summarize cached public votes.

    Only public projections are consumed. The result depends on nothing but
    the entries and their order, so equal caches always give equal stats.

    Args:
        entries: Public votes, most recently confirmed first
        recent_limit: How many entries to report as recent

    Returns:
        Stats: totals, per-country counts and the newest votes
    """
    per_country = Counter(entry.country_code for entry in entries)
    countries = tuple(
        CountryCount(code=code, count=count)
        for code, count in sorted(per_country.items(), key=lambda item: (-item[1], item[0]))
    )

    return Stats(
        total=len(entries),
        countries=countries,
        recent=tuple(entries[:max(recent_limit, 0)]),
        last_confirmed=entries[0].confirmed if entries else None,
    )
