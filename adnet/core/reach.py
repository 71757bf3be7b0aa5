"""
Reach Aggregation

Reach is the number of distinct people who saw a campaign, counted only
where we can prove who they were:

    reach = |{ lower(actor_address) : type == view
                                      and verified
                                      and trust_score >= min_trust_score }|

A missing trust score counts as 0. Unverified events of any type are
reported in excluded_unverified; verified views below the trust floor
in excluded_low_trust.
"""

from dataclasses import asdict, dataclass
from typing import Iterable

from ..schemas import Event, EventType


@dataclass(frozen=True)
class ReachReport:
    reach: int = 0
    excluded_unverified: int = 0
    excluded_low_trust: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class ReachAggregator:
    """Computes reach with a fixed trust floor."""

    def __init__(self, min_trust_score: int = 0):
        self.min_trust_score = min_trust_score

    def compute(self, events: Iterable[Event]) -> ReachReport:
        return compute_reach(events, self.min_trust_score)


def compute_reach(events: Iterable[Event], min_trust_score: int = 0) -> ReachReport:
    """Order-independent: any permutation of events gives the same report."""
    actors: set[str] = set()
    excluded_unverified = 0
    excluded_low_trust = 0

    for event in events:
        if not event.verified:
            excluded_unverified += 1
            continue
        if event.type != EventType.VIEW or not event.actor_address:
            continue
        score = event.trust_score if event.trust_score is not None else 0
        if score < min_trust_score:
            excluded_low_trust += 1
            continue
        actors.add(event.actor_address.lower())

    return ReachReport(
        reach=len(actors),
        excluded_unverified=excluded_unverified,
        excluded_low_trust=excluded_low_trust,
    )


def count_types(events: Iterable[Event]) -> tuple[int, int]:
    """(views, clicks)"""
    views = clicks = 0
    for event in events:
        if event.type == EventType.VIEW:
            views += 1
        elif event.type == EventType.CLICK:
            clicks += 1
    return views, clicks
