"""Heatmap aggregation: per-day activity counts with provider breakdown."""

from collections import defaultdict
from typing import Iterable

from ..models import HeatMapBucket, Provider, UnifiedActivity

__all__ = ["generate_buckets", "merge_buckets"]


def generate_buckets(activities: Iterable[UnifiedActivity]) -> list[HeatMapBucket]:
    """Group activities by UTC calendar date, sorted ascending by date."""
    breakdowns: dict[str, dict[Provider, int]] = defaultdict(lambda: defaultdict(int))
    for activity in activities:
        breakdowns[activity.date_key][activity.provider] += 1

    return [
        HeatMapBucket(date=day, count=sum(counts.values()), breakdown=dict(counts))
        for day, counts in sorted(breakdowns.items())
    ]


def merge_buckets(bucket_sets: Iterable[Iterable[HeatMapBucket]]) -> list[HeatMapBucket]:
    """Merge bucket collections, summing counts and breakdowns key-wise.

    Order of the input collections does not affect the result.
    """
    counts: dict[str, int] = defaultdict(int)
    breakdowns: dict[str, dict[Provider, int]] = {}
    for buckets in bucket_sets:
        for bucket in buckets:
            counts[bucket.date] += bucket.count
            if bucket.breakdown is not None:
                merged = breakdowns.setdefault(bucket.date, {})
                for provider, n in bucket.breakdown.items():
                    merged[provider] = merged.get(provider, 0) + n

    return [
        HeatMapBucket(date=day, count=counts[day], breakdown=breakdowns.get(day))
        for day in sorted(counts)
    ]
