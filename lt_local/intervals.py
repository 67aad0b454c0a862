"""Closed-interval arithmetic for watched time ranges."""

from __future__ import annotations

import math
from collections.abc import Iterable

Interval = tuple[int, int]


def normalize_interval(start: float, end: float) -> Interval:
    """Build a whole-second interval from two playhead positions.

    Bounds may arrive reversed (a checkpoint taken after rewinding); the
    interval always runs from the smaller to the larger position. The start
    is floored and the end rounded up so a partial second counts as seen.
    """
    low, high = (start, end) if start <= end else (end, start)
    return max(int(math.floor(low)), 0), max(int(math.ceil(high)), 0)


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Merge overlapping or touching intervals.

    Intervals are sorted by start and swept left to right: the next interval
    joins the current one when its start is <= the current end.

    Args:
        intervals: Closed [start, end] pairs, in any order.

    Returns:
        Sorted, pairwise-disjoint intervals covering the same seconds.
    """
    merged: list[list[int]] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return [(start, end) for start, end in merged]


def covered_seconds(intervals: Iterable[Interval]) -> int:
    """Total length of the union of the given intervals."""
    return sum(end - start for start, end in merge_intervals(intervals))


def seconds_to_intervals(seconds: Iterable[int]) -> list[Interval]:
    """Turn visited whole seconds into unit intervals [s, s + 1]."""
    return [(second, second + 1) for second in seconds if second >= 0]
