"""Bounded per-node metric history."""
from __future__ import annotations

from typing import Iterable, Tuple

from .models import HistoryPoint, NodeSnapshot

# 60 points at the default 3s interval is three minutes of trend
HISTORY_SIZE = 60


def append_point(
    history: Iterable[HistoryPoint],
    point: HistoryPoint,
    capacity: int = HISTORY_SIZE,
) -> Tuple[HistoryPoint, ...]:
    """Return a copy of *history* with *point* appended, oldest evicted first."""
    if capacity <= 0:
        return ()
    points = (*history, point)
    if len(points) > capacity:
        points = points[len(points) - capacity:]
    return points


def extend_history(
    history: Iterable[HistoryPoint],
    snapshot: NodeSnapshot,
    capacity: int = HISTORY_SIZE,
) -> Tuple[HistoryPoint, ...]:
    """Append the summary of *snapshot* to *history*."""
    return append_point(history, HistoryPoint.from_snapshot(snapshot), capacity)
