"""Delivery timing derived from the status history ledger.

Timing is a pure function of the ledger: entries are sorted by timestamp
(concurrent writers can append slightly out of causal order), each stage
lasts until the next entry, and the total spans first to last entry. When a
status appears more than once only its first occurrence is timed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pharmadelivery.core.timeutils import isoformat
from pharmadelivery.services.orders.ledger import (
    HistoryItem,
    StatusHistoryEntry,
    parse_status_history,
)


@dataclass(frozen=True)
class StageDuration:
    """Time spent in one status before the next transition."""

    status: str
    started_at: datetime
    ended_at: datetime
    minutes: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "startedAt": isoformat(self.started_at),
            "endedAt": isoformat(self.ended_at),
            "minutes": self.minutes,
            "formatted": format_duration(self.minutes),
        }


@dataclass(frozen=True)
class DeliveryTimings:
    """Per-stage and total durations, in minutes."""

    per_stage_duration: Dict[str, float]
    total_minutes: float
    started_at: datetime
    ended_at: datetime
    stages: List[StageDuration] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Document shape shared by the REST endpoint and realtime snapshots."""
        return {
            "perStageDuration": dict(self.per_stage_duration),
            "totalMinutes": self.total_minutes,
            "totalFormatted": format_duration(self.total_minutes),
            "startedAt": isoformat(self.started_at),
            "endedAt": isoformat(self.ended_at),
            "stages": [stage.to_dict() for stage in self.stages],
        }


def _minutes_between(start: datetime, end: datetime) -> float:
    # Out-of-order entries would produce negative spans
    return max((end - start).total_seconds() / 60.0, 0.0)


class DeliveryTimingCalculator:
    """Computes stage and total durations from a status history."""

    def calculate(
        self,
        history: Optional[Iterable[HistoryItem]],
    ) -> Optional[DeliveryTimings]:
        """
        Compute delivery timings for a ledger.

        Args:
            history: Stored ledger or parsed entries

        Returns:
            DeliveryTimings, or None when fewer than two timestamped
            entries exist
        """
        entries: List[StatusHistoryEntry] = [
            entry
            for entry in parse_status_history(history)
            if entry.timestamp is not None
        ]
        if len(entries) < 2:
            return None

        # sorted() is stable, so equal timestamps keep their stored order
        ordered = sorted(entries, key=lambda entry: entry.timestamp)

        per_stage: Dict[str, float] = {}
        stages: List[StageDuration] = []
        for index, current in enumerate(ordered):
            if current.status in per_stage:
                continue
            # A stage ends at the next entry with a different status
            following = next(
                (later for later in ordered[index + 1:] if later.status != current.status),
                None,
            )
            if following is None:
                continue
            minutes = _minutes_between(current.timestamp, following.timestamp)
            per_stage[current.status] = minutes
            stages.append(
                StageDuration(
                    status=current.status,
                    started_at=current.timestamp,
                    ended_at=following.timestamp,
                    minutes=minutes,
                )
            )

        first, last = ordered[0], ordered[-1]
        return DeliveryTimings(
            per_stage_duration=per_stage,
            total_minutes=_minutes_between(first.timestamp, last.timestamp),
            started_at=first.timestamp,
            ended_at=last.timestamp,
            stages=stages,
        )


def calculate_delivery_timings(
    history: Optional[Iterable[HistoryItem]],
) -> Optional[DeliveryTimings]:
    """Convenience wrapper around DeliveryTimingCalculator.calculate."""
    return DeliveryTimingCalculator().calculate(history)


def format_duration(minutes: Optional[float]) -> str:
    """
    Render a duration for display.

    Args:
        minutes: Duration in minutes

    Returns:
        "less than 1 minute", "N min", "Hh" or "Hh Mmin"

    Example:
        >>> format_duration(95)
        '1h 35min'
    """
    if not minutes or minutes < 1:
        return "less than 1 minute"
    if minutes < 60:
        return f"{round(minutes)} min"

    hours = int(minutes // 60)
    remaining = round(minutes % 60)
    if remaining == 60:
        hours, remaining = hours + 1, 0
    if remaining == 0:
        return f"{hours}h"
    return f"{hours}h {remaining}min"
