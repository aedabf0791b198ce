"""Structured event records emitted by mutating operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pandas as pd


@dataclass(frozen=True)
class Event:
    """A single committed state change."""

    kind: str  # e.g. "Deposit", "Liquidate", "InterestRatesUpdated"
    timestamp: int
    loan_id: str | None = None
    pool_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class EventLog:
    """Append-only event sink.

    Operations stage events in a list and the log only receives them once
    the operation commits, so a rejected operation emits nothing.
    """

    def __init__(self) -> None:
        self._events: list[Event] = []

    def extend(self, events: list[Event]) -> None:
        self._events.extend(events)

    @property
    def events(self) -> list[Event]:
        return list(self._events)

    def of_kind(self, kind: str) -> list[Event]:
        return [e for e in self._events if e.kind == kind]

    def last(self, kind: str | None = None) -> Event | None:
        for event in reversed(self._events):
            if kind is None or event.kind == kind:
                return event
        return None

    def __len__(self) -> int:
        return len(self._events)

    def to_frame(self) -> pd.DataFrame:
        """Flatten the log into a DataFrame, one row per event.

        Returns:
            DataFrame with columns: kind, timestamp, loan_id, pool_id plus
            one column per data key seen in any event.
        """
        rows = [
            {
                "kind": e.kind,
                "timestamp": e.timestamp,
                "loan_id": e.loan_id,
                "pool_id": e.pool_id,
                **e.data,
            }
            for e in self._events
        ]
        return pd.DataFrame(rows, columns=None if rows else ["kind", "timestamp", "loan_id", "pool_id"])
