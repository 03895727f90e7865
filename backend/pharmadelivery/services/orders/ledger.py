"""Status history ledger embedded in every order.

The ledger is an append-only list of JSON objects stored alongside the order
status, and it is the only input to delivery timing. Entries are never
rewritten or reordered; ``append_entry`` returns a new list so that the
caller persists ledger and status in the same write.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from pharmadelivery.core.logging import get_logger
from pharmadelivery.core.timeutils import isoformat, parse_timestamp
from pharmadelivery.services.orders.enums import OrderStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class StatusHistoryEntry:
    """One accepted status transition.

    Attributes:
        status: Status value as stored (kept as text so legacy values survive)
        timestamp: When the transition was applied, None if unreadable
        reason: Mandatory for cancellations, optional otherwise
        note: Free-text annotation, e.g. the reactivation marker
        actor: Role of the actor that applied the transition
    """

    status: str
    timestamp: Optional[datetime]
    reason: Optional[str] = None
    note: Optional[str] = None
    actor: Optional[str] = None

    @property
    def order_status(self) -> Optional[OrderStatus]:
        """The entry status as an enum, None for unknown legacy values."""
        try:
            return OrderStatus.from_string(self.status)
        except ValueError:
            return None

    def to_document(self) -> dict[str, Any]:
        """Serialize for storage, omitting empty optional fields."""
        document: dict[str, Any] = {
            "status": self.status,
            "timestamp": isoformat(self.timestamp),
        }
        if self.reason:
            document["reason"] = self.reason
        if self.note:
            document["note"] = self.note
        if self.actor:
            document["actor"] = self.actor
        return document

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> "StatusHistoryEntry":
        """Build an entry from a stored ledger object."""
        status = data.get("status")
        return cls(
            status=status.value if isinstance(status, OrderStatus) else str(status or ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            reason=data.get("reason") or None,
            note=data.get("note") or None,
            actor=data.get("actor") or None,
        )


HistoryItem = Union[StatusHistoryEntry, Mapping[str, Any]]


def parse_status_history(
    history: Optional[Iterable[HistoryItem]],
) -> List[StatusHistoryEntry]:
    """
    Normalize a stored ledger into entries, preserving stored order.

    Items that are not objects cannot be interpreted and are left out of
    the parsed view with a warning; the stored ledger is not modified.

    Args:
        history: Stored ledger (list of dicts) or already parsed entries

    Returns:
        List of StatusHistoryEntry in stored order
    """
    if not history:
        return []

    entries: List[StatusHistoryEntry] = []
    for position, item in enumerate(history):
        if isinstance(item, StatusHistoryEntry):
            entries.append(item)
        elif isinstance(item, Mapping):
            entries.append(StatusHistoryEntry.from_document(item))
        else:
            logger.warning(
                "Unreadable status history entry",
                position=position,
                entry_type=type(item).__name__,
            )
    return entries


def append_entry(
    history: Optional[Sequence[Mapping[str, Any]]],
    entry: StatusHistoryEntry,
) -> List[dict[str, Any]]:
    """
    Return a new stored ledger with ``entry`` appended.

    Args:
        history: Current stored ledger
        entry: Entry to append

    Returns:
        New list; the input sequence is left untouched
    """
    ledger = [dict(item) for item in (history or [])]
    ledger.append(entry.to_document())
    return ledger
