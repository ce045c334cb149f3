"""
Audit Trail
===========

Append-only change log of an incident.

Entries are immutable once written and are never edited or removed.
Sequence numbers are assigned here, monotonically increasing per incident.
"""

from datetime import datetime
from enum import Enum
from collections.abc import Sequence
from typing import Any, Iterator

from incidents.domain.entities import AuditEntry, Incident, utc_isoformat


def to_audit_value(value: Any) -> Any:
    """Convert a field value into its JSON-safe audit representation."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return utc_isoformat(value)
    if isinstance(value, (list, tuple)):
        return [to_audit_value(item) for item in value]
    return value


class HistoryView(Sequence):
    """
    Read-only window over an incident's history.

    Iteration is lazy and can be restarted any number of times; entries
    appended after the view was created are visible to later iterations.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries):
        self._entries = entries

    def __getitem__(self, index):
        if isinstance(index, slice):
            return tuple(self._entries[index])
        return self._entries[index]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[AuditEntry]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return f"HistoryView(entries={len(self._entries)})"


class AuditTrail:
    """Writes and reads audit entries; no mutation API beyond append."""

    def append(
        self,
        incident: Incident,
        field: str,
        old_value: Any,
        new_value: Any,
        actor_id: str,
        now: datetime
    ) -> AuditEntry:
        entry = AuditEntry(
            sequence=len(incident.history) + 1,
            field=field,
            old_value=to_audit_value(old_value),
            new_value=to_audit_value(new_value),
            actor_id=actor_id,
            timestamp=now,
        )
        incident.history.append(entry)
        return entry

    def entries_for(self, incident: Incident) -> HistoryView:
        return HistoryView(incident.history)
