"""
Task Timeline

Ordered, append-only list of steps on an agent task with an explicit cursor.

    entries[:cursor]    completed
    entries[cursor]     current (only when cursor < len(entries))
    entries[cursor+1:]  pending

Because status is derived from the cursor there can never be two current
entries, and completed entries can never follow pending ones.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from app.core.utc import parse_iso, to_iso, utc_now


class EntryStatus(str, Enum):
    COMPLETED = "completed"
    CURRENT = "current"
    PENDING = "pending"


_STATUS_ORDER = {EntryStatus.COMPLETED: 0, EntryStatus.CURRENT: 1, EntryStatus.PENDING: 2}


@dataclass(frozen=True)
class TimelineEntry:
    """One step. Immutable once added."""
    timestamp: datetime
    action: str
    reasoning: Optional[str] = None
    tool_name: Optional[str] = None

    def to_storage(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": to_iso(self.timestamp), "action": self.action}
        if self.reasoning:
            data["reasoning"] = self.reasoning
        if self.tool_name:
            data["tool_name"] = self.tool_name
        return data

    @classmethod
    def from_storage(cls, data: dict[str, Any]) -> "TimelineEntry":
        raw_ts = data.get("timestamp")
        return cls(
            timestamp=parse_iso(raw_ts) if raw_ts else utc_now(),
            action=str(data.get("action", "")),
            reasoning=data.get("reasoning"),
            tool_name=data.get("tool_name"),
        )


@dataclass
class TaskTimeline:
    entries: list[TimelineEntry] = field(default_factory=list)
    cursor: int = 0

    def __post_init__(self):
        if not 0 <= self.cursor <= len(self.entries):
            raise ValueError(f"Timeline cursor {self.cursor} out of range for {len(self.entries)} entries")

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def current(self) -> Optional[TimelineEntry]:
        if self.cursor < len(self.entries):
            return self.entries[self.cursor]
        return None

    @property
    def is_finished(self) -> bool:
        return self.cursor == len(self.entries)

    def status_of(self, index: int) -> EntryStatus:
        if index < self.cursor:
            return EntryStatus.COMPLETED
        if index == self.cursor:
            return EntryStatus.CURRENT
        return EntryStatus.PENDING

    # -- mutation (append-only) ------------------------------------------

    def plan(self, action: str, reasoning: Optional[str] = None, tool_name: Optional[str] = None) -> TimelineEntry:
        """Add a step at the end. It becomes current if nothing else is."""
        entry = TimelineEntry(timestamp=utc_now(), action=action, reasoning=reasoning, tool_name=tool_name)
        self.entries.append(entry)
        return entry

    def log(self, action: str, reasoning: Optional[str] = None, tool_name: Optional[str] = None) -> TimelineEntry:
        """Record a step that already happened, just before the current one."""
        entry = TimelineEntry(timestamp=utc_now(), action=action, reasoning=reasoning, tool_name=tool_name)
        self.entries.insert(self.cursor, entry)
        self.cursor += 1
        return entry

    def advance(self) -> Optional[TimelineEntry]:
        """Complete the current step; the next one (if any) becomes current."""
        if self.is_finished:
            return None
        self.cursor += 1
        return self.current

    def complete_all(self) -> None:
        self.cursor = len(self.entries)

    # -- serialization ---------------------------------------------------

    def entries_with_status(self) -> list[dict[str, Any]]:
        """Entries as API dicts with their derived status."""
        return [
            {**entry.to_storage(), "status": self.status_of(i).value}
            for i, entry in enumerate(self.entries)
        ]

    def to_storage(self) -> tuple[list[dict[str, Any]], int]:
        return [entry.to_storage() for entry in self.entries], self.cursor

    @classmethod
    def from_storage(cls, entries: Optional[Iterable[dict[str, Any]]], cursor: Optional[int]) -> "TaskTimeline":
        parsed = [TimelineEntry.from_storage(e) for e in (entries or [])]
        position = len(parsed) if cursor is None else min(max(cursor, 0), len(parsed))
        return cls(entries=parsed, cursor=position)

    @classmethod
    def from_status_entries(cls, entries: Iterable[dict[str, Any]]) -> "TaskTimeline":
        """
        Build a timeline from entries that carry their own status field.

        Raises ValueError when more than one entry is current or when the
        statuses are out of order (e.g. completed after pending).
        """
        parsed: list[TimelineEntry] = []
        statuses: list[EntryStatus] = []
        for raw in entries:
            try:
                statuses.append(EntryStatus(raw.get("status", EntryStatus.COMPLETED.value)))
            except ValueError:
                raise ValueError(f"Unknown timeline entry status: {raw.get('status')!r}")
            parsed.append(TimelineEntry.from_storage(raw))

        if statuses.count(EntryStatus.CURRENT) > 1:
            raise ValueError("Timeline has more than one current entry")
        ranks = [_STATUS_ORDER[s] for s in statuses]
        if ranks != sorted(ranks):
            raise ValueError("Timeline entries are out of order")

        if EntryStatus.CURRENT in statuses:
            cursor = statuses.index(EntryStatus.CURRENT)
        elif EntryStatus.PENDING in statuses:
            # No current step yet: the first pending one is next up
            cursor = statuses.index(EntryStatus.PENDING)
        else:
            cursor = len(statuses)
        return cls(entries=parsed, cursor=cursor)
