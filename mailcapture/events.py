"""Append-only journal of worker transitions and capture events."""
from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

JOURNAL_HEADER = "# Mail Capture Worker Events\n"
STATE_EVENT = "state"
CAPTURE_PREFIX = "capture_"


@dataclass(frozen=True)
class JournalEntry:
    timestamp: str
    event_type: str
    message: str


def _single_line(text: str | None) -> str:
    return " ".join((text or "").replace("\t", " ").splitlines())


class EventLogger:
    """Tab-separated journal shared by the orchestrator and capture threads.

    Each line is ``<utc timestamp>\\t<event type>\\t<message>``. Counters are
    kept in memory for the lifetime of the process only.
    """

    def __init__(self, log_path: Path):
        self.log_path = log_path
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()
        with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            if not self.log_path.exists():
                self.log_path.write_text(JOURNAL_HEADER, encoding="utf-8")

    def log(self, event_type: str, message: str | None = None) -> None:
        stamp = datetime.now(timezone.utc).isoformat()
        row = "\t".join((stamp, _single_line(event_type), _single_line(message)))
        with self._lock:
            with self.log_path.open("a", encoding="utf-8") as journal:
                journal.write(row + "\n")
            self._counts[event_type] += 1

    def state_change(self, old_state: str, new_state: str) -> None:
        self.log(STATE_EVENT, f"{old_state}->{new_state}")

    def capture_event(self, event: str, test_guid: str, detail: str | None = None) -> None:
        message = test_guid if not detail else f"{test_guid} {detail}"
        self.log(f"{CAPTURE_PREFIX}{event}", message)

    def count(self, event_type: str) -> int:
        with self._lock:
            return self._counts[event_type]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {name: total for name, total in self._counts.items() if total}

    def read(self) -> List[JournalEntry]:
        """Every journal row on disk, oldest first, including earlier runs."""
        with self._lock:
            text = self.log_path.read_text(encoding="utf-8")
        rows = []
        for raw in text.splitlines():
            if raw.startswith("#"):
                continue
            fields = raw.split("\t", 2)
            if len(fields) == 3:
                rows.append(JournalEntry(*fields))
        return rows

    def entries(self) -> List[tuple[str, str]]:
        """Event type and message of every journal row, oldest first."""
        return [(entry.event_type, entry.message) for entry in self.read()]
