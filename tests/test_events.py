"""Tests for the worker event journal."""
from __future__ import annotations

import threading

from mailcapture.events import JOURNAL_HEADER, EventLogger


def test_journal_records_events_and_counts(tmp_path) -> None:
    logger = EventLogger(tmp_path / "logs" / "events.log")

    logger.log("state", "NotStarted -> NotProvisioned")
    logger.log("capture", "ss-1\tcaptureComplete\nextra")
    logger.log("state")

    assert logger.log_path.read_text(encoding="utf-8").startswith(JOURNAL_HEADER)
    assert logger.entries() == [
        ("state", "NotStarted -> NotProvisioned"),
        ("capture", "ss-1 captureComplete extra"),
        ("state", ""),
    ]
    assert logger.count("state") == 2
    assert logger.count("missing") == 0
    assert logger.counts() == {"state": 2, "capture": 1}


def test_existing_journal_is_appended(tmp_path) -> None:
    path = tmp_path / "events.log"
    EventLogger(path).log("state", "first")

    EventLogger(path).log("state", "second")

    assert [message for _, message in EventLogger(path).entries()] == ["first", "second"]


def test_concurrent_writers_keep_whole_lines(tmp_path) -> None:
    logger = EventLogger(tmp_path / "events.log")

    threads = [
        threading.Thread(target=lambda: [logger.log("tick", "x") for _ in range(50)])
        for _ in range(4)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert logger.count("tick") == 200
    assert len(logger.entries()) == 200


def test_typed_helpers_share_the_journal(tmp_path) -> None:
    logger = EventLogger(tmp_path / "events.log")

    logger.state_change("Idling", "Processing")
    logger.capture_event("captureNextChunk", "ss-7")
    logger.capture_event("corrupted", "ss-7", "mail client lost focus")

    assert logger.entries() == [
        ("state", "Idling->Processing"),
        ("capture_captureNextChunk", "ss-7"),
        ("capture_corrupted", "ss-7 mail client lost focus"),
    ]
    first = logger.read()[0]
    assert first.timestamp.endswith("+00:00")
    assert logger.counts() == {
        "state": 1,
        "capture_captureNextChunk": 1,
        "capture_corrupted": 1,
    }
