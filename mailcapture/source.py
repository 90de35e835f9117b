"""Temporary .eml files handed to the mail client."""
from __future__ import annotations

import logging
from pathlib import Path

from mailcapture.jobs import Job

LOGGER = logging.getLogger(__name__)


class RenderedSource:
    """Writes a job's decoded message source where the mail client can open it."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, job: Job) -> Path:
        return self.directory / f"{job.test_guid}.eml"

    def write(self, job: Job) -> Path:
        path = self.path_for(job)
        self.directory.mkdir(parents=True, exist_ok=True)
        path.write_text(job.decoded_content(), encoding="utf-8")
        LOGGER.debug("Wrote message source %s", path)
        return path

    def delete(self, job: Job) -> None:
        path = self.path_for(job)
        try:
            path.unlink()
        except FileNotFoundError:
            LOGGER.debug("Message source %s already removed", path)
