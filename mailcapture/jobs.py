"""Rendering-test jobs as they travel through the work queue."""
from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict

GUID_PATTERN = re.compile(
    r"^((\d{4}-\d{2}-\d{2})_(((\d+)_(\d+)(_(\d+))?)(_no_images)?)_([a-zA-Z]{2,4}))"
)
NO_IMAGES_MARKER = "_no_images"
REQUIRED_FIELDS = ("guid", "test_guid", "zone", "content")


class JobFormatError(ValueError):
    """Raised when a queue record cannot be turned into a Job."""


@dataclass
class Job:
    guid: str
    test_guid: str
    zone: str
    content: str
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Any) -> "Job":
        if not isinstance(record, dict):
            raise JobFormatError("job record must be a JSON object")
        missing = [name for name in REQUIRED_FIELDS if not isinstance(record.get(name), str)]
        if missing:
            raise JobFormatError(f"job record missing fields: {', '.join(missing)}")
        if not record["test_guid"].strip():
            raise JobFormatError("job record has an empty test_guid")
        extra = {key: value for key, value in record.items() if key not in REQUIRED_FIELDS}
        return cls(
            guid=record["guid"],
            test_guid=record["test_guid"],
            zone=record["zone"],
            content=record["content"],
            extra=extra,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Job":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            record = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise JobFormatError(f"job record is not valid JSON: {exc}") from exc
        return cls.from_record(record)

    def to_record(self) -> Dict[str, Any]:
        record = dict(self.extra)
        record.update(
            guid=self.guid,
            test_guid=self.test_guid,
            zone=self.zone,
            content=self.content,
        )
        return record

    def to_json(self) -> str:
        return json.dumps(self.to_record())

    def metadata(self) -> Dict[str, Any]:
        """Every field except the raw message source."""
        record = self.to_record()
        record.pop("content", None)
        return record

    def decoded_content(self) -> str:
        try:
            return base64.b64decode(self.content).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise JobFormatError(f"content of {self.test_guid} is not base64 text") from exc

    def record_id(self, client_folder: str) -> int:
        """Reservation record id stored under guid_in_subject for a client folder."""
        ids = self.extra.get("guid_in_subject")
        if not isinstance(ids, dict):
            return 0
        try:
            return int(ids.get(client_folder) or 0)
        except (TypeError, ValueError):
            return 0

    @property
    def guid_parts(self) -> "GuidParts":
        return GuidParts.parse(self.guid)


@dataclass(frozen=True)
class GuidParts:
    """Fields encoded in a job guid such as ``2021-06-01_42_153012_us``."""

    date: str = ""
    time: str = ""
    member_id: str = ""
    zone: str = ""
    image_blocking: str = ""

    @classmethod
    def parse(cls, guid: str) -> "GuidParts":
        blocking = "Y" if NO_IMAGES_MARKER in (guid or "") else ""
        match = GUID_PATTERN.match(guid or "")
        if not match:
            return cls(image_blocking=blocking)
        return cls(
            date=match.group(2) or "",
            time=_format_time(match.group(8) or match.group(6) or ""),
            member_id=match.group(5) or "",
            zone=match.group(10) or "",
            image_blocking=blocking,
        )

    @property
    def test_date(self) -> str:
        return f"{self.date} {self.time}"


def _format_time(digits: str) -> str:
    pairs = [digits[index : index + 2] for index in range(0, len(digits), 2)]
    return ":".join(pairs)
