"""Turn a finished capture directory into published screenshots."""
from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Tuple

from mailcapture.capture import METADATA_FILENAME
from mailcapture.imaging import compose_tiles, encode_image, make_thumbnails, tile_paths
from mailcapture.jobs import Job, JobFormatError
from mailcapture.notify import HomeNotifier, NotifyError
from mailcapture.provisioning import ProvisioningConfig
from mailcapture.upload import (
    SUFFIX_FULL,
    SUFFIX_LARGE_THUMBNAIL,
    SUFFIX_SMALL_THUMBNAIL,
    ArtifactUploader,
    UploadError,
    artifact_key,
)

LOGGER = logging.getLogger(__name__)

UploaderFactory = Callable[[ProvisioningConfig], ArtifactUploader]


class PublishError(RuntimeError):
    """Raised when a capture could not be composed, uploaded or announced."""


@dataclass
class PublishResult:
    test_guid: str
    keys: Tuple[str, ...]
    size: Tuple[int, int]


def load_metadata(directory: Path) -> Job:
    """Rebuild the job described by the sidecar file of a capture directory."""
    path = directory / METADATA_FILENAME
    try:
        record = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise PublishError(f"unable to read {path}: {exc}") from exc
    if isinstance(record, dict):
        record.setdefault("content", "")
    try:
        return Job.from_record(record)
    except JobFormatError as exc:
        raise PublishError(f"invalid metadata in {path}: {exc}") from exc


def default_uploader_factory(config: ProvisioningConfig) -> ArtifactUploader:
    return ArtifactUploader(config.bucket, config.access_key, config.secret_key)


class ScreenshotPublisher:
    """Compose, thumbnail, upload and announce one capture, then remove it."""

    def __init__(
        self,
        notifier: HomeNotifier,
        *,
        uploader_factory: UploaderFactory = default_uploader_factory,
    ) -> None:
        self._notifier = notifier
        self._uploader_factory = uploader_factory
        self._uploaders: Dict[Tuple[str, str], ArtifactUploader] = {}

    def publish(self, directory: Path, config: ProvisioningConfig) -> PublishResult:
        try:
            return self._publish(directory, config)
        except (OSError, ValueError, UploadError, NotifyError) as exc:
            raise PublishError(f"publishing {directory.name} failed: {exc}") from exc
        finally:
            self._remove(directory)

    def _publish(self, directory: Path, config: ProvisioningConfig) -> PublishResult:
        job = load_metadata(directory)
        client_folder = config.image_folder
        fmt = config.image_format

        screenshot = compose_tiles(tile_paths(directory))
        LOGGER.debug("Screenshot built for %s: %sx%s", job.test_guid, *screenshot.size)
        thumbnails = make_thumbnails(screenshot, config.thumb_width, config.thumb_height)

        uploader = self._uploader_for(config)
        uploads = (
            (SUFFIX_LARGE_THUMBNAIL, thumbnails.large),
            (SUFFIX_SMALL_THUMBNAIL, thumbnails.small),
            (SUFFIX_FULL, thumbnails.full),
        )
        keys = []
        for suffix, image in uploads:
            key = artifact_key(job, client_folder, fmt, suffix)
            uploader.upload(key, encode_image(image, fmt), fmt)
            keys.append(key)
        LOGGER.debug("All images uploaded for %s", job.test_guid)

        self._notifier.log_screenshot(config.screenshot_log_url, job, client_folder)
        self._notifier.mark_processed(config.reserve_url, job, client_folder)
        LOGGER.info("Published screenshot %s", job.test_guid)
        return PublishResult(test_guid=job.test_guid, keys=tuple(keys), size=screenshot.size)

    def _uploader_for(self, config: ProvisioningConfig) -> ArtifactUploader:
        cache_key = (config.bucket, config.access_key)
        uploader = self._uploaders.get(cache_key)
        if uploader is None:
            uploader = self._uploader_factory(config)
            self._uploaders = {cache_key: uploader}
        return uploader

    def _remove(self, directory: Path) -> None:
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            return
        except OSError as exc:
            LOGGER.warning("Unable to remove capture directory %s: %s", directory, exc)
