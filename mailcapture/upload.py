"""Upload published screenshots to S3."""
from __future__ import annotations

import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from mailcapture.jobs import NO_IMAGES_MARKER, Job

LOGGER = logging.getLogger(__name__)
AWS_REGION = "us-east-1"
AWS_ACL = "public-read"
AWS_STORAGE_CLASS = "REDUCED_REDUNDANCY"
MAX_ATTEMPTS = 5
SUFFIX_LARGE_THUMBNAIL = "_thumb"
SUFFIX_SMALL_THUMBNAIL = "_tn"
SUFFIX_FULL = ""


class UploadError(RuntimeError):
    """Raised when an artifact cannot be stored."""


def artifact_key(job: Job, client_folder: str, image_format: str, suffix: str) -> str:
    """Object key such as ``us/<test_guid>/<client><suffix>[_no_images].png``."""
    blocked = NO_IMAGES_MARKER if NO_IMAGES_MARKER in job.guid else ""
    return f"{job.zone}/{job.test_guid}/{client_folder}{suffix}{blocked}.{image_format}"


class ArtifactUploader:
    def __init__(
        self,
        bucket: str,
        access_key: str,
        secret_key: str,
        *,
        region: str = AWS_REGION,
        client=None,
    ) -> None:
        self.bucket = bucket
        self._client = client or boto3.client(
            "s3",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(retries={"max_attempts": MAX_ATTEMPTS}),
        )

    def upload(self, key: str, body: bytes, image_format: str) -> None:
        LOGGER.debug("Uploading %s bytes to s3://%s/%s", len(body), self.bucket, key)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ACL=AWS_ACL,
                ContentType=f"image/{image_format}",
                StorageClass=AWS_STORAGE_CLASS,
            )
        except (BotoCoreError, ClientError) as exc:
            raise UploadError(f"upload of {key} failed: {exc}") from exc
