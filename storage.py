"""
storage.py
----------
MTB FHIR Bridge: Presentation Image Storage
-------------------------------------------
S3-compatible object storage (MinIO or AWS S3) for images embedded in MTB
presentations.  Objects are keyed ``<patientId>/<uuid>.<ext>`` inside one
bucket; the public URL returned to the portal is
``<file_server>/<bucket>/<key>``.

The boto3 client is synchronous; the orchestrator calls these methods off
the event loop.

Public API:
    ObjectStorage.from_settings()
    ObjectStorage.upload_image()         → URL
    ObjectStorage.list_images()          → object keys for a patient
    ObjectStorage.remove_unused_images() → keys deleted

Project: MTB FHIR Bridge
"""

from __future__ import annotations

import base64
import binascii
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from errors import InvalidArgument, UpstreamUnavailable
from schemas import Image

logger = logging.getLogger(__name__)

DATA_PREFIX = "base64,"

CONTENT_TYPE_EXTENSIONS: Dict[str, str] = {
    "image/png":     "png",
    "image/jpeg":    "jpg",
    "image/jpg":     "jpg",
    "image/gif":     "gif",
    "image/svg+xml": "svg",
    "image/webp":    "webp",
}


def decode_image(image: Image) -> bytes:
    """Decode the base64 payload of *image* (data-URL prefix optional)."""
    data = image.data
    if DATA_PREFIX in data:
        data = data[data.index(DATA_PREFIX) + len(DATA_PREFIX):]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidArgument(f"Image data is not valid base64: {exc}") from exc


class ObjectStorage:
    """
    Args:
        url:    file server base URL, e.g. ``http://minio:9000``.
        bucket: bucket holding all presentation images.
        client: boto3 S3 client (tests pass a ``MagicMock``).
    """

    def __init__(self, url: str, bucket: str, client: Any) -> None:
        self.url = url.rstrip("/")
        self.bucket = bucket
        self._client = client

    @classmethod
    def from_settings(cls, settings: Any) -> Optional["ObjectStorage"]:
        """Storage for ``settings.file_server``; ``None`` when no file server is configured."""
        if not settings.storage_enabled:
            return None
        client = boto3.client(
            "s3",
            endpoint_url=settings.file_server,
            aws_access_key_id=settings.file_server_access_key,
            aws_secret_access_key=settings.file_server_secret_key,
        )
        logger.info("storage: using %s bucket %s", settings.file_server, settings.bucket)
        return cls(settings.file_server, settings.bucket, client)

    @property
    def public_prefix(self) -> str:
        return f"{self.url}/{self.bucket}/"

    def bucket_exists(self) -> bool:
        try:
            self._client.head_bucket(Bucket=self.bucket)
            return True
        except ClientError as exc:
            logger.warning("storage: bucket %s unavailable: %s", self.bucket, exc)
            return False
        except BotoCoreError as exc:
            raise UpstreamUnavailable(f"Object storage unreachable: {exc}") from exc

    def upload_image(self, image: Image, patient_id: str) -> str:
        """
        Store *image* under the patient's prefix and return its public URL.

        Raises:
            InvalidArgument:     unsupported content type or bad base64.
            UpstreamUnavailable: bucket missing or storage unreachable.
        """
        extension = CONTENT_TYPE_EXTENSIONS.get(image.content_type.lower())
        if extension is None:
            raise InvalidArgument(f"Unsupported image content type: {image.content_type}")
        if not self.bucket_exists():
            raise UpstreamUnavailable(f"Bucket {self.bucket} doesn't exist")

        key = f"{patient_id}/{uuid.uuid4()}.{extension}"
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=decode_image(image),
                ContentType=image.content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise UpstreamUnavailable(f"Image upload failed: {exc}") from exc

        logger.info("storage: uploaded %s", key)
        return f"{self.public_prefix}{key}"

    def list_images(self, patient_id: str) -> List[str]:
        """Object keys stored under ``<patient_id>/``."""
        keys: List[str] = []
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{patient_id}/"):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (BotoCoreError, ClientError) as exc:
            raise UpstreamUnavailable(f"Listing images failed: {exc}") from exc
        return keys

    def remove_unused_images(self, patient_id: str, image_urls: Iterable[str]) -> List[str]:
        """
        Delete the patient's objects not referenced by *image_urls*.

        URLs pointing anywhere other than this bucket are ignored.  Per-object
        delete errors are logged.
        """
        prefix = self.public_prefix
        in_use = {url[len(prefix):] for url in image_urls if url.startswith(prefix)}
        unused = [key for key in self.list_images(patient_id) if key not in in_use]
        if not unused:
            return []

        try:
            result = self._client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in unused], "Quiet": True},
            )
        except (BotoCoreError, ClientError) as exc:
            raise UpstreamUnavailable(f"Removing images failed: {exc}") from exc

        for error in result.get("Errors", []):
            logger.warning("storage: could not delete %s: %s", error.get("Key"), error.get("Message"))
        logger.info("storage: removed %d unused image(s) for %s", len(unused), patient_id)
        return unused
