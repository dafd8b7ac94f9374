"""Request image storage on an S3-compatible bucket.

Images arrive as base64 data URLs, are stored under ``IMAGE_FOLDER`` and are
referenced from requests by ``{url, storage_key}``. Uploads and deletes are
best-effort from the request's point of view: a failed image never fails the
request operation, it is logged and skipped.
"""

import base64
import binascii
import re
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import Request

import settings
from schemas import RequestImage

logger = structlog.get_logger(__name__)

MAX_IMAGE_BYTES = 5 * 1024 * 1024  # 5MB
CONTENT_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}
DATA_URL = re.compile(r"^data:(?P<type>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


class ImageError(ValueError):
    pass


def decode_data_url(data_url: str):
    """Return (content_type, bytes) for a base64 image data URL."""
    match = DATA_URL.match(data_url or "")
    if not match:
        raise ImageError("Image must be a base64 data URL")
    content_type = match.group("type").lower()
    if content_type not in CONTENT_TYPES:
        raise ImageError("Invalid file type. Only JPEG, PNG, and WebP are allowed.")
    try:
        payload = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError):
        raise ImageError("Image data is not valid base64") from None
    if len(payload) > MAX_IMAGE_BYTES:
        raise ImageError("File size too large. Maximum size is 5MB.")
    return content_type, payload


class ImageStorage:
    def __init__(
        self,
        bucket: str,
        client=None,
        folder: str = settings.IMAGE_FOLDER,
        public_base_url: Optional[str] = None,
    ):
        self.bucket = bucket
        self.folder = folder.strip("/")
        self.client = client or boto3.client(
            "s3",
            region_name=settings.S3_REGION,
            endpoint_url=settings.S3_ENDPOINT_URL,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        )
        self.public_base_url = (public_base_url or f"https://{bucket}.s3.amazonaws.com").rstrip("/")

    def upload(self, data_url: str) -> dict:
        content_type, payload = decode_data_url(data_url)
        key = f"{self.folder}/{uuid.uuid4().hex}{CONTENT_TYPES[content_type]}"
        self.client.put_object(Bucket=self.bucket, Key=key, Body=payload, ContentType=content_type)
        return {"url": f"{self.public_base_url}/{key}", "storage_key": key}

    def delete(self, storage_key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=storage_key)


def create_storage() -> ImageStorage:
    return ImageStorage(settings.S3_BUCKET, public_base_url=settings.S3_PUBLIC_BASE_URL)


def get_image_storage(request: Request) -> ImageStorage:
    return request.app.state.image_storage


def upload_images(storage, images: List[str]) -> List[RequestImage]:
    uploaded = []
    for index, data_url in enumerate(images):
        try:
            stored = storage.upload(data_url)
        except (ImageError, BotoCoreError, ClientError) as exc:
            logger.warning("image.upload_failed", index=index, error=str(exc))
            continue
        uploaded.append(RequestImage(uploaded_at=datetime.now(timezone.utc), **stored))
    return uploaded


def purge_images(storage, images: List[RequestImage]) -> int:
    """Delete stored images; returns how many were removed."""
    removed = 0
    for image in images:
        try:
            storage.delete(image.storage_key)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("image.delete_failed", storage_key=image.storage_key, error=str(exc))
            continue
        removed += 1
    return removed
