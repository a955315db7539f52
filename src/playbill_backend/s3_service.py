"""
S3 service module for storing processed images.

This module provides functionality for:
- Deriving deterministic object keys for uploaded assets
- Uploading image bytes to S3 (or an S3-compatible store)
- Deleting objects by key
- Generating presigned or public URLs for stored objects

Credentials, bucket and region come from the AWS_* environment variables via
the application settings. Unlike a best-effort uploader, a missing bucket or
credential is a hard ``ConfigError`` and transport failures raise
``StorageFault`` so callers can answer with a 5xx instead of a 4xx.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError, NoCredentialsError

from .configuration import AWSSettings
from .errors import ConfigError, StorageFault
from .models import EntityType, ImagePurpose
from .utils import sanitize_filename

logger = logging.getLogger(__name__)

# Client error codes mapped to operator-facing explanations
_CLIENT_ERROR_MESSAGES = {
    "AccessDenied": "Access denied to S3 bucket. Check IAM permissions and bucket policy.",
    "NoSuchBucket": "Bucket not found in the configured region.",
    "InvalidAccessKeyId": "Invalid AWS access key. Check your AWS credentials.",
    "SignatureDoesNotMatch": "Invalid AWS secret key. Check your AWS credentials.",
    "RequestTimeout": "Timeout while talking to S3.",
}


def build_storage_key(
    purpose: ImagePurpose,
    entity_type: EntityType,
    entity_id: str,
    extension: str,
    asset_id: str,
) -> str:
    """
    Derive the object key for an asset.

    The key is a pure function of its inputs. Including the asset id keeps
    keys unique across replacements, so a key is never reused after deletion.

    Args:
        purpose: Image purpose (first path segment)
        entity_type: Owning entity kind
        entity_id: Owning entity id
        extension: File extension, with or without a leading dot
        asset_id: Id of the asset row the object will back

    Returns:
        Key of the form ``{purpose}/{entity_type}/{entity_id}/{asset_id}.{ext}``

    Raises:
        ValueError: If any component is empty
    """
    extension = (extension or "").lstrip(".").lower()
    if not (purpose and entity_type and entity_id and extension and asset_id):
        raise ValueError("Missing required parameters for storage key generation")
    return f"{ImagePurpose(purpose).value}/{EntityType(entity_type).value}/{entity_id}/{asset_id}.{extension}"


class ObjectStore(ABC):
    """Blob storage contract consumed by the upload manager."""

    @abstractmethod
    def ensure_configured(self) -> None:
        pass

    @abstractmethod
    def put(self, data: bytes, key: str, content_type: str, metadata: Optional[Mapping[str, str]] = None) -> str:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


class S3Service(ObjectStore):
    def __init__(
        self,
        settings: AWSSettings,
        url_mode: str = "presigned",
        presign_expiration: int = 86400,
        client=None,
    ) -> None:
        self.settings = settings
        self.url_mode = url_mode
        self.presign_expiration = presign_expiration
        self._client = client

    @property
    def bucket(self) -> str:
        return self.settings.bucket or ""

    def ensure_configured(self) -> None:
        """
        Raise ConfigError if any required AWS setting is missing.

        Raises:
            ConfigError: Naming every missing environment variable
        """
        missing = self.settings.missing()
        if missing:
            logger.error(f"Missing required AWS configuration: {', '.join(missing)}")
            raise ConfigError(f"Missing required AWS configuration: {', '.join(missing)}")

    def _get_client(self):
        """
        Get or create the S3 client (lazy initialization).

        Note:
            No connectivity probe is made here; credential and bucket errors
            surface on the first real operation as StorageFault.
        """
        if self._client is None:
            self.ensure_configured()
            logger.info(f"Initializing S3 client for bucket {self.bucket} in {self.settings.region}")
            self._client = boto3.client(
                "s3",
                region_name=self.settings.region,
                endpoint_url=self.settings.endpoint_url,
                aws_access_key_id=self.settings.access_key_id,
                aws_secret_access_key=self.settings.secret_access_key,
                config=Config(signature_version="s3v4"),
            )
        return self._client

    def put(self, data: bytes, key: str, content_type: str, metadata: Optional[Mapping[str, str]] = None) -> str:
        """
        Upload bytes under ``key``, overwriting any existing object.

        Args:
            data: Object body
            key: Object key (see build_storage_key)
            content_type: MIME type stored with the object
            metadata: User metadata; values are reduced to safe ASCII

        Returns:
            Locator clients use to fetch the object

        Raises:
            ConfigError: If AWS settings are missing
            StorageFault: If S3 rejects the request or cannot be reached
        """
        if not data:
            raise StorageFault("Cannot upload empty file")
        if not key:
            raise StorageFault("S3 key is required")

        client = self._get_client()
        safe_metadata: Dict[str, str] = {
            name: sanitize_filename(str(value), fallback="unknown") for name, value in (metadata or {}).items()
        }

        try:
            logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket}/{key}")
            client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type or "application/octet-stream",
                Metadata=safe_metadata,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 upload failed for {key}: {exc}")
            raise StorageFault(self._describe(exc, "Upload failed")) from exc

        logger.info(f"Upload successful: s3://{self.bucket}/{key}")
        return self.locator_for(key)

    def delete(self, key: str) -> None:
        """
        Delete the object stored under ``key``.

        Raises:
            StorageFault: If S3 rejects the request or cannot be reached
        """
        if not key:
            raise StorageFault("S3 key is required")

        client = self._get_client()
        try:
            logger.info(f"Deleting s3://{self.bucket}/{key}")
            client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            logger.error(f"S3 delete failed for {key}: {exc}")
            raise StorageFault(self._describe(exc, "Failed to delete file")) from exc

    def locator_for(self, key: str) -> str:
        if self.url_mode == "public":
            return self.public_url(key)
        return self.generate_presigned_url(key, self.presign_expiration)

    def public_url(self, key: str) -> str:
        if self.settings.endpoint_url:
            return f"{self.settings.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.settings.region}.amazonaws.com/{key}"

    def generate_presigned_url(self, key: str, expiration: int = 3600) -> str:
        """
        Generate a presigned GET URL for ``key``.

        Falls back to the public bucket URL if signing fails, so a stored
        object always has a locator.
        """
        client = self._get_client()
        try:
            return client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expiration,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.warning(f"Failed to generate presigned URL for {key}, using public URL: {exc}")
            return self.public_url(key)

    def _describe(self, exc: Exception, prefix: str) -> str:
        if isinstance(exc, NoCredentialsError):
            return "AWS credentials are not available."
        if isinstance(exc, EndpointConnectionError):
            return "Network error while connecting to S3."
        if isinstance(exc, ClientError):
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _CLIENT_ERROR_MESSAGES:
                return _CLIENT_ERROR_MESSAGES[code]
            return f"{prefix}: {code or 'unknown S3 error'}"
        return f"{prefix}: {type(exc).__name__}"
