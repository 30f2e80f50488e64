"""Key/value blob storage for published calendar feeds."""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from unical.errors import PublishError
from unical.models import PublishConfig

logger = logging.getLogger(__name__)


class ObjectStore(ABC):
    """Abstract interface for published-feed storage backends."""

    @abstractmethod
    def upload(
        self,
        key: str,
        data: bytes,
        content_type: str,
        upsert: bool = True,
        cache_control: str = "",
    ) -> None:
        """
        Store ``data`` under ``key``.

        Raises:
            PublishError: if the backend rejects the write, or the key exists
                and ``upsert`` is false.
        """

    @abstractmethod
    def download(self, key: str) -> bytes:
        """Return the bytes stored under ``key``."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete ``key``. Missing keys are not an error."""

    @abstractmethod
    def get_public_url(self, key: str) -> str:
        """Public URL that serves ``key``."""


def _check_key(key: str) -> str:
    text = str(key or "").strip()
    if not text or "/" in text or "\\" in text or text in {".", ".."}:
        raise PublishError(f"invalid object key: {key!r}")
    return text


class LocalObjectStore(ObjectStore):
    """Files in one directory, served by the admin app or a static host."""

    def __init__(self, root: str | os.PathLike[str], public_base_url: str = "") -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        return self.root / _check_key(key)

    def upload(
        self,
        key: str,
        data: bytes,
        content_type: str,
        upsert: bool = True,
        cache_control: str = "",
    ) -> None:
        path = self._path(key)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            if path.exists() and not upsert:
                raise PublishError(f"object already exists: {key}")
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
        except OSError as exc:
            raise PublishError(f"upload of {key} failed: {exc}") from exc
        logger.debug("Stored %d bytes at %s (%s)", len(data), path, content_type)

    def download(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise PublishError(f"download of {key} failed: {exc}") from exc

    def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise PublishError(f"remove of {key} failed: {exc}") from exc

    def get_public_url(self, key: str) -> str:
        name = quote(_check_key(key))
        if self.public_base_url:
            return f"{self.public_base_url}/{name}"
        return (self.root / name).resolve().as_uri()


class S3ObjectStore(ObjectStore):
    """Bucket-backed feed storage."""

    def __init__(
        self,
        bucket: str,
        *,
        region: str = "",
        endpoint_url: str = "",
        access_key_id: str = "",
        secret_access_key: str = "",
        public_base_url: str = "",
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.region = region
        self.public_base_url = public_base_url.rstrip("/")
        if client is None:
            options: dict[str, Any] = {}
            if region:
                options["region_name"] = region
            if endpoint_url:
                options["endpoint_url"] = endpoint_url
            if access_key_id and secret_access_key:
                options["aws_access_key_id"] = access_key_id
                options["aws_secret_access_key"] = secret_access_key
            client = boto3.client("s3", **options)
        self.client = client
        logger.info("Initialized S3ObjectStore for bucket: %s", bucket)

    def _exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise

    def upload(
        self,
        key: str,
        data: bytes,
        content_type: str,
        upsert: bool = True,
        cache_control: str = "",
    ) -> None:
        key = _check_key(key)
        extra: dict[str, Any] = {"ContentType": content_type}
        if cache_control:
            extra["CacheControl"] = cache_control
        try:
            if not upsert and self._exists(key):
                raise PublishError(f"object already exists: {key}")
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except (ClientError, BotoCoreError) as exc:
            logger.error("Error uploading %s to bucket %s: %s", key, self.bucket, exc)
            raise PublishError(f"upload of {key} failed: {exc}") from exc

    def download(self, key: str) -> bytes:
        key = _check_key(key)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise PublishError(f"download of {key} failed: {exc}") from exc

    def remove(self, key: str) -> None:
        key = _check_key(key)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise PublishError(f"remove of {key} failed: {exc}") from exc

    def get_public_url(self, key: str) -> str:
        name = quote(_check_key(key))
        if self.public_base_url:
            return f"{self.public_base_url}/{name}"
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{name}"
        return f"https://{self.bucket}.s3.amazonaws.com/{name}"


def build_object_store(config: PublishConfig) -> ObjectStore:
    if config.backend == "s3":
        return S3ObjectStore(
            config.bucket,
            region=config.region,
            endpoint_url=config.endpoint_url,
            access_key_id=config.access_key_id,
            secret_access_key=config.secret_access_key,
            public_base_url=config.public_base_url,
        )
    return LocalObjectStore(config.local_root, public_base_url=config.public_base_url)
