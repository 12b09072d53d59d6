# storage.py
"""Object storage gateway (S3 / MinIO).

Storage locators for objects have the wire form ``store:<bucket>:<objectKey>``.
Only the first two colons are separators; the object key may contain more.

The gateway is a thin wrapper over a boto3 S3 client with bounded timeouts.
Listing raises ``StorageUnavailable`` so the scanner can isolate the failing
source; presigning never raises and returns ``None`` instead.
"""
import logging
from typing import Any, Dict, Iterator, NamedTuple, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from config import StorageConfig

logger = logging.getLogger(__name__)

STORE_PREFIX = "store:"
PLAYBACK_URL_TTL = 10800  # 3 hours


class StorageUnavailable(RuntimeError):
    """The object store could not be reached or refused the request."""


class StoreLocator(NamedTuple):
    bucket: str
    key: str


class StoredObject(NamedTuple):
    key: str
    size: int
    last_modified: Any = None
    etag: Optional[str] = None


def is_store_locator(storage_path: str) -> bool:
    return bool(storage_path) and storage_path.startswith(STORE_PREFIX)


def format_store_locator(bucket: str, key: str) -> str:
    return f"{STORE_PREFIX}{bucket}:{key}"


def parse_store_locator(storage_path: str) -> Optional[StoreLocator]:
    """Split ``store:<bucket>:<key>``; returns None for anything malformed."""
    if not is_store_locator(storage_path):
        return None
    parts = storage_path.split(":", 2)
    if len(parts) < 3:
        return None
    _, bucket, key = parts
    if not bucket or not key:
        return None
    return StoreLocator(bucket, key)


class ObjectStoreGateway:
    """
    Lists buckets and issues time-limited GET URLs.

    Parameters
    ----------
    config : StorageConfig
        Endpoint, region, credentials and timeouts.
    client : optional
        A pre-built S3 client (tests inject a fake). When omitted a boto3
        client is built from ``config``.
    """

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self.client = client if client is not None else self._build_client(config)

    @staticmethod
    def _build_client(config: StorageConfig):
        cfg = BotoConfig(
            signature_version="s3v4",
            retries={"max_attempts": 3, "mode": "standard"},
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            s3={"addressing_style": "path" if config.endpoint_url else "auto"},
        )
        kwargs: Dict[str, Any] = {"config": cfg}
        if config.region:
            kwargs["region_name"] = config.region
        if config.endpoint_url:
            kwargs["endpoint_url"] = config.endpoint_url
        if config.access_key_id and config.secret_access_key:
            kwargs["aws_access_key_id"] = config.access_key_id
            kwargs["aws_secret_access_key"] = config.secret_access_key
        return boto3.client("s3", **kwargs)

    def __repr__(self) -> str:
        return f"ObjectStoreGateway(endpoint={'custom' if self.config.endpoint_url else 'aws'}, bucket={self.config.bucket})"

    def list_all(self, bucket: str) -> Iterator[StoredObject]:
        """Yield every object in ``bucket`` (no prefix, all pages)."""
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket):
                for item in page.get("Contents", []):
                    yield StoredObject(
                        key=item["Key"],
                        size=int(item.get("Size", 0)),
                        last_modified=item.get("LastModified"),
                        etag=item.get("ETag"),
                    )
        except (BotoCoreError, ClientError) as e:
            raise StorageUnavailable(f"Could not list bucket '{bucket}': {e}") from e

    def presign(self, bucket: str, key: str, ttl_seconds: int = PLAYBACK_URL_TTL) -> Optional[str]:
        """Signed GET URL valid for ``ttl_seconds``, or None on any failure."""
        if not bucket or not key:
            return None
        try:
            return self.client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=int(ttl_seconds),
                HttpMethod="GET",
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Presign failed for bucket='{bucket}' key='{key}': {e}")
            return None

    def presign_locator(self, storage_path: str, ttl_seconds: int = PLAYBACK_URL_TTL) -> Optional[str]:
        locator = parse_store_locator(storage_path)
        if locator is None:
            logger.warning(f"Malformed storage locator, no playback URL: '{storage_path}'")
            return None
        return self.presign(locator.bucket, locator.key, ttl_seconds)
