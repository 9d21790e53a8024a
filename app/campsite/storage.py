from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from werkzeug.utils import secure_filename

from app.campsite.errors import DependencyError

logger = logging.getLogger(__name__)


class StorageError(DependencyError):
    pass


@dataclass(frozen=True)
class StoredAsset:
    url: str
    handle: str  # what `delete` needs to release the asset


class AssetStore:
    def upload(self, key: str, data: bytes, *, content_type: str | None = None) -> StoredAsset:
        raise NotImplementedError

    def delete(self, handle: str) -> None:
        raise NotImplementedError

    def open(self, handle: str) -> BinaryIO:
        raise NotImplementedError


def build_asset_key(filename: str | None, prefix: str = "listings") -> str:
    safe = secure_filename(filename or "") or "image.bin"
    return f"{prefix}/{uuid.uuid4().hex}/{safe}"


@dataclass(frozen=True)
class LocalStorage(AssetStore):
    root: Path
    base_url: str = "/assets"

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        p = (self.root / safe_key).resolve()
        if self.root.resolve() not in p.parents:
            raise StorageError(f"Refusing path outside storage root: {key}")
        return p

    def upload(self, key: str, data: bytes, *, content_type: str | None = None) -> StoredAsset:
        p = self._path(key)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Cannot write {key}: {e}") from e
        return StoredAsset(url=f"{self.base_url.rstrip('/')}/{key}", handle=key)

    def delete(self, handle: str) -> None:
        p = self._path(handle)
        try:
            p.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(f"Cannot delete {handle}: {e}") from e

    def open(self, handle: str) -> BinaryIO:
        p = self._path(handle)
        if not p.is_file():
            raise StorageError(f"No such asset: {handle}")
        return p.open("rb")


@dataclass(frozen=True)
class S3Storage(AssetStore):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    public_url: str = ""

    def _client(self):
        import boto3
        from botocore.config import Config

        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=Config(connect_timeout=5, read_timeout=30, retries={"max_attempts": 2}),
        )

    def _url(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{key}"
        host = self.endpoint or f"s3.{self.region}.amazonaws.com"
        return f"https://{self.bucket}.{host}/{key}"

    def upload(self, key: str, data: bytes, *, content_type: str | None = None) -> StoredAsset:
        from botocore.exceptions import BotoCoreError, ClientError

        extra: dict[str, object] = {"ACL": "public-read"}
        if content_type:
            extra["ContentType"] = content_type
        try:
            self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 upload failed for {key}: {e}") from e
        return StoredAsset(url=self._url(key), handle=key)

    def delete(self, handle: str) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._client().delete_object(Bucket=self.bucket, Key=handle)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 delete failed for {handle}: {e}") from e

    def open(self, handle: str) -> BinaryIO:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            obj = self._client().get_object(Bucket=self.bucket, Key=handle)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 read failed for {handle}: {e}") from e
        return obj["Body"]  # type: ignore[return-value]


def storage_from_config(config: dict) -> AssetStore:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
            public_url=(config.get("S3_PUBLIC_URL") or "").strip(),
        )
    # default local
    root = Path(os.getcwd()) / "storage"
    return LocalStorage(root=root)


def asset_store() -> AssetStore:
    """The app's configured store (tests swap in their own via app.extensions)."""
    from flask import current_app

    store = current_app.extensions.get("asset_store")
    if store is None:
        store = storage_from_config(current_app.config)
        current_app.extensions["asset_store"] = store
    return store


def release_assets(store: AssetStore, handles: list[str]) -> int:
    """
    Best-effort deletion of every handle. Failures are logged, never raised.
    Returns the number of delete calls issued.
    """
    issued = 0
    for handle in handles:
        issued += 1
        try:
            store.delete(handle)
        except Exception as e:
            logger.warning("Asset delete failed (handle=%s): %s", handle, e)
    return issued
