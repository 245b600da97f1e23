# omintel/storage.py
"""
Blob store for uploaded PDFs.

Objects are addressed by a generated key "{owner_id}/{random_id}.{ext}";
the public URL is derived from the key. Two backends: a local directory
(written with aiofiles) and MinIO (the blocking minio client runs in a
worker thread).
"""
import io
import os
import logging
import asyncio
from uuid import uuid4

import aiofiles
from minio import Minio
from minio.error import S3Error

from omintel.errors import NotFoundError

logger = logging.getLogger(__name__)


def make_blob_key(owner_id: str, ext: str = "pdf") -> str:
    return f"{owner_id}/{uuid4()}.{ext.lstrip('.')}"


def _check_key(key: str) -> str:
    # keys come from make_blob_key; refuse anything that walks out of the root
    parts = key.split("/")
    if not key or key.startswith("/") or any(p in ("", ".", "..") for p in parts):
        raise ValueError(f"Invalid blob key: {key!r}")
    return key


class BlobStore:
    async def upload(self, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        raise NotImplementedError

    async def download(self, key: str) -> bytes:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    def public_url(self, key: str) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LocalBlobStore(BlobStore):
    def __init__(self, root: str, public_base_url: str):
        self.root = root
        self.public_base_url = public_base_url.rstrip("/")
        os.makedirs(root, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.root, *_check_key(key).split("/"))

    async def upload(self, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        if os.path.exists(path):
            raise FileExistsError(f"Blob already exists: {key}")
        async with aiofiles.open(path, "wb") as out_file:
            await out_file.write(data)
        logger.debug("Stored %d bytes at %s", len(data), path)

    async def download(self, key: str) -> bytes:
        path = self._path(key)
        try:
            async with aiofiles.open(path, "rb") as in_file:
                return await in_file.read()
        except FileNotFoundError:
            raise NotFoundError(f"Blob not found: {key}")

    async def delete(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            logger.debug("Blob %s already removed", key)

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{_check_key(key)}"


class MinioBlobStore(BlobStore):
    def __init__(self, client: Minio, bucket: str, public_base_url: str):
        self.client = client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self._bucket_checked = False

    async def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        exists = await asyncio.to_thread(self.client.bucket_exists, self.bucket)
        if not exists:
            await asyncio.to_thread(self.client.make_bucket, self.bucket)
            logger.info("Created bucket %s", self.bucket)
        self._bucket_checked = True

    async def upload(self, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        await self._ensure_bucket()
        await asyncio.to_thread(
            self.client.put_object,
            self.bucket,
            _check_key(key),
            io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )

    def _get(self, key: str) -> bytes:
        response = self.client.get_object(self.bucket, key)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    async def download(self, key: str) -> bytes:
        try:
            return await asyncio.to_thread(self._get, _check_key(key))
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchBucket"):
                raise NotFoundError(f"Blob not found: {key}")
            raise

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.client.remove_object, self.bucket, _check_key(key))

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{self.bucket}/{_check_key(key)}"


def create_blob_store(settings) -> BlobStore:
    if settings.storage_backend == "minio":
        client = Minio(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
        )
        return MinioBlobStore(client, settings.minio_bucket, settings.public_base_url)
    return LocalBlobStore(settings.upload_dir, settings.public_base_url)
