"""
MinIO service for storing private blobs (signing certificates)
"""
from minio import Minio
from minio.error import S3Error
from fastapi import HTTPException, status
from functools import lru_cache
from typing import Set
import io
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


class MinIOService:
    """Thin wrapper over the MinIO client; buckets are private and created on first use"""

    def __init__(self, client: Minio = None):
        self.client = client or Minio(
            settings.minio_endpoint,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=settings.MINIO_USE_SSL
        )
        self._known_buckets: Set[str] = set()

    def _ensure_bucket_exists(self, bucket_name: str):
        """Ensure the bucket exists, create if it doesn't"""
        if bucket_name in self._known_buckets:
            return
        try:
            if not self.client.bucket_exists(bucket_name):
                self.client.make_bucket(bucket_name)
                logger.info(f"Created MinIO bucket: {bucket_name}")
            self._known_buckets.add(bucket_name)
        except S3Error as e:
            logger.error(f"MinIO bucket setup error: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="File storage service unavailable"
            )

    def upload_bytes(self, bucket_name: str, key: str, data: bytes, content_type: str) -> str:
        """Store data under key and return the key"""
        self._ensure_bucket_exists(bucket_name)
        try:
            self.client.put_object(
                bucket_name=bucket_name,
                object_name=key,
                data=io.BytesIO(data),
                length=len(data),
                content_type=content_type
            )
        except S3Error as e:
            logger.error(f"MinIO upload error for {bucket_name}/{key}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Could not store file"
            )
        return key

    def remove_object(self, bucket_name: str, key: str):
        """Delete an object; failures are logged and reported to the caller"""
        try:
            self.client.remove_object(bucket_name, key)
        except S3Error as e:
            logger.error(f"MinIO remove error for {bucket_name}/{key}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Could not remove file"
            )

    def download_bytes(self, bucket_name: str, key: str) -> bytes:
        """Read a whole object into memory"""
        response = None
        try:
            response = self.client.get_object(bucket_name, key)
            return response.read()
        except S3Error as e:
            logger.error(f"MinIO download error for {bucket_name}/{key}: {e}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="File not found"
            )
        finally:
            if response is not None:
                response.close()
                response.release_conn()


@lru_cache(maxsize=1)
def get_minio_service() -> MinIOService:
    return MinIOService()
