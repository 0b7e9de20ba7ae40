"""
Object Storage Service for S3-compatible storage (MinIO, AWS S3, DigitalOcean Spaces).

Holds the files behind estimate and line item documents. Document rows only
keep the object key (storage_path); public URLs are derived from it.

Architecture:
- Uses boto3 (AWS SDK for Python)
- Compatible with MinIO (local), AWS S3, DigitalOcean Spaces
- Bucket is checked/created lazily on the first upload
"""
import json
import logging
import mimetypes
from typing import Optional

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import ClientError
from flask import current_app
from werkzeug.datastructures import FileStorage

logger = logging.getLogger(__name__)


class StorageService:
    """
    S3-compatible object storage service.

    Usage:
        storage = StorageService()
        storage.upload_file(file, 'estimates/temp-123/1700000000-plan.pdf')
        url = storage.get_public_url('estimates/temp-123/1700000000-plan.pdf')
    """

    def __init__(self):
        """Initialize S3 client from Flask config."""
        self.endpoint = current_app.config['S3_ENDPOINT']
        self.access_key = current_app.config['S3_ACCESS_KEY']
        self.secret_key = current_app.config['S3_SECRET_KEY']
        self.bucket = current_app.config['S3_BUCKET']
        self.region = current_app.config['S3_REGION']
        self.public_url = current_app.config['S3_PUBLIC_URL']
        self._bucket_checked = False

        self.client = boto3.client(
            's3',
            endpoint_url=self.endpoint,
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self.secret_key,
            region_name=self.region,
            config=BotoConfig(signature_version='s3v4')
        )

    def _ensure_bucket_exists(self):
        """Create bucket if it doesn't exist."""
        if self._bucket_checked:
            return
        try:
            self.client.head_bucket(Bucket=self.bucket)
            logger.info(f"[STORAGE] Bucket '{self.bucket}' exists")
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code')
            if error_code != '404':
                logger.error(f"[STORAGE] ✗ Failed to check bucket: {e}")
                raise
            try:
                self.client.create_bucket(Bucket=self.bucket)
                policy = {
                    "Version": "2012-10-17",
                    "Statement": [
                        {
                            "Effect": "Allow",
                            "Principal": {"AWS": "*"},
                            "Action": "s3:GetObject",
                            "Resource": f"arn:aws:s3:::{self.bucket}/*"
                        }
                    ]
                }
                self.client.put_bucket_policy(Bucket=self.bucket, Policy=json.dumps(policy))
                logger.info(f"[STORAGE] ✓ Bucket '{self.bucket}' created with public-read policy")
            except ClientError as create_error:
                logger.error(f"[STORAGE] ✗ Failed to create bucket: {create_error}")
                raise
        self._bucket_checked = True

    def upload_file(
        self,
        file: FileStorage,
        object_name: str,
        content_type: Optional[str] = None,
        metadata: Optional[dict] = None
    ) -> int:
        """
        Upload file to S3-compatible storage.

        Args:
            file: Werkzeug FileStorage object from request.files
            object_name: S3 object key (e.g., 'estimates/EST-000123/1700000000-plan.pdf')
            content_type: MIME type (auto-detected if None)
            metadata: Optional metadata dict

        Returns:
            Size of the uploaded file in bytes

        Raises:
            ValueError: If file validation fails
            ClientError: If upload fails
        """
        file_size = self._validate_file(file)
        self._ensure_bucket_exists()

        if not content_type:
            content_type = file.content_type or mimetypes.guess_type(file.filename)[0] or 'application/octet-stream'

        extra_args = {
            'ContentType': content_type,
            'ACL': 'public-read'
        }
        if metadata:
            extra_args['Metadata'] = metadata

        try:
            file.seek(0)
            logger.info(f"[STORAGE] Uploading '{object_name}' to bucket '{self.bucket}'...")
            self.client.upload_fileobj(
                file.stream,
                self.bucket,
                object_name,
                ExtraArgs=extra_args
            )
            logger.info(f"[STORAGE] ✓ File uploaded: {object_name}")
            return file_size
        except ClientError as e:
            logger.exception(f"[STORAGE] ✗ Upload failed: {e}")
            raise

    def delete_file(self, object_name: str) -> bool:
        """
        Delete file from S3-compatible storage.

        Returns:
            True if deleted successfully, False otherwise
        """
        try:
            logger.info(f"[STORAGE] Deleting '{object_name}' from bucket '{self.bucket}'...")
            self.client.delete_object(Bucket=self.bucket, Key=object_name)
            logger.info(f"[STORAGE] ✓ File deleted: {object_name}")
            return True
        except ClientError as e:
            logger.exception(f"[STORAGE] ✗ Delete failed: {e}")
            return False

    def get_public_url(self, object_name: str) -> str:
        """Public URL for an object key."""
        return f"{self.public_url}/{self.bucket}/{object_name}"

    def _validate_file(self, file: FileStorage) -> int:
        """
        Validate uploaded file (size, type).

        Returns:
            File size in bytes

        Raises:
            ValueError: If validation fails
        """
        if not file or not file.filename:
            raise ValueError("No file was provided")

        max_size = current_app.config.get('MAX_UPLOAD_SIZE', 50 * 1024 * 1024)
        file.seek(0, 2)  # Seek to end
        file_size = file.tell()
        file.seek(0)  # Reset

        if file_size > max_size:
            max_mb = max_size / (1024 * 1024)
            raise ValueError(f"File is too large. Maximum {max_mb:.1f}MB")

        allowed_types = current_app.config.get('ALLOWED_MIME_TYPES', set())
        content_type = file.content_type
        if allowed_types and content_type not in allowed_types:
            raise ValueError(f"File type not allowed: {content_type}. Allowed: {', '.join(sorted(allowed_types))}")

        logger.info(f"[STORAGE] ✓ File validation passed: {file.filename} ({file_size} bytes, {content_type})")
        return file_size


# Singleton instance
_storage_service = None


def get_storage_service() -> StorageService:
    """Get or create StorageService singleton."""
    global _storage_service
    if _storage_service is None:
        _storage_service = StorageService()
    return _storage_service
