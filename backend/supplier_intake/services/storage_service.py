import boto3
from botocore.exceptions import ClientError
from typing import Optional
import os
import re
from datetime import datetime, timezone
from supplier_intake.config import settings
import logging

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    'application/pdf': '.pdf',
    'image/png': '.png',
    'image/jpeg': '.jpg',
    'image/webp': '.webp',
    'audio/ogg': '.ogg',
    'audio/mpeg': '.mp3',
    'audio/mp4': '.m4a',
    'audio/aac': '.aac',
    'audio/amr': '.amr',
}


class StorageService:
    """Supplier media storage (S3-compatible), local filesystem when no credentials are set"""

    def __init__(self, local_storage_dir: Optional[str] = None):
        self.bucket_name = settings.storage_bucket_name

        # Require both access key and secret key to use S3
        if settings.storage_access_key_id and settings.storage_secret_access_key:
            s3_config = {
                'aws_access_key_id': settings.storage_access_key_id,
                'aws_secret_access_key': settings.storage_secret_access_key,
            }
            if settings.storage_endpoint_url:
                s3_config['endpoint_url'] = settings.storage_endpoint_url
            if settings.storage_region:
                s3_config['region_name'] = settings.storage_region

            try:
                self.s3_client = boto3.client('s3', **s3_config)
                logger.info("S3 storage initialized successfully")
            except Exception as e:
                logger.warning(f"Failed to initialize S3 client, falling back to local storage: {str(e)}")
                self.s3_client = None
        else:
            logger.info("No S3 credentials found, using local filesystem storage")
            self.s3_client = None

        self.local_storage_dir = os.path.abspath(local_storage_dir or settings.local_storage_dir)
        os.makedirs(self.local_storage_dir, exist_ok=True)

    @staticmethod
    def extension_for(mime_type: Optional[str], filename: Optional[str] = None) -> str:
        if filename and '.' in filename:
            return os.path.splitext(filename)[1].lower()
        base_type = (mime_type or '').split(';')[0].strip().lower()
        return MIME_EXTENSIONS.get(base_type, '.bin')

    def upload_file(self, file_content: bytes, name: str, mime_type: Optional[str] = None) -> str:
        """
        Store supplier media and return its storage key

        Args:
            file_content: Binary content
            name: Base name, e.g. the WhatsApp message id plus extension
            mime_type: Content type recorded on the object

        Returns:
            Storage key such as "submissions/20240101_120000_wamid123.jpg"
        """
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", name)
        storage_key = f"submissions/{timestamp}_{safe_name}"

        if self.s3_client:
            try:
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=storage_key,
                    Body=file_content,
                    ContentType=mime_type or 'application/octet-stream'
                )
            except ClientError as e:
                raise IOError(f"Failed to upload to S3: {str(e)}")
        else:
            local_path = os.path.join(self.local_storage_dir, os.path.basename(storage_key))
            with open(local_path, 'wb') as f:
                f.write(file_content)
            logger.info(f"File saved to local storage: {local_path}")
        return storage_key

    def download_file(self, storage_key: str) -> bytes:
        if self.s3_client:
            try:
                response = self.s3_client.get_object(Bucket=self.bucket_name, Key=storage_key)
                return response['Body'].read()
            except ClientError as e:
                raise IOError(f"Failed to download from S3: {str(e)}")

        local_path = os.path.join(self.local_storage_dir, os.path.basename(storage_key))
        if not os.path.exists(local_path):
            raise FileNotFoundError(f"File not found: {local_path}")
        with open(local_path, 'rb') as f:
            return f.read()
