"""
MinIO (S3-compatible) client for media hydration.

The discovery service never reads or writes media bytes. It only signs
temporary GET URLs for the posts on the final page, so the client can stream
media directly from MinIO without going through the API service.
"""
import logging
from typing import Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


def build_s3_client(endpoint: str, access_key: str, secret_key: str):
    return boto3.client(
        "s3",
        endpoint_url=f"http://{endpoint}",
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        config=Config(signature_version="s3v4"),
        region_name="us-east-1",
    )


class MediaUrlSigner:
    def __init__(self, s3, bucket: str, expires_in: int = 3600) -> None:
        self._s3 = s3
        self._bucket = bucket
        self._expires_in = expires_in

    def __call__(self, media_key: str) -> Optional[str]:
        """Generate a temporary pre-signed URL; None when signing fails."""
        if not media_key:
            return None
        try:
            return self._s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": media_key},
                ExpiresIn=self._expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Failed to generate presigned URL for %s: %s", media_key, exc)
            return None
