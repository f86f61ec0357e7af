"""S3 client wrapper for presigned handles, downloads and uploads."""

import boto3
import structlog
from botocore.config import Config

from pdfdeck.config import Settings

logger = structlog.get_logger()


def build_s3_uri(bucket: str, key: str) -> str:
    return f"s3://{bucket}/{key}"


class ObjectStorage:
    """Wrapper around boto3 S3 client for pdfdeck operations."""

    def __init__(self, settings: Settings, client=None) -> None:
        """
        Initialize S3 client with configured settings.

        Args:
            settings: Resolved service settings
            client: Pre-built boto3 S3 client (tests, custom sessions)
        """
        if client is None:
            client_config = Config(
                region_name=settings.aws_region,
                retries={"max_attempts": 3, "mode": "standard"},
                signature_version="s3v4",
            )

            # Build client kwargs
            client_kwargs: dict = {"config": client_config}

            if settings.s3_endpoint_url:
                client_kwargs["endpoint_url"] = settings.s3_endpoint_url

            # Only use explicit credentials if S3_ACCESS_KEY_ID is set (local dev)
            # On Lambda, these are None and boto3 uses the execution role automatically
            if settings.s3_access_key_id and settings.s3_secret_access_key:
                client_kwargs["aws_access_key_id"] = settings.s3_access_key_id
                client_kwargs["aws_secret_access_key"] = settings.s3_secret_access_key

            client = boto3.client("s3", **client_kwargs)

        self._client = client

    def presign_put(
        self, bucket: str, key: str, content_type: str, expires_in: int
    ) -> str:
        """
        Create a write-scoped URL for a single object.

        The uploader must send the same Content-Type header that was signed.
        """
        url = self._client.generate_presigned_url(
            "put_object",
            Params={"Bucket": bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in,
            HttpMethod="PUT",
        )
        logger.info("Presigned upload URL issued", bucket=bucket,
                    key=key, expires_in=expires_in)
        return url

    def presign_get(self, bucket: str, key: str, expires_in: int) -> str:
        """Create a read-scoped URL for a single object."""
        url = self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_in,
        )
        logger.debug("Presigned download URL issued", bucket=bucket, key=key)
        return url

    def get_bytes(self, bucket: str, key: str) -> bytes:
        """
        Download an object into memory.

        Args:
            bucket: S3 bucket name
            key: S3 object key

        Returns:
            Object body
        """
        logger.info("Downloading object from S3", bucket=bucket, key=key)

        response = self._client.get_object(Bucket=bucket, Key=key)
        body = response["Body"].read()

        logger.info(
            "Download complete",
            bucket=bucket,
            key=key,
            size_bytes=len(body),
        )
        return body

    def put_json(self, data: str, bucket: str, key: str) -> None:
        """
        Upload JSON string directly to S3.

        Args:
            data: JSON string to upload
            bucket: S3 bucket name
            key: S3 object key
        """
        logger.info("Uploading JSON to S3", bucket=bucket, key=key)

        self._client.put_object(
            Bucket=bucket,
            Key=key,
            Body=data.encode("utf-8"),
            ContentType="application/json",
        )

        logger.info("JSON upload complete", bucket=bucket, key=key)
