"""Short-lived presigned locations for purchased files."""

import logging
from functools import lru_cache

import boto3
from botocore.config import Config

from marketplace.core.config import get_settings
from marketplace.core.errors import StorageNotConfiguredError

logger = logging.getLogger(__name__)


class FileStorage:
    """Presigned S3 ``get_object`` URLs for product file keys."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        url_ttl_seconds: int = 300,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        self.bucket = bucket
        self.url_ttl_seconds = url_ttl_seconds
        self.s3 = None
        if not bucket:
            logger.warning("STORAGE_BUCKET not configured. Downloads will be refused.")
            return
        self.s3 = boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    @property
    def is_configured(self) -> bool:
        return self.s3 is not None

    def signed_url(self, file_key: str, file_name: str) -> str:
        """Return a URL for ``file_key`` valid for ``url_ttl_seconds``.

        Raises:
            StorageNotConfiguredError: No bucket is configured.
        """
        if self.s3 is None:
            raise StorageNotConfiguredError()
        return self.s3.generate_presigned_url(
            "get_object",
            Params={
                "Bucket": self.bucket,
                "Key": file_key.lstrip("/"),
                "ResponseContentDisposition": f'attachment; filename="{file_name}"',
            },
            ExpiresIn=self.url_ttl_seconds,
        )


@lru_cache
def get_file_storage() -> FileStorage:
    settings = get_settings()
    return FileStorage(
        bucket=settings.storage_bucket,
        region=settings.storage_region,
        url_ttl_seconds=settings.storage_url_ttl_seconds,
        endpoint_url=settings.storage_endpoint_url,
        access_key_id=settings.storage_access_key_id,
        secret_access_key=settings.storage_secret_access_key,
    )
