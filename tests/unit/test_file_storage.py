"""Unit tests for presigned download URLs."""

from urllib.parse import parse_qs, urlparse

import pytest

from marketplace.core.errors import StorageNotConfiguredError
from marketplace.services.file_storage import FileStorage


class TestFileStorage:
    def test_presigned_url_shape(self, storage: FileStorage) -> None:
        url = urlparse(storage.signed_url("products/abc/pack.zip", "pack v2.zip"))
        query = parse_qs(url.query)

        assert url.scheme == "https"
        assert url.netloc == "files.test"
        assert url.path == "/product-files/products/abc/pack.zip"
        assert query["X-Amz-Expires"] == ["300"]
        assert query["X-Amz-Algorithm"] == ["AWS4-HMAC-SHA256"]
        assert "X-Amz-Signature" in query
        assert query["response-content-disposition"] == ['attachment; filename="pack v2.zip"']

    def test_leading_slash_is_not_part_of_key(self, storage: FileStorage) -> None:
        url = urlparse(storage.signed_url("/key.zip", "key.zip"))
        assert url.path == "/product-files/key.zip"

    def test_ttl_comes_from_settings(self) -> None:
        storage = FileStorage(
            bucket="product-files",
            url_ttl_seconds=60,
            endpoint_url="https://files.test",
            access_key_id="test-access-key",
            secret_access_key="test-secret-key",
        )
        query = parse_qs(urlparse(storage.signed_url("key.zip", "key.zip")).query)
        assert query["X-Amz-Expires"] == ["60"]

    def test_unconfigured_storage_refuses(self) -> None:
        """Test that no location is issued when no bucket is configured."""
        storage = FileStorage(bucket="")

        assert storage.is_configured is False
        with pytest.raises(StorageNotConfiguredError):
            storage.signed_url("products/secret.zip", "secret.zip")
