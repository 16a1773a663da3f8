"""Tests for the R2 object store. boto3 is mocked since R2 is an external service."""

from unittest.mock import MagicMock, patch

import pytest

from flyer_pipeline.config import settings
from flyer_pipeline.utils import r2
from flyer_pipeline.utils.r2 import R2ObjectStore


@pytest.fixture()
def mock_s3():
    """A mocked boto3 S3 client."""
    return MagicMock()


class TestUpload:
    """Uploads go to the configured bucket and return public URLs."""

    def test_upload_object_calls_put_object(self, mock_s3):
        """put_object gets bucket, key, body, content type and a long cache header."""
        store = R2ObjectStore(client=mock_s3, bucket="flyers-test")

        key = store.upload_object("flyers/f1/items/i1/original.webp", b"webp-bytes")

        assert key == "flyers/f1/items/i1/original.webp"
        mock_s3.put_object.assert_called_once_with(
            Bucket="flyers-test",
            Key="flyers/f1/items/i1/original.webp",
            Body=b"webp-bytes",
            ContentType="image/webp",
            CacheControl="public, max-age=31536000, immutable",
        )

    async def test_upload_returns_public_url(self, mock_s3):
        store = R2ObjectStore(client=mock_s3, bucket="flyers-test", public_base_url="https://cdn.example.com/")

        url = await store.upload(b"data", "flyers/f1/items/i1/1x.webp")

        assert url == "https://cdn.example.com/flyers/f1/items/i1/1x.webp"
        assert mock_s3.put_object.call_args.kwargs["Key"] == "flyers/f1/items/i1/1x.webp"

    def test_public_url_without_cdn(self, mock_s3):
        """Without a public base URL the bucket endpoint is used."""
        with patch.object(r2, "settings") as mock_settings:
            mock_settings.r2_bucket_name = "flyers-test"
            mock_settings.r2_public_base_url = ""
            mock_settings.r2_account_id = "acct"
            store = R2ObjectStore(client=mock_s3)

            assert store.public_url("a/b.webp") == "https://acct.r2.cloudflarestorage.com/flyers-test/a/b.webp"

    def test_default_bucket_from_settings(self, mock_s3):
        R2ObjectStore(client=mock_s3).head_bucket()
        mock_s3.head_bucket.assert_called_once_with(Bucket=settings.r2_bucket_name)


class TestClientConstruction:
    def test_client_built_lazily(self):
        """The boto3 client is only created on first use."""
        with patch.object(r2, "build_client") as mock_build:
            store = R2ObjectStore()
            mock_build.assert_not_called()
            store.head_bucket()
            mock_build.assert_called_once()
