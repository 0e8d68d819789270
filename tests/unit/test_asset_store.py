"""Unit tests for local and R2 asset stores."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from static_engine.models.generation import AspectRatio
from static_engine.services.asset_store import (
    AssetStoreError,
    LocalAssetStore,
    R2AssetStore,
    asset_key,
)

pytestmark = pytest.mark.unit


def test_asset_key_layout():
    assert asset_key("u1", "v1", AspectRatio.VERTICAL) == "u1/v1/9x16.png"
    assert asset_key("u1", "v1", AspectRatio.SQUARE, "image/jpeg") == "u1/v1/1x1.jpg"


class TestLocalAssetStore:
    @pytest.mark.asyncio
    async def test_writes_file_and_returns_public_url(self, tmp_path):
        store = LocalAssetStore(str(tmp_path / "uploads"), "http://localhost:3007/")

        url = await store.upload("u1", "v1", AspectRatio.SQUARE, b"png-bytes")

        assert url == "http://localhost:3007/uploads/u1/v1/1x1.png"
        assert (tmp_path / "uploads" / "u1" / "v1" / "1x1.png").read_bytes() == b"png-bytes"

    @pytest.mark.asyncio
    async def test_overwrites_existing_object(self, tmp_path):
        store = LocalAssetStore(str(tmp_path), "http://localhost")

        await store.upload("u1", "v1", AspectRatio.SQUARE, b"first")
        await store.upload("u1", "v1", AspectRatio.SQUARE, b"second")

        assert (tmp_path / "u1" / "v1" / "1x1.png").read_bytes() == b"second"

    @pytest.mark.asyncio
    async def test_rejects_empty_data(self, tmp_path):
        store = LocalAssetStore(str(tmp_path), "http://localhost")

        with pytest.raises(AssetStoreError):
            await store.upload("u1", "v1", AspectRatio.SQUARE, b"")


class TestR2AssetStore:
    @pytest.mark.asyncio
    async def test_uploads_with_content_type(self):
        client = MagicMock()
        store = R2AssetStore(
            "acct", "key", "secret", bucket_name="ads", public_url="https://cdn.example.com/", client=client
        )

        url = await store.upload("u1", "v1", AspectRatio.HORIZONTAL, b"png-bytes")

        args, kwargs = client.upload_fileobj.call_args
        assert url == "https://cdn.example.com/u1/v1/16x9.png"
        assert args[0].getvalue() == b"png-bytes"
        assert args[1:] == ("ads", "u1/v1/16x9.png")
        assert kwargs["ExtraArgs"] == {"ContentType": "image/png"}

    @pytest.mark.asyncio
    async def test_default_public_url(self):
        store = R2AssetStore("acct", "key", "secret", bucket_name="ads", client=MagicMock())

        url = await store.upload("u1", "v1", AspectRatio.SQUARE, b"x")

        assert url == "https://ads.acct.r2.dev/u1/v1/1x1.png"

    @pytest.mark.asyncio
    async def test_client_error_becomes_asset_store_error(self):
        client = MagicMock()
        client.upload_fileobj.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )
        store = R2AssetStore("acct", "key", "secret", client=client)

        with pytest.raises(AssetStoreError, match="u1/v1/1x1.png"):
            await store.upload("u1", "v1", AspectRatio.SQUARE, b"x")
