"""
Tests for blob store clients.

Tests cover:
- Publisher reply parsing (new and already-certified blobs)
- Funds exhaustion detected from reply bodies
- Aggregator reads and failures
- The local stand-in store and store selection
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from capshare.config import TransferConfig
from capshare.errors import FetchError, InsufficientFunds, UploadError
from capshare.framing import unframe
from capshare.storage import (
    BlobStore,
    HttpBlobStore,
    LocalBlobStore,
    parse_upload_response,
    select_blob_store,
)


def mock_session_for(method, status=200, text="", body=b"", side_effect=None):
    """A ClientSession mock whose ``method`` yields one response."""
    mock_resp = AsyncMock()
    mock_resp.status = status
    mock_resp.text = AsyncMock(return_value=text)
    mock_resp.read = AsyncMock(return_value=body)

    mock_session = AsyncMock()
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=False)
    if side_effect is not None:
        call = MagicMock(side_effect=side_effect)
    else:
        call = MagicMock(return_value=AsyncMock(
            __aenter__=AsyncMock(return_value=mock_resp),
            __aexit__=AsyncMock(return_value=False),
        ))
    setattr(mock_session, method, call)
    return mock_session


@pytest.fixture
def store():
    return HttpBlobStore("https://publisher.example/", "https://aggregator.example")


class TestParseUploadResponse:
    def test_newly_created(self):
        reply = {"newlyCreated": {"blobObject": {"blobId": "blob-new", "id": "0x1"}}}
        assert parse_upload_response(reply) == "blob-new"

    def test_already_certified(self):
        assert parse_upload_response({"alreadyCertified": {"blobId": "blob-old"}}) == "blob-old"

    def test_funds_error(self):
        reply = {"error": {"message": "could not find SUI coins with sufficient balance"}}
        with pytest.raises(InsufficientFunds):
            parse_upload_response(reply)

    def test_generic_error(self):
        with pytest.raises(UploadError, match="quota"):
            parse_upload_response({"error": {"message": "quota exceeded"}})

    @pytest.mark.parametrize("reply", [None, [], {}, {"newlyCreated": {}}])
    def test_no_reference(self, reply):
        with pytest.raises(UploadError):
            parse_upload_response(reply)


class TestHttpBlobStore:
    @pytest.mark.asyncio
    async def test_put(self, store):
        reply = json.dumps({"newlyCreated": {"blobObject": {"blobId": "blob-1"}}})
        session = mock_session_for("put", text=reply)
        with patch("aiohttp.ClientSession", return_value=session):
            assert await store.put(b"payload") == "blob-1"
        assert session.put.call_args.args[0] == "https://publisher.example/v1/blobs"
        assert session.put.call_args.kwargs["data"] == b"payload"

    @pytest.mark.asyncio
    async def test_put_epochs(self):
        store = HttpBlobStore("https://p.example", "https://a.example", epochs=5)
        reply = json.dumps({"alreadyCertified": {"blobId": "b"}})
        session = mock_session_for("put", text=reply)
        with patch("aiohttp.ClientSession", return_value=session):
            await store.put(b"x")
        assert session.put.call_args.kwargs["params"] == {"epochs": "5"}

    @pytest.mark.asyncio
    async def test_put_funds_in_plain_error_body(self, store):
        session = mock_session_for("put", status=500, text="insufficient balance to store blob")
        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(InsufficientFunds):
                await store.put(b"x")

    @pytest.mark.asyncio
    async def test_put_http_error(self, store):
        session = mock_session_for("put", status=502, text="bad gateway")
        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(UploadError, match="502"):
                await store.put(b"x")

    @pytest.mark.asyncio
    async def test_put_connection_error(self, store):
        session = mock_session_for("put", side_effect=aiohttp.ClientError("reset"))
        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(UploadError):
                await store.put(b"x")

    @pytest.mark.asyncio
    async def test_get(self, store):
        session = mock_session_for("get", body=b"stored")
        with patch("aiohttp.ClientSession", return_value=session):
            assert await store.get("blob-1") == b"stored"
        assert session.get.call_args.args[0] == "https://aggregator.example/v1/blobs/blob-1"

    @pytest.mark.asyncio
    async def test_get_not_found(self, store):
        with patch("aiohttp.ClientSession", return_value=mock_session_for("get", status=404)):
            with pytest.raises(FetchError, match="not found"):
                await store.get("blob-1")

    @pytest.mark.asyncio
    async def test_get_timeout(self, store):
        session = mock_session_for("get", side_effect=asyncio.TimeoutError())
        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(FetchError):
                await store.get("blob-1")

    def test_requires_both_urls(self):
        with pytest.raises(ValueError):
            HttpBlobStore("", "https://a.example")


class TestLocalBlobStore:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        store = LocalBlobStore()
        reference = await store.put(b"bytes")
        assert reference.startswith("local-blob-")
        assert await store.get(reference) == b"bytes"
        assert (store.put_count, store.get_count) == (1, 1)

    @pytest.mark.asyncio
    async def test_unknown_reference_synthesizes_placeholder(self):
        header, body = unframe(await LocalBlobStore().get("local-blob-1-abc"))
        assert header.name == "local-blob-1-abc.txt"
        assert b"placeholder" in body

    def test_satisfies_protocol(self):
        assert isinstance(LocalBlobStore(), BlobStore)


class TestSelection:
    def test_remote_by_default(self, store):
        assert select_blob_store(TransferConfig(), store) is store

    def test_local_when_skipped(self, store):
        local = LocalBlobStore()
        assert select_blob_store(TransferConfig(skip_remote_storage=True), store, local) is local

    def test_remote_required(self):
        with pytest.raises(ValueError):
            select_blob_store(TransferConfig())
