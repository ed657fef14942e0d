"""Blob store boundary.

Example usage:
    from capshare.storage import HttpBlobStore

    store = HttpBlobStore(publisher_url, aggregator_url)
    reference = await store.put(encrypted_bytes)
    data = await store.get(reference)
"""

from .blob import (
    BlobStore,
    HttpBlobStore,
    LocalBlobStore,
    parse_upload_response,
    select_blob_store,
)

__all__ = [
    "BlobStore",
    "HttpBlobStore",
    "LocalBlobStore",
    "parse_upload_response",
    "select_blob_store",
]
