"""Blob fetchers that turn a document's storage URL into bytes."""

from docpipe.providers.blob.http_blob_fetcher import HttpBlobFetcher

__all__ = ["HttpBlobFetcher"]
