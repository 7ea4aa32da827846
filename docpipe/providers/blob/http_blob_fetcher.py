"""Blob fetcher backed by a shared ``httpx.AsyncClient``.

Documents carry the URL their bytes were uploaded to; the fetcher performs a
plain GET with no authentication.  The body is streamed so an oversized file
is rejected as soon as it crosses the configured limit instead of after it
has been buffered in full.

``file://`` URLs are read from the local filesystem, which is what the CLI's
``register`` command produces for local files.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx
import structlog

from docpipe.interfaces.blob_fetcher import IBlobFetcher
from docpipe.utils.errors import ExtractionFailedError

_MAX_RETRIES = 3
_RETRY_BACKOFF = 1.0  # seconds, multiplied by the attempt number
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class HttpBlobFetcher(IBlobFetcher):
    """Fetch uploaded files over HTTP(S) or from ``file://`` paths."""

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http = http_client
        self._logger: structlog.BoundLogger = structlog.get_logger(logger_name=__name__)

    async def fetch(self, url: str, max_bytes: int | None = None) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme == "file":
            return await self._read_local(Path(unquote(parsed.path)), max_bytes)
        if parsed.scheme not in ("http", "https"):
            raise ExtractionFailedError(
                f"Unsupported storage URL scheme: {parsed.scheme or '(none)'}",
                provider_name=self.get_provider_name(),
            )

        last_error = ""
        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                return await self._get(url, max_bytes)
            except _RetryableFetch as exc:
                last_error = str(exc)
                self._logger.warning(
                    "blob_fetch_retry",
                    url=url,
                    attempt=attempt,
                    error=last_error,
                )
                if attempt < _MAX_RETRIES:
                    await asyncio.sleep(_RETRY_BACKOFF * attempt)

        raise ExtractionFailedError(
            f"Failed to fetch file after {_MAX_RETRIES} attempts: {last_error}",
            provider_name=self.get_provider_name(),
        )

    def get_provider_name(self) -> str:
        return "http_blob"

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get(self, url: str, max_bytes: int | None) -> bytes:
        try:
            async with self._http.stream("GET", url, follow_redirects=True) as response:
                if response.status_code in _RETRYABLE_STATUS:
                    raise _RetryableFetch(f"HTTP {response.status_code}")
                if response.status_code >= 400:
                    raise ExtractionFailedError(
                        f"Failed to fetch file: HTTP {response.status_code}",
                        provider_name=self.get_provider_name(),
                    )

                declared = response.headers.get("content-length")
                if max_bytes is not None and declared and declared.isdigit():
                    self._check_size(int(declared), max_bytes)

                body = bytearray()
                async for piece in response.aiter_bytes():
                    body.extend(piece)
                    if max_bytes is not None:
                        self._check_size(len(body), max_bytes)
                return bytes(body)
        except httpx.TransportError as exc:
            raise _RetryableFetch(f"{type(exc).__name__}: {exc}") from exc

    async def _read_local(self, path: Path, max_bytes: int | None) -> bytes:
        try:
            size = path.stat().st_size
            if max_bytes is not None:
                self._check_size(size, max_bytes)
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise ExtractionFailedError(
                f"Cannot read local file {path}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

    def _check_size(self, size: int, max_bytes: int) -> None:
        if size > max_bytes:
            raise ExtractionFailedError(
                f"File too large: {size} bytes exceeds limit of {max_bytes} bytes",
                provider_name=self.get_provider_name(),
            )


class _RetryableFetch(Exception):
    """Internal signal for fetch failures worth another attempt."""
