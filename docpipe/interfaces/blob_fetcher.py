"""Abstract base class for fetching stored file bytes by URL."""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementations:
#   HttpBlobFetcher -- httpx GET (plus file:// for local use)
# Located in: docpipe/providers/blob/
class IBlobFetcher(ABC):
    """Contract for reading an uploaded file from blob storage."""

    @abstractmethod
    async def fetch(self, url: str, max_bytes: int | None = None) -> bytes:
        """Return the raw bytes stored at *url*.

        Parameters
        ----------
        url:
            The document's storage location.
        max_bytes:
            Abort once the body grows past this many bytes.

        Raises
        ------
        docpipe.utils.errors.ExtractionFailedError
            If the file is unreachable, answers with an error status, or
            exceeds *max_bytes*.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier for this fetcher."""
