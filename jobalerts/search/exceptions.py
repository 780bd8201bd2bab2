"""Search index client exceptions."""

from typing import Optional


class SearchError(Exception):
    """Base exception for all search index errors.

    The orchestrator catches this type to skip a single alert without
    aborting the batch.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class TransientSearchError(SearchError):
    """The index was unreachable, slow or overloaded (timeout, connection error, 5xx, 429).

    Safe to retry on the next scheduled tick.
    """


class SearchQueryError(SearchError):
    """The index rejected the request (HTTP 400), typically a malformed filter.

    Retrying the same request will fail the same way.
    """


class SearchResponseError(SearchError):
    """The response could not be used: unexpected status, invalid JSON or missing fields."""
