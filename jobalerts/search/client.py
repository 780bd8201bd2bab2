"""Search index client.

The orchestrator depends only on the SearchIndexClient interface; the
TypesenseClient implementation talks to a Typesense node over its REST API.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from jobalerts.domain.models import SearchHit, SearchResult
from jobalerts.logging import get_logger

from .exceptions import (
    SearchError,
    SearchQueryError,
    SearchResponseError,
    TransientSearchError,
)

logger = get_logger(__name__, component="search")

API_KEY_HEADER = "X-TYPESENSE-API-KEY"


class SearchIndexClient(ABC):
    """Operations the service needs from a search index."""

    @abstractmethod
    def search(
        self,
        collection: str,
        query: str = "*",
        filter_by: str = "",
        sort_by: Optional[str] = None,
        page: int = 1,
        per_page: int = 10,
    ) -> SearchResult:
        """Run a filtered query and return one page of hits.

        Raises:
            TransientSearchError: Index unreachable, timed out or overloaded
            SearchQueryError: The index rejected the query (e.g. malformed filter)
            SearchResponseError: The response could not be interpreted
        """

    @abstractmethod
    def upsert_document(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        """Create or replace a document."""

    @abstractmethod
    def update_document(
        self, collection: str, doc_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Partially update an existing document."""

    @abstractmethod
    def delete_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Delete a document. Returns None if it did not exist."""


class TypesenseClient(SearchIndexClient):
    """HTTP client for a single Typesense node.

    Attributes:
        base_url: Node URL such as ``http://localhost:8108``
        timeout: Per-request timeout in seconds
        query_by: Comma-separated fields searched by the free-text query
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: int = 10,
        query_by: str = "title,description,company,skills",
        query_by_weights: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.query_by = query_by
        self.query_by_weights = query_by_weights

        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})
        if api_key:
            self._session.headers.update({API_KEY_HEADER: api_key})

    def search(
        self,
        collection: str,
        query: str = "*",
        filter_by: str = "",
        sort_by: Optional[str] = None,
        page: int = 1,
        per_page: int = 10,
    ) -> SearchResult:
        params: Dict[str, Any] = {
            "q": query or "*",
            "query_by": self.query_by,
            "page": page,
            "per_page": per_page,
        }
        if filter_by:
            params["filter_by"] = filter_by
        if sort_by:
            params["sort_by"] = sort_by
        if self.query_by_weights:
            params["query_by_weights"] = self.query_by_weights

        data = self._request("GET", f"/collections/{collection}/documents/search", params=params)
        return self._parse_search_response(data, page)

    def upsert_document(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"/collections/{collection}/documents",
            params={"action": "upsert"},
            json_data=document,
        )

    def update_document(
        self, collection: str, doc_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        return self._request(
            "PATCH", f"/collections/{collection}/documents/{doc_id}", json_data=fields
        )

    def delete_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self._request(
            "DELETE", f"/collections/{collection}/documents/{doc_id}", allow_not_found=True
        )

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Any:
        """Send one request and map failures onto the SearchError hierarchy."""
        url = f"{self.base_url}{path}"

        logger.debug(
            f"HTTP {method} request to {url}",
            extra={"event": "search.request", "method": method, "url": url},
        )

        try:
            response = self._session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            logger.warning(
                f"Request to {url} timed out after {self.timeout} seconds",
                extra={"event": "search.request.retryable_error", "error_type": "Timeout", "url": url},
            )
            raise TransientSearchError(
                f"Request to {url} timed out after {self.timeout} seconds", url=url
            ) from e
        except requests.exceptions.ConnectionError as e:
            logger.warning(
                f"Could not connect to search index at {url}",
                extra={
                    "event": "search.request.retryable_error",
                    "error_type": "ConnectionError",
                    "url": url,
                },
            )
            raise TransientSearchError(f"Could not connect to {url}: {e}", url=url) from e
        except requests.exceptions.RequestException as e:
            logger.error(
                f"Request to {url} failed: {e}",
                extra={"event": "search.request.error", "error_type": type(e).__name__, "url": url},
            )
            raise SearchError(f"Request to {url} failed: {e}", url=url) from e

        if response.status_code == 404 and allow_not_found:
            return None

        if response.status_code >= 400:
            self._raise_for_status(response, url)

        try:
            return response.json()
        except ValueError as e:
            logger.error(
                f"Failed to parse JSON response from {url}",
                extra={"event": "search.request.error", "error_type": "JSONDecodeError", "url": url},
            )
            raise SearchResponseError(
                f"Failed to parse JSON response from {url}: {e}",
                status_code=response.status_code,
                url=url,
            ) from e

    def _raise_for_status(self, response: requests.Response, url: str) -> None:
        status = response.status_code
        message = _error_message(response)
        retryable = status >= 500 or status == 429

        logger.log(
            logging.WARNING if retryable else logging.ERROR,
            f"HTTP {status} from search index: {message}",
            extra={
                "event": "search.request.retryable_error" if retryable else "search.request.error",
                "status_code": status,
                "url": url,
            },
        )

        if retryable:
            raise TransientSearchError(f"HTTP {status}: {message}", status_code=status, url=url)
        if status == 400:
            raise SearchQueryError(f"Search request rejected: {message}", status_code=status, url=url)
        raise SearchResponseError(f"HTTP {status}: {message}", status_code=status, url=url)

    @staticmethod
    def _parse_search_response(data: Any, page: int) -> SearchResult:
        if not isinstance(data, dict) or not isinstance(data.get("hits"), list):
            raise SearchResponseError("Search response is missing the 'hits' list")

        hits = []
        for raw_hit in data["hits"]:
            document = raw_hit.get("document") if isinstance(raw_hit, dict) else None
            if not isinstance(document, dict) or "id" not in document:
                raise SearchResponseError("Search hit without a document id")
            try:
                int(document["id"])
            except (TypeError, ValueError) as e:
                raise SearchResponseError(
                    f"Search hit has non-numeric job id {document['id']!r}"
                ) from e
            hits.append(SearchHit(document=document, text_match=raw_hit.get("text_match")))

        return SearchResult(
            hits=hits,
            found=int(data.get("found", len(hits))),
            page=int(data.get("page", page)),
            search_time_ms=int(data.get("search_time_ms", 0)),
        )


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason or "unknown error"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason or "unknown error"
