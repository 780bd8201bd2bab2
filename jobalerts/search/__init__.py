"""Search index access: filter compilation and the index client."""

from .client import SearchIndexClient, TypesenseClient
from .exceptions import (
    SearchError,
    SearchQueryError,
    SearchResponseError,
    TransientSearchError,
)
from .query_builder import FilterQueryBuilder, compile_alert_filter

__all__ = [
    "SearchIndexClient",
    "TypesenseClient",
    "FilterQueryBuilder",
    "compile_alert_filter",
    "SearchError",
    "TransientSearchError",
    "SearchQueryError",
    "SearchResponseError",
]
