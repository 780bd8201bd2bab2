"""Unit tests for the Typesense search client."""

from unittest.mock import MagicMock, Mock

import pytest
import requests

from jobalerts.search import (
    SearchError,
    SearchQueryError,
    SearchResponseError,
    TransientSearchError,
    TypesenseClient,
)


def make_response(status_code=200, json_data=None, json_error=False, text="", reason="OK"):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.reason = reason
    if json_error:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def http_session():
    session = MagicMock()
    session.headers = {}
    return session


@pytest.fixture
def client(http_session):
    return TypesenseClient(
        base_url="http://search.local:8108/",
        api_key="secret",
        timeout=5,
        query_by="title,description",
        query_by_weights="2,1",
        session=http_session,
    )


class TestTypesenseClient:
    """Test suite for TypesenseClient."""

    def test_sets_headers(self, client, http_session):
        assert http_session.headers["X-TYPESENSE-API-KEY"] == "secret"
        assert http_session.headers["Content-Type"] == "application/json"
        assert client.base_url == "http://search.local:8108"

    def test_search_builds_request(self, client, http_session):
        http_session.request.return_value = make_response(
            json_data={
                "found": 2,
                "page": 1,
                "search_time_ms": 3,
                "hits": [
                    {"document": {"id": "11", "title": "JS Dev"}, "text_match": 100},
                    {"document": {"id": "12", "title": "Node Dev"}, "text_match": 50},
                ],
            }
        )

        result = client.search(
            "jobs",
            query="javascript developer",
            filter_by="city:Seattle",
            sort_by="createdAt:desc",
            per_page=50,
        )

        _, kwargs = http_session.request.call_args
        assert kwargs["method"] == "GET"
        assert kwargs["url"] == "http://search.local:8108/collections/jobs/documents/search"
        assert kwargs["timeout"] == 5
        assert kwargs["params"] == {
            "q": "javascript developer",
            "query_by": "title,description",
            "query_by_weights": "2,1",
            "page": 1,
            "per_page": 50,
            "filter_by": "city:Seattle",
            "sort_by": "createdAt:desc",
        }
        assert result.found == 2
        assert result.job_ids() == [11, 12]
        assert result.hits[0].text_match == 100

    def test_empty_query_becomes_wildcard(self, client, http_session):
        http_session.request.return_value = make_response(json_data={"hits": []})

        client.search("jobs", query="")

        params = http_session.request.call_args.kwargs["params"]
        assert params["q"] == "*"
        assert "filter_by" not in params

    def test_timeout_is_transient(self, client, http_session):
        http_session.request.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(TransientSearchError):
            client.search("jobs")

    def test_connection_error_is_transient(self, client, http_session):
        http_session.request.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(TransientSearchError):
            client.search("jobs")

    def test_other_request_errors_are_search_errors(self, client, http_session):
        http_session.request.side_effect = requests.exceptions.InvalidURL("bad")

        with pytest.raises(SearchError) as exc_info:
            client.search("jobs")
        assert not isinstance(exc_info.value, TransientSearchError)

    @pytest.mark.parametrize("status", [500, 503, 429])
    def test_server_errors_are_transient(self, client, http_session, status):
        http_session.request.return_value = make_response(
            status_code=status, json_data={"message": "overloaded"}
        )

        with pytest.raises(TransientSearchError) as exc_info:
            client.search("jobs")
        assert exc_info.value.status_code == status

    def test_bad_request_is_query_error(self, client, http_session):
        http_session.request.return_value = make_response(
            status_code=400, json_data={"message": "Could not parse the filter query."}
        )

        with pytest.raises(SearchQueryError, match="Could not parse the filter query"):
            client.search("jobs", filter_by="city:(")

    def test_not_found_is_response_error(self, client, http_session):
        http_session.request.return_value = make_response(
            status_code=404, json_data={"message": "Not Found"}
        )

        with pytest.raises(SearchResponseError):
            client.search("missing")

    def test_invalid_json_is_response_error(self, client, http_session):
        http_session.request.return_value = make_response(json_error=True)

        with pytest.raises(SearchResponseError):
            client.search("jobs")

    def test_missing_hits_is_response_error(self, client, http_session):
        http_session.request.return_value = make_response(json_data={"found": 0})

        with pytest.raises(SearchResponseError, match="hits"):
            client.search("jobs")

    def test_non_numeric_job_id_is_response_error(self, client, http_session):
        http_session.request.return_value = make_response(
            json_data={"hits": [{"document": {"id": "abc"}}]}
        )

        with pytest.raises(SearchResponseError, match="non-numeric"):
            client.search("jobs")

    def test_upsert_document(self, client, http_session):
        http_session.request.return_value = make_response(json_data={"id": "7"})

        client.upsert_document("jobs", {"id": "7", "title": "Dev"})

        kwargs = http_session.request.call_args.kwargs
        assert kwargs["method"] == "POST"
        assert kwargs["params"] == {"action": "upsert"}
        assert kwargs["json"] == {"id": "7", "title": "Dev"}

    def test_update_document(self, client, http_session):
        http_session.request.return_value = make_response(json_data={"id": "7"})

        client.update_document("jobs", "7", {"isActive": False})

        kwargs = http_session.request.call_args.kwargs
        assert kwargs["method"] == "PATCH"
        assert kwargs["url"].endswith("/collections/jobs/documents/7")

    def test_delete_missing_document_returns_none(self, client, http_session):
        http_session.request.return_value = make_response(status_code=404, json_data={})

        assert client.delete_document("jobs", "7") is None
