"""Tests for the Bookshelf HTTP client error mapping."""

from unittest.mock import MagicMock

import pytest
import requests

from bookwarden.bookshelf.api import (
    BookshelfClient,
    BookshelfError,
    BookshelfErrorKind,
    classify_http_error,
)


def _response(status_code=200, payload=None, text=None, reason="OK"):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.reason = reason
    if text is None:
        text = "" if payload is None else "json"
    response.text = text
    response.content = text.encode()
    response.json.return_value = payload
    return response


def _client(response=None, side_effect=None):
    client = BookshelfClient("bookshelf.local:8787/", "secret", timeout=7)
    session = MagicMock()
    if side_effect is not None:
        session.request.side_effect = side_effect
    else:
        session.request.return_value = response
    client._session = session
    return client, session


def test_client_normalizes_url_and_sets_api_key_header():
    client = BookshelfClient("bookshelf.local:8787/", "secret")

    assert client.base_url == "http://bookshelf.local:8787"
    assert client._session.headers["X-Api-Key"] == "secret"


def test_lookup_author_uses_api_prefix_term_and_timeout():
    client, session = _client(_response(payload=[{"foreignAuthorId": "a1"}]))

    result = client.lookup_author("Jane Doe")

    assert result == [{"foreignAuthorId": "a1"}]
    kwargs = session.request.call_args.kwargs
    assert kwargs["method"] == "GET"
    assert kwargs["url"] == "http://bookshelf.local:8787/api/v1/author/lookup"
    assert kwargs["params"] == {"term": "Jane Doe"}
    assert kwargs["timeout"] == 7


def test_get_books_passes_author_id_only_when_given():
    client, session = _client(_response(payload=[]))

    client.get_books(12)
    assert session.request.call_args.kwargs["params"] == {"authorId": 12}

    client.get_books()
    assert session.request.call_args.kwargs["params"] is None


def test_refresh_author_posts_command():
    client, session = _client(_response(payload={"id": 1}))

    client.refresh_author(42)

    kwargs = session.request.call_args.kwargs
    assert kwargs["method"] == "POST"
    assert kwargs["url"].endswith("/api/v1/command")
    assert kwargs["json"] == {"name": "RefreshAuthor", "authorId": 42}


def test_author_exists_validator_maps_to_already_exists():
    body = '[{"propertyName":"ForeignAuthorId","errorCode":"AuthorExistsValidator"}]'
    client, _ = _client(_response(400, text=body, reason="Bad Request"))

    with pytest.raises(BookshelfError) as exc_info:
        client.add_author({"foreignAuthorId": "a1"})

    assert exc_info.value.kind == BookshelfErrorKind.ALREADY_EXISTS
    assert exc_info.value.status_code == 400
    assert "AuthorExistsValidator" in exc_info.value.body


def test_http_error_body_is_truncated():
    client, _ = _client(_response(500, text="x" * 2000, reason="Server Error"))

    with pytest.raises(BookshelfError) as exc_info:
        client.get_root_folders()

    assert exc_info.value.kind == BookshelfErrorKind.HTTP
    assert len(exc_info.value.body) == 500


def test_timeout_is_a_transport_error():
    client, _ = _client(side_effect=requests.exceptions.Timeout("slow"))

    with pytest.raises(BookshelfError) as exc_info:
        client.get_books(1)

    assert exc_info.value.kind == BookshelfErrorKind.TIMEOUT
    assert exc_info.value.is_transport


def test_connection_error_is_a_transport_error():
    client, _ = _client(side_effect=requests.exceptions.ConnectionError("refused"))

    with pytest.raises(BookshelfError) as exc_info:
        client.lookup_book("x")

    assert exc_info.value.kind == BookshelfErrorKind.TRANSPORT


def test_non_list_response_is_invalid():
    client, _ = _client(_response(payload={"not": "a list"}))

    with pytest.raises(BookshelfError) as exc_info:
        client.get_root_folders()

    assert exc_info.value.kind == BookshelfErrorKind.INVALID_RESPONSE


def test_empty_body_returns_empty_list():
    client, _ = _client(_response(payload=None, text=""))

    assert client.get_books(3) == []


def test_invalid_json_is_invalid_response():
    response = _response(text="<html>")
    response.json.side_effect = ValueError("no json")
    client, _ = _client(response)

    with pytest.raises(BookshelfError) as exc_info:
        client.lookup_author("x")

    assert exc_info.value.kind == BookshelfErrorKind.INVALID_RESPONSE


class TestConnection:
    def test_success_reports_version(self):
        client, _ = _client(_response(payload={"version": "0.4.1"}))

        assert client.test_connection() == (True, "Connected to Bookshelf 0.4.1")

    def test_unauthorized(self):
        client, _ = _client(_response(401, text="Unauthorized", reason="Unauthorized"))

        assert client.test_connection() == (False, "Invalid API key")

    def test_unreachable(self):
        client, _ = _client(side_effect=requests.exceptions.ConnectionError("refused"))

        ok, message = client.test_connection()

        assert ok is False
        assert "Could not connect" in message


@pytest.mark.parametrize(
    ("status_code", "body", "expected"),
    [
        (409, "AuthorExistsValidator", BookshelfErrorKind.ALREADY_EXISTS),
        (400, "Some other validation", BookshelfErrorKind.HTTP),
        (404, "", BookshelfErrorKind.NOT_FOUND),
        (500, "AuthorExistsValidator", BookshelfErrorKind.HTTP),
    ],
)
def test_classify_http_error(status_code, body, expected):
    assert classify_http_error(status_code, body) == expected
