"""Bookshelf (Readarr-compatible) API client.

All calls go through ``_request`` which converts transport and HTTP failures
into ``BookshelfError`` with a ``BookshelfErrorKind`` so that callers branch on
the kind instead of on response text.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import requests

from bookwarden.core.logger import setup_logger
from bookwarden.core.utils import normalize_http_url

logger = setup_logger(__name__)

API_PREFIX = "/api/v1"

# Readarr's FluentValidation error for a duplicate author. Version dependent.
AUTHOR_EXISTS_VALIDATOR = "AuthorExistsValidator"

_ERROR_BODY_LIMIT = 500


class BookshelfErrorKind(str, Enum):
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    HTTP = "http"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    INVALID_RESPONSE = "invalid_response"


class BookshelfError(Exception):
    """Failure talking to the Bookshelf API."""

    def __init__(
        self,
        kind: BookshelfErrorKind,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.body = body

    @property
    def is_transport(self) -> bool:
        return self.kind in (BookshelfErrorKind.TIMEOUT, BookshelfErrorKind.TRANSPORT)


def classify_http_error(status_code: int, body: str) -> BookshelfErrorKind:
    """Map an HTTP error response to an error kind."""
    if status_code in (400, 409) and AUTHOR_EXISTS_VALIDATOR in (body or ""):
        return BookshelfErrorKind.ALREADY_EXISTS
    if status_code == 404:
        return BookshelfErrorKind.NOT_FOUND
    return BookshelfErrorKind.HTTP


class BookshelfClient:
    """Client for interacting with the Bookshelf API."""

    def __init__(self, url: str, api_key: str, timeout: int = 30):
        self.base_url = normalize_http_url(url)
        self.api_key = api_key
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({
            "X-Api-Key": api_key,
            "Accept": "application/json",
        })

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
    ) -> Any:
        """Make an API request to Bookshelf. Returns parsed JSON response."""
        url = self.base_url + API_PREFIX + endpoint
        logger.debug(f"Bookshelf API: {method} {url}")

        try:
            response = self._session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            logger.error(f"Bookshelf API request timed out: {method} {url}")
            raise BookshelfError(BookshelfErrorKind.TIMEOUT, f"Request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Bookshelf API request failed: {e}")
            raise BookshelfError(BookshelfErrorKind.TRANSPORT, f"Request failed: {e}") from e

        if not response.ok:
            error_body = (response.text or "")[:_ERROR_BODY_LIMIT]
            kind = classify_http_error(response.status_code, error_body)
            if kind == BookshelfErrorKind.ALREADY_EXISTS:
                logger.debug(f"Bookshelf API conflict on {method} {endpoint}: {error_body}")
            else:
                logger.error(
                    f"Bookshelf API HTTP error: {response.status_code} {response.reason} "
                    f"on {method} {endpoint}: {error_body}"
                )
            raise BookshelfError(
                kind,
                f"HTTP {response.status_code} {response.reason}",
                status_code=response.status_code,
                body=error_body,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON response from Bookshelf: {e}")
            raise BookshelfError(
                BookshelfErrorKind.INVALID_RESPONSE,
                f"Invalid JSON response: {e}",
                status_code=response.status_code,
            ) from e

    def _request_list(self, method: str, endpoint: str, **kwargs) -> List[Dict[str, Any]]:
        data = self._request(method, endpoint, **kwargs)
        if data is None:
            return []
        if not isinstance(data, list):
            raise BookshelfError(
                BookshelfErrorKind.INVALID_RESPONSE,
                f"Expected a list from {endpoint}, got {type(data).__name__}",
            )
        return data

    def test_connection(self) -> Tuple[bool, str]:
        """Test connection to Bookshelf. Returns (success, message)."""
        logger.info(f"Testing Bookshelf connection to: {self.base_url}")
        try:
            data = self._request("GET", "/system/status") or {}
        except BookshelfError as e:
            if e.status_code == 401:
                return False, "Invalid API key"
            if e.is_transport:
                return False, "Could not connect to Bookshelf. Check the URL."
            return False, f"Connection failed: {e}"
        version = data.get("version", "unknown")
        logger.info(f"Bookshelf connection successful: version {version}")
        return True, f"Connected to Bookshelf {version}"

    # Lookups against the metadata provider

    def lookup_author(self, term: str) -> List[Dict[str, Any]]:
        return self._request_list("GET", "/author/lookup", params={"term": term})

    def lookup_book(self, term: str) -> List[Dict[str, Any]]:
        return self._request_list("GET", "/book/lookup", params={"term": term})

    # Library state

    def get_root_folders(self) -> List[Dict[str, Any]]:
        return self._request_list("GET", "/rootFolder")

    def get_quality_profiles(self) -> List[Dict[str, Any]]:
        return self._request_list("GET", "/qualityprofile")

    def get_books(self, author_id: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {"authorId": author_id} if author_id is not None else None
        return self._request_list("GET", "/book", params=params)

    def get_book_files(self, book_id: int) -> List[Dict[str, Any]]:
        return self._request_list("GET", "/bookfile", params={"bookId": book_id})

    # Mutations

    def add_author(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/author", json_data=payload) or {}

    def update_author(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PUT", "/author", json_data=payload) or {}

    def add_book(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/book", json_data=payload) or {}

    def update_book(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PUT", "/book", json_data=payload) or {}

    def refresh_author(self, author_id: int) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/command",
            json_data={"name": "RefreshAuthor", "authorId": author_id},
        ) or {}
