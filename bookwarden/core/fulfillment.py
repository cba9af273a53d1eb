"""Approval, submission and reconciliation of book requests against Bookshelf.

``FulfillmentEngine`` is the entry point an API layer calls:

* ``submit_approved`` turns an admin approval into a Bookshelf registration
  and moves the request to ``processing``;
* ``poll_all`` promotes ``processing`` requests to ``available`` once
  Bookshelf reports a downloaded file.

When Bookshelf is not configured, approvals are recorded as ``approved`` and
polling is a no-op.
"""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, TYPE_CHECKING

from bookwarden.bookshelf.api import BookshelfClient, BookshelfError
from bookwarden.bookshelf.library import LibraryCache, LibraryStatusChecker
from bookwarden.bookshelf.matching import EntityMatcher, SubmissionError
from bookwarden.bookshelf.poller import ReconciliationPoller
from bookwarden.bookshelf.submitter import AcquisitionSubmitter
from bookwarden.core.config import Config, config as app_config
from bookwarden.core.logger import setup_logger
from bookwarden.core.models import LibraryStatus, PollSummary, RequestStatus
from bookwarden.core.quality_profiles import resolve_quality_profile_name
from bookwarden.core.requests_service import (
    BookCatalog,
    RequestServiceError,
    resolve_book_title,
)
from bookwarden.core.utils import now_timestamp

if TYPE_CHECKING:
    from bookwarden.core.notifications import Notifier
    from bookwarden.core.request_db import RequestDB

logger = setup_logger(__name__)

UNKNOWN_AUTHOR = "Unknown Author"

# Matching failures are the caller's data problem; everything else is upstream.
_FAILURE_STATUS_CODES = {
    "author_not_found": 422,
    "book_not_found": 422,
}


@dataclass
class _BookshelfComponents:
    client: BookshelfClient
    matcher: EntityMatcher
    submitter: AcquisitionSubmitter
    library: LibraryStatusChecker


class FulfillmentEngine:
    """Drives requests from admin approval to ``available``."""

    def __init__(
        self,
        request_db: "RequestDB",
        catalog: BookCatalog,
        notifier: Optional["Notifier"] = None,
        *,
        client: Optional[BookshelfClient] = None,
        settings: Config = app_config,
    ):
        self.request_db = request_db
        self.catalog = catalog
        self.notifier = notifier
        self.settings = settings
        self._fixed_client = client
        self._components_lock = threading.Lock()
        self._components: Optional[_BookshelfComponents] = None
        self._components_key: Optional[Tuple[Any, ...]] = None

    # ------------------------------------------------------------------
    # Bookshelf wiring
    # ------------------------------------------------------------------

    def _bookshelf(self) -> Optional[_BookshelfComponents]:
        """Components for the current settings, or None when not configured.

        Components are rebuilt only when connection settings change so that
        the submitter's per-author locks and the library cache survive
        between calls.
        """
        if self._fixed_client is None and not self.settings.is_bookshelf_configured():
            return None

        key = (
            self.settings.get("BOOKSHELF_URL"),
            self.settings.get("BOOKSHELF_API_KEY"),
            self.settings.get("BOOKSHELF_TIMEOUT"),
            self.settings.get("BOOKSHELF_METADATA_PROFILE_ID"),
            self.settings.get("BOOKSHELF_LIBRARY_CACHE_TTL"),
        )
        with self._components_lock:
            if self._components is not None and self._components_key == key:
                return self._components

            url, api_key, timeout, metadata_profile_id, cache_ttl = key
            client = self._fixed_client or BookshelfClient(url, api_key, timeout=int(timeout))
            self._components = _BookshelfComponents(
                client=client,
                matcher=EntityMatcher(client),
                submitter=AcquisitionSubmitter(client, metadata_profile_id=int(metadata_profile_id)),
                library=LibraryStatusChecker(client, LibraryCache(ttl_seconds=float(cache_ttl))),
            )
            self._components_key = key
            return self._components

    def is_configured(self) -> bool:
        return self._bookshelf() is not None

    def test_connection(self) -> Tuple[bool, str]:
        bookshelf = self._bookshelf()
        if bookshelf is None:
            return False, "Bookshelf is not configured"
        return bookshelf.client.test_connection()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_approved(self, request_id: int, admin_user_id: Optional[int] = None) -> Dict[str, Any]:
        """Approve a request and register it with Bookshelf.

        Already ``processing``/``available`` requests are returned unchanged.
        On failure the request stays in its current state, the reason is
        stored on the row, admins are notified, and ``RequestServiceError``
        is raised.
        """
        row = self.request_db.get_request(request_id)
        if row is None:
            raise RequestServiceError("Request not found", status_code=404)

        status = row["status"]
        if status in (RequestStatus.PROCESSING.value, RequestStatus.AVAILABLE.value):
            logger.info(f"Request {request_id} is already {status}, nothing to submit")
            return row
        if status == RequestStatus.DECLINED.value:
            raise RequestServiceError(
                "Declined requests cannot be approved",
                status_code=409,
                code="stale_transition",
            )

        book = self.catalog.get_book_by_id(row["book_id"])
        if book is None:
            raise RequestServiceError("Book not found", status_code=404, code="book_not_found")
        title = str(book.get("title") or row["book_id"])
        author_name = str(book.get("author") or UNKNOWN_AUTHOR)

        bookshelf = self._bookshelf()
        if bookshelf is None:
            logger.warning(
                f"Bookshelf not configured, approving request {request_id} without sending to Bookshelf"
            )
            updated = self._transition(
                row,
                status=RequestStatus.APPROVED.value,
                processed_by=admin_user_id,
                processed_at=now_timestamp(),
            )
            self._notify_user(updated, "request_approved", "Book Request Approved",
                              f'Your request for "{title}" was approved.')
            return updated

        logger.info(
            f"Adding book to Bookshelf: request={request_id} book_id={row['book_id']} "
            f"title='{title}' author={author_name} quality_profile_id={row['quality_profile_id']}"
        )
        try:
            match = bookshelf.matcher.match_author_and_book(
                title,
                author_name,
                isbn=book.get("isbn13") or book.get("isbn"),
            )
            result = bookshelf.submitter.submit(match, row["quality_profile_id"])
        except SubmissionError as e:
            self._record_failure(row, title, author_name, str(e))
            raise RequestServiceError(
                f"Failed to add book to Bookshelf: {e}",
                status_code=_FAILURE_STATUS_CODES.get(e.code, 502),
                code=e.code,
            ) from e
        except BookshelfError as e:
            # Lookup calls made by the matcher surface transport errors directly.
            self._record_failure(row, title, author_name, str(e))
            raise RequestServiceError(
                f"Failed to add book to Bookshelf: {e}",
                status_code=502,
                code="bookshelf_error",
            ) from e

        if result.degraded:
            logger.warning(
                f"Request {request_id} registered with degraded outcome "
                f"{result.book_action.value}; Bookshelf may pick the book up on refresh"
            )

        updated = self._transition(
            row,
            status=RequestStatus.PROCESSING.value,
            external_author_id=result.author_id,
            foreign_book_id=result.foreign_book_id,
            last_failure_reason=None,
            processed_by=admin_user_id,
            processed_at=now_timestamp(),
        )
        bookshelf.library.cache.invalidate()
        logger.info(f"Request {request_id} approved and sent to Bookshelf (author id {result.author_id})")

        profile_name = resolve_quality_profile_name(self.request_db, row["quality_profile_id"])
        self._notify_user(
            updated,
            "request_approved",
            "Book Request Approved",
            f'Your request for "{title}" by {author_name} was approved and is being '
            f"acquired ({profile_name}).",
        )
        return updated

    def _transition(self, row: Dict[str, Any], **fields: Any) -> Dict[str, Any]:
        try:
            return self.request_db.update_request(
                row["id"],
                expected_current_status=row["status"],
                **fields,
            )
        except ValueError as e:
            raise RequestServiceError(str(e), status_code=409, code="stale_transition") from e

    def _record_failure(self, row: Dict[str, Any], title: str, author_name: str, reason: str) -> None:
        logger.error(f"Failed to add '{title}' by {author_name} to Bookshelf (request {row['id']}): {reason}")
        try:
            self.request_db.update_request(row["id"], last_failure_reason=reason)
        except (ValueError, sqlite3.Error) as e:
            logger.warning(f"Could not store failure reason for request {row['id']}: {e}")

        if self.notifier is None:
            return
        try:
            user = self.request_db.get_user(row["user_id"]) or {}
            profile_name = resolve_quality_profile_name(self.request_db, row["quality_profile_id"])
            self.notifier.notify_admins(
                "bookshelf_error",
                "Bookshelf Error",
                f'Failed to add "{title}" by {author_name} to Bookshelf for '
                f'{user.get("username") or "Unknown User"} ({profile_name}): {reason}',
            )
        except Exception as e:
            logger.error(f"Failed to notify admins about request {row['id']}: {e}")

    def _notify_user(self, row: Dict[str, Any], kind: str, subject: str, detail: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify([row["user_id"]], kind, subject, detail)
        except Exception as e:
            logger.error(f"Failed to send {kind} notification for request {row['id']}: {e}")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll_all(self) -> PollSummary:
        """Check every processing request once. Zero summary when not configured."""
        bookshelf = self._bookshelf()
        if bookshelf is None:
            logger.info("Bookshelf not configured, skipping poll")
            return PollSummary()

        poller = ReconciliationPoller(
            self.request_db,
            bookshelf.client,
            resolve_title=lambda row: resolve_book_title(self.catalog, row["book_id"]),
            on_available=self._notify_available,
            max_workers=int(self.settings.get("POLL_MAX_WORKERS") or 1),
        )
        summary = poller.poll_all()
        if summary.updated:
            bookshelf.library.cache.invalidate()
        return summary

    def _notify_available(self, row: Dict[str, Any]) -> None:
        title = resolve_book_title(self.catalog, row["book_id"])
        self._notify_user(
            row,
            "request_available",
            "Book Available",
            f'"{title}" has been downloaded and is now available in your library.',
        )

    # ------------------------------------------------------------------
    # Library
    # ------------------------------------------------------------------

    def library_status(self, title: str, author_name: str) -> LibraryStatus:
        bookshelf = self._bookshelf()
        if bookshelf is None:
            return LibraryStatus(exists=False)
        return bookshelf.library.check_book_in_library(title, author_name)


def build_engine_from_config(
    request_db: "RequestDB",
    catalog: BookCatalog,
    notifier: Optional["Notifier"] = None,
    settings: Config = app_config,
) -> FulfillmentEngine:
    """Engine that reads connection settings from ``settings`` on every call."""
    return FulfillmentEngine(request_db, catalog, notifier, settings=settings)
