"""Reconcile ``processing`` requests against the Bookshelf library.

Bookshelf has no completion callback, so fulfillment is detected by polling
each processing request's author book list. Every request is handled in
isolation: a failure on one row is counted and logged, never raised.
"""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from bookwarden.bookshelf.api import BookshelfClient, BookshelfError
from bookwarden.core.logger import setup_logger
from bookwarden.core.models import BookStatus, PollDetail, PollSummary, RequestStatus
from bookwarden.core.utils import now_timestamp

logger = setup_logger(__name__)


class BookNotFoundDuringPoll(Exception):
    """The request's book is not in its author's Bookshelf book list."""


class AmbiguousBookStatus(Exception):
    """The Bookshelf record does not allow a reliable classification."""


def classify_book(book: Dict[str, Any]) -> BookStatus:
    """Classify an external book record by its download statistics."""
    statistics = book.get("statistics") or {}
    raw_count = statistics.get("bookFileCount", 0)
    if raw_count is None:
        raw_count = 0
    if isinstance(raw_count, bool):
        raise AmbiguousBookStatus(f"bookFileCount is not a number: {raw_count!r}")
    try:
        file_count = int(raw_count)
    except (TypeError, ValueError) as e:
        raise AmbiguousBookStatus(f"bookFileCount is not a number: {raw_count!r}") from e

    if file_count > 0:
        return BookStatus.AVAILABLE
    if book.get("grabbed") is True:
        return BookStatus.DOWNLOADING
    return BookStatus.MISSING


@dataclass
class _ItemOutcome:
    detail: PollDetail
    updated: bool = False
    failed: bool = False


class ReconciliationPoller:
    """Checks processing requests and promotes them to ``available``."""

    def __init__(
        self,
        request_db,
        client: BookshelfClient,
        *,
        resolve_title: Optional[Callable[[Dict[str, Any]], str]] = None,
        on_available: Optional[Callable[[Dict[str, Any]], None]] = None,
        max_workers: int = 1,
        clock: Callable[[], str] = now_timestamp,
    ):
        self.request_db = request_db
        self.client = client
        self.resolve_title = resolve_title or (lambda row: f"book {row.get('book_id')}")
        self.on_available = on_available
        self.max_workers = max(1, int(max_workers or 1))
        self.clock = clock

    def poll_all(self) -> PollSummary:
        rows = [
            row
            for row in self.request_db.list_requests(status=RequestStatus.PROCESSING.value)
            if row.get("external_author_id") is not None
        ]
        logger.info(f"Polling {len(rows)} processing request(s)")

        summary = PollSummary()
        if not rows:
            return summary

        if self.max_workers == 1:
            outcomes = [self._poll_one_safely(row) for row in rows]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="Poll") as pool:
                outcomes = list(pool.map(self._poll_one_safely, rows))

        for outcome in outcomes:
            summary.checked += 1
            summary.details.append(outcome.detail)
            if outcome.updated:
                summary.updated += 1
            if outcome.failed:
                summary.errors += 1

        logger.info(
            f"Polling completed: checked={summary.checked} "
            f"updated={summary.updated} errors={summary.errors}"
        )
        return summary

    def _safe_title(self, row: Dict[str, Any]) -> str:
        try:
            return self.resolve_title(row)
        except Exception as e:
            logger.warning(f"Could not resolve title for request {row['id']}: {e}")
            return f"book {row.get('book_id')}"

    def _poll_one_safely(self, row: Dict[str, Any]) -> _ItemOutcome:
        try:
            return self._poll_one(row)
        except Exception as e:
            logger.error(f"Unexpected error polling request {row.get('id')}: {e}", exc_info=True)
            detail = PollDetail(
                request_id=row.get("id"),
                book_title=f"book {row.get('book_id')}",
                old_status=row.get("status"),
                new_status=row.get("status"),
                error=f"{type(e).__name__}: {e}",
            )
            return _ItemOutcome(detail=detail, failed=True)

    def _poll_one(self, row: Dict[str, Any]) -> _ItemOutcome:
        request_id = row["id"]
        title = self._safe_title(row)
        foreign_book_id = str(row.get("foreign_book_id") or row["book_id"])
        detail = PollDetail(
            request_id=request_id,
            book_title=title,
            old_status=row["status"],
            new_status=row["status"],
        )
        outcome = _ItemOutcome(detail=detail)

        try:
            books = self.client.get_books(row["external_author_id"])
            book = next(
                (
                    b for b in books
                    if isinstance(b, dict) and str(b.get("foreignBookId")) == foreign_book_id
                ),
                None,
            )
            if book is None:
                raise BookNotFoundDuringPoll(
                    f"Book {foreign_book_id} not found in books of author {row['external_author_id']}"
                )
            book_status = classify_book(book)
            detail.book_status = book_status
        except (BookshelfError, BookNotFoundDuringPoll, AmbiguousBookStatus) as e:
            logger.warning(f"Failed to poll request {request_id} ('{title}'): {e}")
            detail.error = f"{type(e).__name__}: {e}"
            outcome.failed = True
            self._touch(request_id, detail)
            return outcome

        logger.debug(f"Poll result for request {request_id} ('{title}'): {book_status.value}")

        if book_status != BookStatus.AVAILABLE:
            outcome.failed = not self._touch(request_id, detail)
            return outcome

        now = self.clock()
        try:
            updated_row = self.request_db.update_request(
                request_id,
                expected_current_status=RequestStatus.PROCESSING.value,
                status=RequestStatus.AVAILABLE.value,
                completed_at=now,
                last_polled_at=now,
            )
        except ValueError as e:
            # Declined or deleted by an admin while we were polling.
            logger.warning(f"Request {request_id} changed during poll, skipping: {e}")
            detail.error = str(e)
            outcome.failed = True
            return outcome
        except sqlite3.Error as e:
            logger.error(f"Could not mark request {request_id} available: {e}")
            detail.error = f"{type(e).__name__}: {e}"
            outcome.failed = True
            return outcome

        detail.new_status = RequestStatus.AVAILABLE.value
        outcome.updated = True
        logger.info(f"Request {request_id} completed: '{title}' is available")

        if self.on_available is not None:
            try:
                self.on_available(updated_row)
            except Exception as e:
                logger.error(f"Fulfillment notification failed for request {request_id}: {e}")
        return outcome

    def _touch(self, request_id: int, detail: PollDetail) -> bool:
        """Record the poll time. Returns False (and notes the error) if the write failed."""
        try:
            self.request_db.update_request(request_id, last_polled_at=self.clock())
        except (ValueError, sqlite3.Error) as e:
            logger.warning(f"Could not record poll time for request {request_id}: {e}")
            if detail.error is None:
                detail.error = f"{type(e).__name__}: {e}"
            return False
        return True
