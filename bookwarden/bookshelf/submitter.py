"""Idempotent registration of a matched author + book with Bookshelf."""

from __future__ import annotations

import threading
import weakref
from typing import Any, Dict, Optional

from bookwarden.bookshelf.api import BookshelfClient, BookshelfError, BookshelfErrorKind
from bookwarden.bookshelf.matching import SubmissionError
from bookwarden.core.logger import setup_logger
from bookwarden.core.models import BookAction, MatchResult, SubmissionResult

logger = setup_logger(__name__)


class NoRootFolder(SubmissionError):
    code = "no_root_folder"


class AuthorExistsButNotFound(SubmissionError):
    code = "author_exists_not_found"


class BookshelfRequestFailed(SubmissionError):
    """Transport or unexpected HTTP failure during submission."""

    def __init__(self, message: str, error: BookshelfError):
        super().__init__(message)
        self.error = error


class AcquisitionSubmitter:
    """Ensures an author and one specific book are registered and monitored."""

    def __init__(self, client: BookshelfClient, metadata_profile_id: int = 1):
        self.client = client
        self.metadata_profile_id = metadata_profile_id
        self._locks_guard = threading.Lock()
        # Entries disappear once no submission holds or waits on the lock.
        self._author_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()

    def _author_lock(self, foreign_author_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._author_locks.get(foreign_author_id)
            if lock is None:
                lock = threading.Lock()
                self._author_locks[foreign_author_id] = lock
            return lock

    def _root_folder_path(self) -> str:
        folders = self.client.get_root_folders()
        if not folders or not folders[0].get("path"):
            raise NoRootFolder("No root folder configured in Bookshelf")
        return folders[0]["path"]

    def submit(self, match: MatchResult, quality_profile_id: int) -> SubmissionResult:
        """Register ``match`` with Bookshelf. Safe to call repeatedly."""
        with self._author_lock(match.foreign_author_id):
            try:
                return self._submit(match, quality_profile_id)
            except BookshelfError as e:
                logger.error(
                    f"Bookshelf submission failed for '{match.title}' by {match.author_name}: "
                    f"{e} {e.body or ''}".rstrip()
                )
                raise BookshelfRequestFailed(f"Bookshelf request failed: {e}", e) from e

    def _submit(self, match: MatchResult, quality_profile_id: int) -> SubmissionResult:
        root_folder_path = self._root_folder_path()

        author_payload = {
            "foreignAuthorId": match.foreign_author_id,
            "authorName": match.author_name,
            "qualityProfileId": quality_profile_id,
            "metadataProfileId": self.metadata_profile_id,
            "monitored": True,
            "rootFolderPath": root_folder_path,
            "addOptions": {
                # Only the requested book; never the author's back catalog.
                "monitor": "none",
                "searchForMissingBooks": True,
                "monitored": True,
                "booksToMonitor": [match.foreign_book_id],
            },
        }

        created_author = False
        try:
            author = self.client.add_author(author_payload)
            created_author = True
            logger.info(f"Added author {match.author_name} to Bookshelf (id={author.get('id')})")
        except BookshelfError as e:
            if e.kind != BookshelfErrorKind.ALREADY_EXISTS:
                raise
            logger.info(
                f"Author {match.author_name} ({match.foreign_author_id}) already exists, "
                "looking up existing author"
            )
            author = self._existing_author(match)
            self._ensure_author_monitored(author, quality_profile_id)

        author_id = author.get("id")
        if author_id is None:
            raise AuthorExistsButNotFound(
                f"Bookshelf did not return an id for author {match.author_name}"
            )

        if created_author:
            self._refresh_author(author_id)

        book_action = self._ensure_book_monitored(match, author)
        logger.info(
            f"Author {match.author_name} (id={author_id}) ready for '{match.title}': "
            f"{book_action.value}"
        )
        return SubmissionResult(
            author_id=int(author_id),
            foreign_author_id=match.foreign_author_id,
            foreign_book_id=match.foreign_book_id,
            created_author=created_author,
            book_action=book_action,
        )

    def _existing_author(self, match: MatchResult) -> Dict[str, Any]:
        for candidate in self.client.lookup_author(match.author_name):
            if (
                str(candidate.get("foreignAuthorId")) == match.foreign_author_id
                and candidate.get("id") is not None
            ):
                return candidate
        logger.error(f"Author {match.author_name} exists but could not be found in lookup")
        raise AuthorExistsButNotFound(f"Author exists but could not be found: {match.author_name}")

    def _ensure_author_monitored(self, author: Dict[str, Any], quality_profile_id: int) -> None:
        if author.get("monitored") and author.get("qualityProfileId") == quality_profile_id:
            return
        logger.info(
            f"Updating existing author {author.get('id')}: monitored=True, "
            f"qualityProfileId={quality_profile_id}"
        )
        author["monitored"] = True
        author["qualityProfileId"] = quality_profile_id
        self.client.update_author(author)

    def _refresh_author(self, author_id: int) -> None:
        try:
            self.client.refresh_author(author_id)
        except BookshelfError as e:
            logger.warning(f"Failed to trigger refresh for author {author_id}: {e}")

    def _ensure_book_monitored(self, match: MatchResult, author: Dict[str, Any]) -> BookAction:
        author_id = author["id"]
        try:
            books = self.client.get_books(author_id)
        except BookshelfError as e:
            logger.error(f"Could not list books for author {author_id}, book not verified: {e}")
            return BookAction.VERIFY_FAILED

        existing = _find_book(books, match.foreign_book_id)
        if existing is None:
            return self._add_book(match, author)
        if existing.get("monitored"):
            return BookAction.ALREADY_MONITORED

        logger.info(f"Monitoring existing book {existing.get('id')} '{existing.get('title')}'")
        existing["monitored"] = True
        try:
            self.client.update_book(existing)
        except BookshelfError as e:
            logger.error(f"Failed to monitor book {existing.get('id')}: {e}")
            return BookAction.MONITOR_FAILED
        return BookAction.MONITORED

    def _add_book(self, match: MatchResult, author: Dict[str, Any]) -> BookAction:
        payload = {
            "title": match.title,
            "authorId": author["id"],
            "foreignBookId": match.foreign_book_id,
            "monitored": True,
            "editions": match.editions,
            "addOptions": {"searchForNewBook": True},
            "author": {
                "id": author["id"],
                "foreignAuthorId": match.foreign_author_id,
                "authorName": match.author_name,
                "path": author.get("path"),
                "rootFolderPath": author.get("rootFolderPath"),
            },
        }
        logger.info(
            f"Book {match.foreign_book_id} missing from author {author['id']}, adding explicitly"
        )
        try:
            added = self.client.add_book(payload)
        except BookshelfError as e:
            # Bookshelf's own author refresh may still pick the book up later.
            logger.error(
                f"Failed to explicitly add book {match.foreign_book_id} to Bookshelf: "
                f"{e} {e.body or ''}".rstrip()
            )
            return BookAction.ADD_FAILED
        logger.info(f"Book explicitly added to Bookshelf: id={added.get('id')} '{added.get('title')}'")
        return BookAction.ADDED


def _find_book(books: Any, foreign_book_id: str) -> Optional[Dict[str, Any]]:
    for book in books or []:
        if isinstance(book, dict) and str(book.get("foreignBookId")) == foreign_book_id:
            return book
    return None
