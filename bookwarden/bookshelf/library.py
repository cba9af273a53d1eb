"""Full-library lookups with a short-lived in-memory cache."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional

from bookwarden.bookshelf.api import BookshelfClient, BookshelfError
from bookwarden.bookshelf.matching import author_overlaps
from bookwarden.bookshelf.poller import AmbiguousBookStatus, classify_book
from bookwarden.core.logger import setup_logger
from bookwarden.core.models import BookStatus, LibraryStatus

logger = setup_logger(__name__)


class LibraryCache:
    """Caches the full Bookshelf book list for ``ttl_seconds``.

    ``clock`` returns seconds and defaults to ``time.monotonic``; tests pass a
    fake clock to control expiry.
    """

    def __init__(self, ttl_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._books: Optional[List[Dict[str, Any]]] = None
        self._fetched_at = 0.0

    def get(self, fetch: Callable[[], List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        with self._lock:
            now = self._clock()
            if self._books is not None and now - self._fetched_at < self.ttl_seconds:
                logger.debug(
                    f"Using cached Bookshelf library ({len(self._books)} books, "
                    f"age {now - self._fetched_at:.1f}s)"
                )
                return self._books

        books = fetch()
        with self._lock:
            self._books = books
            self._fetched_at = self._clock()
        logger.debug(f"Bookshelf library cache updated ({len(books)} books)")
        return books

    def invalidate(self) -> None:
        with self._lock:
            self._books = None
            self._fetched_at = 0.0


class LibraryStatusChecker:
    """Answers "is this title already in the library, and is it downloaded?"."""

    def __init__(self, client: BookshelfClient, cache: LibraryCache):
        self.client = client
        self.cache = cache

    def check_book_in_library(self, title: str, author_name: str) -> LibraryStatus:
        try:
            books = self.cache.get(self.client.get_books)
        except BookshelfError as e:
            logger.error(f"Failed to fetch books from Bookshelf library: {e}")
            return LibraryStatus(exists=False)

        normalized_title = (title or "").strip().lower()
        if not normalized_title:
            return LibraryStatus(exists=False)

        title_matches = [
            book for book in books
            if isinstance(book, dict) and normalized_title in str(book.get("title") or "").strip().lower()
        ]
        match = next(
            (
                book for book in title_matches
                if author_overlaps((book.get("author") or {}).get("authorName", ""), author_name)
            ),
            None,
        )
        # A single title hit is trusted even when author names are spelled differently.
        if match is None and len(title_matches) == 1:
            match = title_matches[0]
        if match is None:
            logger.info(f"Book not found in Bookshelf library: '{title}' by {author_name}")
            return LibraryStatus(exists=False)

        try:
            status = classify_book(match)
        except AmbiguousBookStatus as e:
            logger.warning(f"Cannot classify library book '{match.get('title')}': {e}")
            return LibraryStatus(exists=True)

        if status != BookStatus.AVAILABLE:
            return LibraryStatus(exists=True, status=status)

        file_count = int((match.get("statistics") or {}).get("bookFileCount") or 0)
        return LibraryStatus(
            exists=True,
            status=status,
            book_file_count=file_count,
            format=self._book_format(match.get("id")),
        )

    def _book_format(self, book_id: Any) -> Optional[str]:
        if book_id is None:
            return None
        try:
            files = self.client.get_book_files(book_id)
        except BookshelfError as e:
            logger.warning(f"Error fetching book file format for book {book_id}: {e}")
            return None
        if not files:
            return None
        return ((files[0].get("quality") or {}).get("quality") or {}).get("name")
