"""Tests for the library cache and library status checks."""

from bookwarden.bookshelf.api import BookshelfError, BookshelfErrorKind
from bookwarden.bookshelf.library import LibraryCache, LibraryStatusChecker
from bookwarden.core.models import BookStatus


class _FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_cache_reuses_until_ttl_expires():
    clock = _FakeClock()
    cache = LibraryCache(ttl_seconds=60, clock=clock)
    fetches = []

    def fetch():
        fetches.append(clock.now)
        return [{"id": len(fetches)}]

    assert cache.get(fetch) == [{"id": 1}]
    clock.now += 59
    assert cache.get(fetch) == [{"id": 1}]
    clock.now += 2
    assert cache.get(fetch) == [{"id": 2}]
    assert len(fetches) == 2


def test_cache_invalidate_forces_refetch():
    cache = LibraryCache(ttl_seconds=60, clock=_FakeClock())
    results = iter([["first"], ["second"]])

    assert cache.get(lambda: next(results)) == ["first"]
    cache.invalidate()
    assert cache.get(lambda: next(results)) == ["second"]


def _seed(fake_bookshelf):
    author_id = fake_bookshelf.seed_author(
        "A1",
        "Jane Doe",
        books=[
            {
                "foreignBookId": "b1",
                "title": "The Hobbit",
                "author": {"authorName": "Jane Doe"},
                "statistics": {"bookFileCount": 1},
            },
            {
                "foreignBookId": "b2",
                "title": "Dune",
                "author": {"authorName": "Jane Doe"},
                "statistics": {"bookFileCount": 0},
                "grabbed": True,
            },
        ],
    )
    return fake_bookshelf.books[author_id]


def test_available_book_reports_file_format(fake_bookshelf):
    books = _seed(fake_bookshelf)
    fake_bookshelf.book_files[books[0]["id"]] = [{"quality": {"quality": {"name": "EPUB"}}}]
    checker = LibraryStatusChecker(fake_bookshelf, LibraryCache(clock=_FakeClock()))

    status = checker.check_book_in_library("the hobbit", "Jane Doe")

    assert status.exists is True
    assert status.status == BookStatus.AVAILABLE
    assert status.book_file_count == 1
    assert status.format == "EPUB"


def test_downloading_book(fake_bookshelf):
    _seed(fake_bookshelf)
    checker = LibraryStatusChecker(fake_bookshelf, LibraryCache(clock=_FakeClock()))

    status = checker.check_book_in_library("Dune", "J. Doe")

    # Author names differ, but a single title hit is trusted.
    assert status.exists is True
    assert status.status == BookStatus.DOWNLOADING
    assert status.format is None


def test_unknown_book(fake_bookshelf):
    _seed(fake_bookshelf)
    checker = LibraryStatusChecker(fake_bookshelf, LibraryCache(clock=_FakeClock()))

    assert checker.check_book_in_library("Neuromancer", "William Gibson").exists is False


def test_library_scan_is_cached_between_checks(fake_bookshelf):
    _seed(fake_bookshelf)
    checker = LibraryStatusChecker(fake_bookshelf, LibraryCache(clock=_FakeClock()))

    checker.check_book_in_library("Dune", "Jane Doe")
    checker.check_book_in_library("The Hobbit", "Jane Doe")

    assert fake_bookshelf.call_names().count("get_books") == 1


def test_bookshelf_error_degrades_to_not_found(fake_bookshelf):
    fake_bookshelf.failures["get_books"] = BookshelfError(BookshelfErrorKind.TIMEOUT, "Request timed out")
    checker = LibraryStatusChecker(fake_bookshelf, LibraryCache(clock=_FakeClock()))

    assert checker.check_book_in_library("Dune", "Jane Doe").exists is False
