"""Tests for idempotent author/book registration."""

import gc

import pytest

from bookwarden.bookshelf.api import BookshelfError, BookshelfErrorKind
from bookwarden.bookshelf.matching import select_editions
from bookwarden.bookshelf.submitter import (
    AcquisitionSubmitter,
    AuthorExistsButNotFound,
    BookshelfRequestFailed,
    NoRootFolder,
)
from bookwarden.core.models import BookAction, MatchResult


def _match(foreign_author_id="A1", foreign_book_id="B1"):
    book = {
        "foreignBookId": foreign_book_id,
        "title": "The Hobbit",
        "editions": [{"foreignEditionId": "E1"}, {"foreignEditionId": "E2"}],
    }
    return MatchResult(
        foreign_author_id=foreign_author_id,
        author_name="Jane Doe",
        foreign_book_id=foreign_book_id,
        title="The Hobbit",
        editions=select_editions(book),
        book=book,
    )


def _http_error(status_code=500):
    return BookshelfError(BookshelfErrorKind.HTTP, f"HTTP {status_code}", status_code=status_code, body="boom")


@pytest.fixture
def with_lookup(fake_bookshelf):
    fake_bookshelf.author_lookup = [{"foreignAuthorId": "A1", "authorName": "Jane Doe"}]
    return fake_bookshelf


def test_new_author_is_added_with_single_book_monitor(with_lookup):
    result = AcquisitionSubmitter(with_lookup, metadata_profile_id=3).submit(_match(), 2)

    add_call = next(call for call in with_lookup.calls if call[0] == "add_author")
    payload = add_call[1]
    assert payload["rootFolderPath"] == "/books"
    assert payload["qualityProfileId"] == 2
    assert payload["metadataProfileId"] == 3
    assert payload["addOptions"]["monitor"] == "none"
    assert payload["addOptions"]["booksToMonitor"] == ["B1"]
    assert result.created_author is True
    assert result.book_action == BookAction.ADDED
    assert "refresh_author" in with_lookup.call_names()


def test_explicit_book_add_payload(with_lookup):
    AcquisitionSubmitter(with_lookup).submit(_match(), 1)

    payload = next(call for call in with_lookup.calls if call[0] == "add_book")[1]
    assert payload["foreignBookId"] == "B1"
    assert payload["addOptions"] == {"searchForNewBook": True}
    assert [e["monitored"] for e in payload["editions"]] == [True, False]
    assert payload["author"]["foreignAuthorId"] == "A1"


def test_submitting_twice_is_idempotent(with_lookup):
    submitter = AcquisitionSubmitter(with_lookup)

    first = submitter.submit(_match(), 1)
    second = submitter.submit(_match(), 1)

    assert first.author_id == second.author_id
    assert len(with_lookup.authors) == 1
    books = with_lookup.books[first.author_id]
    assert [b["foreignBookId"] for b in books] == ["B1"]
    assert books[0]["monitored"] is True
    assert second.created_author is False
    assert second.book_action == BookAction.ALREADY_MONITORED
    assert with_lookup.call_names().count("add_book") == 1
    assert with_lookup.call_names().count("refresh_author") == 1


def test_existing_author_gets_monitored_and_profile_updated(with_lookup):
    author_id = with_lookup.seed_author("A1", "Jane Doe", monitored=False, quality_profile_id=1)

    result = AcquisitionSubmitter(with_lookup).submit(_match(), 2)

    assert result.author_id == author_id
    update = next(call for call in with_lookup.calls if call[0] == "update_author")[1]
    assert update["monitored"] is True
    assert update["qualityProfileId"] == 2
    assert "refresh_author" not in with_lookup.call_names()


def test_existing_author_without_changes_is_not_updated(with_lookup):
    with_lookup.seed_author("A1", "Jane Doe", monitored=True, quality_profile_id=1)

    AcquisitionSubmitter(with_lookup).submit(_match(), 1)

    assert "update_author" not in with_lookup.call_names()


def test_unmonitored_existing_book_is_monitored(with_lookup):
    author_id = with_lookup.seed_author(
        "A1", "Jane Doe", books=[{"foreignBookId": "B1", "title": "The Hobbit", "monitored": False}]
    )

    result = AcquisitionSubmitter(with_lookup).submit(_match(), 1)

    assert result.book_action == BookAction.MONITORED
    assert with_lookup.books[author_id][0]["monitored"] is True
    assert "add_book" not in with_lookup.call_names()


def test_author_exists_but_lookup_cannot_find_it(fake_bookshelf):
    fake_bookshelf.seed_author("A1", "Jane Doe")
    fake_bookshelf.author_lookup = []

    with pytest.raises(AuthorExistsButNotFound):
        AcquisitionSubmitter(fake_bookshelf).submit(_match(), 1)


def test_no_root_folder(with_lookup):
    with_lookup.root_folders = []

    with pytest.raises(NoRootFolder):
        AcquisitionSubmitter(with_lookup).submit(_match(), 1)

    assert "add_author" not in with_lookup.call_names()


def test_unexpected_author_error_fails_submission(with_lookup):
    with_lookup.failures["add_author"] = _http_error()

    with pytest.raises(BookshelfRequestFailed) as exc_info:
        AcquisitionSubmitter(with_lookup).submit(_match(), 1)

    assert exc_info.value.error.kind == BookshelfErrorKind.HTTP
    assert exc_info.value.code == "bookshelf_error"


def test_book_add_failure_is_degraded_not_fatal(with_lookup):
    with_lookup.failures["add_book"] = _http_error()

    result = AcquisitionSubmitter(with_lookup).submit(_match(), 1)

    assert result.book_action == BookAction.ADD_FAILED
    assert result.degraded


def test_book_monitor_failure_is_degraded_not_fatal(with_lookup):
    with_lookup.seed_author(
        "A1", "Jane Doe", books=[{"foreignBookId": "B1", "title": "The Hobbit", "monitored": False}]
    )
    with_lookup.failures["update_book"] = _http_error()

    result = AcquisitionSubmitter(with_lookup).submit(_match(), 1)

    assert result.book_action == BookAction.MONITOR_FAILED
    assert result.degraded


def test_refresh_failure_is_ignored(with_lookup):
    with_lookup.failures["refresh_author"] = _http_error()

    result = AcquisitionSubmitter(with_lookup).submit(_match(), 1)

    assert result.created_author is True


def test_unverifiable_book_list_is_degraded_without_blind_add(with_lookup):
    with_lookup.seed_author("A1", "Jane Doe")
    with_lookup.failures["get_books"] = _http_error(503)

    result = AcquisitionSubmitter(with_lookup).submit(_match(), 1)

    assert result.book_action == BookAction.VERIFY_FAILED
    assert result.degraded
    assert "add_book" not in with_lookup.call_names()


def test_author_locks_are_released_after_submission(with_lookup):
    submitter = AcquisitionSubmitter(with_lookup)

    submitter.submit(_match(), 1)
    submitter.submit(_match(foreign_author_id="A1", foreign_book_id="B2"), 1)
    gc.collect()

    assert len(submitter._author_locks) == 0


def test_concurrent_callers_share_one_author_lock(with_lookup):
    submitter = AcquisitionSubmitter(with_lookup)

    first = submitter._author_lock("A1")
    second = submitter._author_lock("A1")

    assert first is second
    assert submitter._author_lock("A2") is not first
