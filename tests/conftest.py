"""Shared fixtures: an in-memory stand-in for a Bookshelf server."""

import copy
import os
import tempfile

import pytest

from bookwarden.bookshelf.api import AUTHOR_EXISTS_VALIDATOR, BookshelfError, BookshelfErrorKind
from bookwarden.core.request_db import RequestDB


class FakeBookshelfClient:
    """Stateful fake with the same surface as ``BookshelfClient``.

    ``failures`` maps a method name to an exception (raised on every call) or
    a list of exceptions/None consumed one per call.
    """

    def __init__(self):
        self.calls = []
        self.author_lookup = []
        self.book_lookup = {}
        self.root_folders = [{"id": 1, "path": "/books"}]
        self.quality_profiles = [{"id": 1, "name": "eBook"}, {"id": 2, "name": "Spoken"}]
        self.authors = {}
        self.books = {}
        self.book_files = {}
        self.failures = {}
        self._next_id = 100

    # helpers for tests

    @staticmethod
    def make_book(foreign_book_id, title, author_name, foreign_author_id, editions=None, **extra):
        book = {
            "foreignBookId": foreign_book_id,
            "title": title,
            "author": {"authorName": author_name, "foreignAuthorId": foreign_author_id},
            "editions": editions if editions is not None else [
                {"foreignEditionId": f"{foreign_book_id}-e1", "title": title},
            ],
        }
        book.update(extra)
        return book

    def seed_author(self, foreign_author_id, name, *, monitored=True, quality_profile_id=1, books=()):
        """Put an author (and its books) into the fake library."""
        author_id = self._new_id()
        self.authors[foreign_author_id] = {
            "id": author_id,
            "foreignAuthorId": foreign_author_id,
            "authorName": name,
            "monitored": monitored,
            "qualityProfileId": quality_profile_id,
            "path": f"/books/{name}",
        }
        self.books[author_id] = []
        for book in books:
            self.books[author_id].append({"id": self._new_id(), "authorId": author_id, **book})
        return author_id

    def call_names(self):
        return [call[0] for call in self.calls]

    def _new_id(self):
        self._next_id += 1
        return self._next_id

    def _record(self, name, *args):
        self.calls.append((name, *args))
        failure = self.failures.get(name)
        if isinstance(failure, list):
            failure = failure.pop(0) if failure else None
        if failure is not None:
            raise failure

    # client surface

    def test_connection(self):
        self._record("test_connection")
        return True, "Connected to Bookshelf test"

    def lookup_author(self, term):
        self._record("lookup_author", term)
        results = []
        for entry in self.author_lookup:
            result = dict(entry)
            known = self.authors.get(result.get("foreignAuthorId"))
            if known is not None:
                result.update(copy.deepcopy(known))
            results.append(result)
        return results

    def lookup_book(self, term):
        self._record("lookup_book", term)
        return copy.deepcopy(self.book_lookup.get(term, self.book_lookup.get("*", [])))

    def get_root_folders(self):
        self._record("get_root_folders")
        return list(self.root_folders)

    def get_quality_profiles(self):
        self._record("get_quality_profiles")
        return list(self.quality_profiles)

    def get_books(self, author_id=None):
        self._record("get_books", author_id)
        if author_id is None:
            return [copy.deepcopy(b) for books in self.books.values() for b in books]
        return copy.deepcopy(self.books.get(author_id, []))

    def get_book_files(self, book_id):
        self._record("get_book_files", book_id)
        return copy.deepcopy(self.book_files.get(book_id, []))

    def add_author(self, payload):
        self._record("add_author", copy.deepcopy(payload))
        if payload["foreignAuthorId"] in self.authors:
            raise BookshelfError(
                BookshelfErrorKind.ALREADY_EXISTS,
                "HTTP 400 Bad Request",
                status_code=400,
                body=f'[{{"propertyName":"ForeignAuthorId","errorCode":"{AUTHOR_EXISTS_VALIDATOR}"}}]',
            )
        author_id = self.seed_author(
            payload["foreignAuthorId"],
            payload["authorName"],
            monitored=payload.get("monitored", True),
            quality_profile_id=payload["qualityProfileId"],
        )
        return copy.deepcopy(self.authors[payload["foreignAuthorId"]])

    def update_author(self, payload):
        self._record("update_author", copy.deepcopy(payload))
        self.authors[payload["foreignAuthorId"]].update(copy.deepcopy(payload))
        return copy.deepcopy(payload)

    def add_book(self, payload):
        self._record("add_book", copy.deepcopy(payload))
        book = {
            "id": self._new_id(),
            "authorId": payload["authorId"],
            "foreignBookId": payload["foreignBookId"],
            "title": payload["title"],
            "monitored": True,
        }
        self.books.setdefault(payload["authorId"], []).append(book)
        return copy.deepcopy(book)

    def update_book(self, payload):
        self._record("update_book", copy.deepcopy(payload))
        books = self.books.get(payload.get("authorId"), [])
        for index, book in enumerate(books):
            if book["id"] == payload["id"]:
                books[index] = copy.deepcopy(payload)
        return copy.deepcopy(payload)

    def refresh_author(self, author_id):
        self._record("refresh_author", author_id)
        return {"name": "RefreshAuthor", "authorId": author_id}


@pytest.fixture
def fake_bookshelf():
    return FakeBookshelfClient()


@pytest.fixture
def request_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = RequestDB(os.path.join(tmpdir, "bookwarden.db"))
        db.initialize()
        yield db
