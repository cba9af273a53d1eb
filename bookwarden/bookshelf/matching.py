"""Resolve a human-readable title/author into Bookshelf author and book ids.

Matching runs in three stages: author lookup, book lookup (ISBN first, then
title + author), and candidate ranking. Ranking applies the title strategies
in order and takes the first candidate accepted by the strongest strategy,
so an exact title always wins over a substring hit regardless of the order
the metadata provider returned them in.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence

from bookwarden.bookshelf.api import BookshelfClient
from bookwarden.core.logger import setup_logger
from bookwarden.core.models import MatchCandidate, MatchResult, MatchTier

logger = setup_logger(__name__)

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


class SubmissionError(Exception):
    """Base class for failures that end one submission attempt."""

    code = "bookshelf_error"


class AuthorNotFound(SubmissionError):
    code = "author_not_found"


class BookNotFound(SubmissionError):
    code = "book_not_found"


def normalize_title(title: str) -> str:
    """Lower-case, drop the subtitle, strip punctuation and collapse whitespace."""
    normalized = (title or "").lower().split(":", 1)[0].strip()
    normalized = _NON_WORD_RE.sub("", normalized)
    return _WHITESPACE_RE.sub(" ", normalized).strip()


def _contains_either(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return a in b or b in a


class TitleMatchStrategy(ABC):
    """One tier of title similarity."""

    tier: MatchTier

    @abstractmethod
    def matches(self, candidate_title: str, query_title: str) -> bool:
        ...


class ExactTitleStrategy(TitleMatchStrategy):
    tier = MatchTier.EXACT

    def matches(self, candidate_title: str, query_title: str) -> bool:
        return bool(candidate_title) and candidate_title.lower() == query_title.lower()


class NormalizedExactStrategy(TitleMatchStrategy):
    tier = MatchTier.NORMALIZED_EXACT

    def matches(self, candidate_title: str, query_title: str) -> bool:
        normalized = normalize_title(candidate_title)
        return bool(normalized) and normalized == normalize_title(query_title)


class SubstringStrategy(TitleMatchStrategy):
    tier = MatchTier.SUBSTRING

    def matches(self, candidate_title: str, query_title: str) -> bool:
        return _contains_either(candidate_title.lower(), query_title.lower())


class NormalizedSubstringStrategy(TitleMatchStrategy):
    tier = MatchTier.NORMALIZED_SUBSTRING

    def matches(self, candidate_title: str, query_title: str) -> bool:
        return _contains_either(normalize_title(candidate_title), normalize_title(query_title))


DEFAULT_STRATEGIES: tuple[TitleMatchStrategy, ...] = (
    ExactTitleStrategy(),
    NormalizedExactStrategy(),
    SubstringStrategy(),
    NormalizedSubstringStrategy(),
)


def author_overlaps(candidate_author: str, requested_author: str) -> bool:
    """True when either author name contains the other (case-insensitive)."""
    return _contains_either(
        (candidate_author or "").strip().lower(),
        (requested_author or "").strip().lower(),
    )


def rank_candidates(
    books: Iterable[Dict[str, Any]],
    title: str,
    author_name: str,
    strategies: Sequence[TitleMatchStrategy] = DEFAULT_STRATEGIES,
) -> Optional[MatchCandidate]:
    """Pick the best candidate for ``title`` by ``author_name``, or None."""
    candidates = [MatchCandidate(book=book) for book in books if isinstance(book, dict)]
    by_author = [c for c in candidates if author_overlaps(c.author_name, author_name)]

    for strategy in strategies:
        for candidate in by_author:
            if strategy.matches(candidate.title, title):
                candidate.tier = strategy.tier
                return candidate
    return None


def select_editions(book: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Return the editions payload with exactly one monitored edition."""
    editions = book.get("editions") or []
    if editions:
        return [
            {**edition, "monitored": index == 0}
            for index, edition in enumerate(editions)
        ]

    fallback_edition_id = book.get("foreignEditionId") or book.get("foreignBookId")
    logger.info(
        f"No editions in lookup result for {book.get('foreignBookId')}, "
        f"using synthetic edition {fallback_edition_id}"
    )
    return [{
        "foreignEditionId": fallback_edition_id,
        "title": book.get("title"),
        "monitored": True,
    }]


class EntityMatcher:
    """Finds the Bookshelf author and book that correspond to a request."""

    def __init__(
        self,
        client: BookshelfClient,
        strategies: Sequence[TitleMatchStrategy] = DEFAULT_STRATEGIES,
    ):
        self.client = client
        self.strategies = tuple(strategies)

    def _lookup_books(self, title: str, author_name: str, isbn: Optional[str]) -> List[Dict[str, Any]]:
        title_query = f"{title} {author_name}"
        if not isbn:
            return self.client.lookup_book(title_query)

        results = self.client.lookup_book(isbn)
        if results:
            return results
        logger.info(
            f"Book not found by ISBN {isbn}, falling back to title + author search "
            f"for '{title}' by {author_name}"
        )
        return self.client.lookup_book(title_query)

    def match_author_and_book(
        self,
        title: str,
        author_name: str,
        isbn: Optional[str] = None,
    ) -> MatchResult:
        """Resolve external ids for a title/author. Raises AuthorNotFound/BookNotFound."""
        authors = self.client.lookup_author(author_name)
        if not authors:
            logger.error(f"Author not found in Bookshelf metadata: {author_name}")
            raise AuthorNotFound(f"Author not found in metadata provider: {author_name}")

        author = authors[0]
        foreign_author_id = author.get("foreignAuthorId")
        resolved_author_name = author.get("authorName") or author_name

        books = self._lookup_books(title, author_name, isbn)
        candidate = rank_candidates(books, title, author_name, self.strategies)
        if candidate is None:
            logger.error(
                f"Book not found: '{title}' by {author_name} "
                f"(normalized '{normalize_title(title)}', "
                f"searched titles: {[b.get('title') for b in books[:5] if isinstance(b, dict)]})"
            )
            raise BookNotFound(f"Book not found in metadata: {title}")

        book = candidate.book
        embedded_author = book.get("author") or {}
        book_author_id = embedded_author.get("foreignAuthorId") or book.get("foreignAuthorId")
        if book_author_id and book_author_id != foreign_author_id:
            logger.info(
                f"Using book's author id {book_author_id} instead of lookup id "
                f"{foreign_author_id} for '{candidate.title}'"
            )
            foreign_author_id = book_author_id
            resolved_author_name = candidate.author_name or resolved_author_name

        if not foreign_author_id:
            logger.error(f"No foreign author id for '{candidate.title}' by {author_name}")
            raise AuthorNotFound(f"Author id could not be resolved for: {author_name}")

        logger.debug(
            f"Matched '{title}' to '{candidate.title}' ({candidate.tier.value}), "
            f"foreignBookId={book.get('foreignBookId')}, foreignAuthorId={foreign_author_id}"
        )
        return MatchResult(
            foreign_author_id=str(foreign_author_id),
            author_name=resolved_author_name,
            foreign_book_id=str(book.get("foreignBookId")),
            title=candidate.title,
            editions=select_editions(book),
            book=book,
            tier=candidate.tier,
        )
