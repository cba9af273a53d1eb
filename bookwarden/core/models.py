"""Data structures shared by the matcher, submitter and poller."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class RequestStatus(str, Enum):
    """Lifecycle states of a book request."""
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    PROCESSING = "processing"
    AVAILABLE = "available"


class MatchTier(str, Enum):
    """Title similarity tiers, strongest first."""
    EXACT = "exact"
    NORMALIZED_EXACT = "normalized_exact"
    SUBSTRING = "substring"
    NORMALIZED_SUBSTRING = "normalized_substring"
    NONE = "none"


class BookStatus(str, Enum):
    """Fulfillment state of a book inside the external library."""
    AVAILABLE = "available"
    DOWNLOADING = "downloading"
    MISSING = "missing"


class BookAction(str, Enum):
    """What the submitter had to do to get the matched book monitored."""
    ALREADY_MONITORED = "already_monitored"
    MONITORED = "monitored"
    ADDED = "added"
    ADD_FAILED = "add_failed"
    MONITOR_FAILED = "monitor_failed"
    VERIFY_FAILED = "verify_failed"


@dataclass
class MatchCandidate:
    """A lookup result paired with its title similarity tier."""
    book: Dict[str, Any]
    tier: MatchTier = MatchTier.NONE

    @property
    def title(self) -> str:
        return str(self.book.get("title") or "")

    @property
    def author_name(self) -> str:
        author = self.book.get("author") or {}
        return str(author.get("authorName") or self.book.get("authorName") or "")


@dataclass
class MatchResult:
    """External identifiers resolved for one title/author pair."""
    foreign_author_id: str
    author_name: str
    foreign_book_id: str
    title: str
    editions: List[Dict[str, Any]]
    book: Dict[str, Any] = field(default_factory=dict)
    tier: MatchTier = MatchTier.NONE

    @property
    def edition_id(self) -> Optional[str]:
        for edition in self.editions:
            if edition.get("monitored"):
                return edition.get("foreignEditionId")
        return None


@dataclass
class SubmissionResult:
    """Outcome of registering a matched book with the external system."""
    author_id: int
    foreign_author_id: str
    foreign_book_id: str
    created_author: bool
    book_action: BookAction

    @property
    def degraded(self) -> bool:
        return self.book_action in (
            BookAction.ADD_FAILED,
            BookAction.MONITOR_FAILED,
            BookAction.VERIFY_FAILED,
        )


@dataclass
class PollDetail:
    """Per-request outcome of one poll pass."""
    request_id: int
    book_title: str
    old_status: str
    new_status: str
    book_status: Optional[BookStatus] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "book_title": self.book_title,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "book_status": self.book_status.value if self.book_status else None,
            "error": self.error,
        }


@dataclass
class PollSummary:
    checked: int = 0
    updated: int = 0
    errors: int = 0
    details: List[PollDetail] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "updated": self.updated,
            "errors": self.errors,
            "details": [detail.to_dict() for detail in self.details],
        }


@dataclass
class LibraryStatus:
    """Whether a title already exists in the external library, and its state."""
    exists: bool
    status: Optional[BookStatus] = None
    book_file_count: int = 0
    format: Optional[str] = None
