"""Request lifecycle helpers and service-level validation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, TYPE_CHECKING

from bookwarden.core.logger import setup_logger
from bookwarden.core.utils import now_timestamp

logger = setup_logger(__name__)

VALID_REQUEST_STATUSES = frozenset({"pending", "approved", "declined", "processing", "available"})
TERMINAL_REQUEST_STATUSES = frozenset({"declined", "available"})
AUTHOR_BOUND_STATUSES = frozenset({"processing", "available"})
ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"approved", "processing", "declined"}),
    "approved": frozenset({"processing", "declined"}),
    "processing": frozenset({"available"}),
    "declined": frozenset(),
    "available": frozenset(),
}
MAX_REQUEST_NOTE_LENGTH = 1000


if TYPE_CHECKING:
    from bookwarden.core.notifications import Notifier
    from bookwarden.core.request_db import RequestDB


class BookCatalog(Protocol):
    """Read access to the internal book metadata cache."""

    def get_book_by_id(self, book_id: str) -> Optional[Dict[str, Any]]:
        ...


class RequestServiceError(ValueError):
    """Structured error raised by request lifecycle service methods."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 400,
        code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


def normalize_request_status(status: Any) -> str:
    """Validate and normalize request status values."""
    if not isinstance(status, str):
        raise ValueError(f"Invalid request status: {status}")
    normalized = status.strip().lower()
    if normalized not in VALID_REQUEST_STATUSES:
        raise ValueError(f"Invalid request status: {status}")
    return normalized


def validate_status_transition(current_status: Any, new_status: Any) -> tuple[str, str]:
    """Validate request status transitions. Re-writing the same status is allowed."""
    current = normalize_request_status(current_status)
    new = normalize_request_status(new_status)
    if new == current:
        return current, new
    if current in TERMINAL_REQUEST_STATUSES:
        raise ValueError("Terminal request statuses are immutable")
    if new not in ALLOWED_TRANSITIONS[current]:
        raise ValueError(f"Invalid request status transition: {current} -> {new}")
    return current, new


def normalize_note(note: Any) -> str | None:
    """Validate request notes and normalize empty strings to None."""
    if note is None:
        return None
    if not isinstance(note, str):
        raise RequestServiceError("note must be a string", status_code=400)
    normalized = note.strip()
    if len(normalized) > MAX_REQUEST_NOTE_LENGTH:
        raise RequestServiceError(
            f"note must be <= {MAX_REQUEST_NOTE_LENGTH} characters",
            status_code=400,
        )
    return normalized or None


def _normalize_quality_profile_id(value: Any) -> int:
    if isinstance(value, bool):
        raise RequestServiceError("quality_profile_id must be an integer", status_code=400)
    try:
        profile_id = int(value)
    except (TypeError, ValueError):
        raise RequestServiceError("quality_profile_id must be an integer", status_code=400)
    if profile_id < 1:
        raise RequestServiceError("quality_profile_id must be positive", status_code=400)
    return profile_id


def create_request(
    request_db: "RequestDB",
    *,
    user_id: int,
    book_id: Any,
    quality_profile_id: Any,
    note: Any = None,
    catalog: Optional[BookCatalog] = None,
    notifier: Optional["Notifier"] = None,
) -> Dict[str, Any]:
    """Create a pending request after service-level validation."""
    normalized_book_id = str(book_id or "").strip()
    if not normalized_book_id:
        raise RequestServiceError("book_id is required", status_code=400)
    normalized_profile_id = _normalize_quality_profile_id(quality_profile_id)
    normalized_note = normalize_note(note)

    book = None
    if catalog is not None:
        book = catalog.get_book_by_id(normalized_book_id)
        if book is None:
            raise RequestServiceError("Book not found", status_code=404, code="book_not_found")

    duplicates = request_db.list_requests(user_id=user_id, status="pending", book_id=normalized_book_id)
    if duplicates:
        raise RequestServiceError(
            "You already have a pending request for this book",
            status_code=409,
            code="duplicate_pending_request",
        )

    try:
        created = request_db.create_request(
            user_id=user_id,
            book_id=normalized_book_id,
            quality_profile_id=normalized_profile_id,
            note=normalized_note,
        )
    except ValueError as exc:
        # Lost a race with a concurrent create for the same book.
        raise RequestServiceError(str(exc), status_code=409, code="duplicate_pending_request") from exc

    logger.info(
        f"Book request created: id={created['id']} user_id={user_id} "
        f"book_id={normalized_book_id} quality_profile_id={normalized_profile_id}"
    )

    if notifier is not None:
        user = request_db.get_user(user_id) or {}
        _notify_safely(
            notifier.notify_admins,
            "request_submitted",
            "New Book Request",
            f'{user.get("username") or "A user"} requested '
            f'"{(book or {}).get("title") or normalized_book_id}"',
        )
    return created


def ensure_request_access(
    request_db: "RequestDB",
    *,
    request_id: int,
    actor_user_id: int | None,
    is_admin: bool,
) -> Dict[str, Any]:
    """Get request by ID and enforce ownership for non-admin actors."""
    request_row = request_db.get_request(request_id)
    if request_row is None:
        raise RequestServiceError("Request not found", status_code=404)

    if not is_admin:
        if actor_user_id is None or request_row["user_id"] != actor_user_id:
            raise RequestServiceError("Forbidden", status_code=403)

    return request_row


def decline_request(
    request_db: "RequestDB",
    *,
    request_id: int,
    admin_user_id: int,
    admin_note: Any = None,
    notifier: Optional["Notifier"] = None,
    catalog: Optional[BookCatalog] = None,
) -> Dict[str, Any]:
    """Decline a pending or approved request as admin."""
    request_row = ensure_request_access(
        request_db,
        request_id=request_id,
        actor_user_id=admin_user_id,
        is_admin=True,
    )
    if request_row["status"] not in ("pending", "approved"):
        raise RequestServiceError(
            f"Request cannot be declined from status {request_row['status']}",
            status_code=409,
            code="stale_transition",
        )

    normalized_admin_note = None
    if admin_note is not None:
        if not isinstance(admin_note, str):
            raise RequestServiceError("admin_note must be a string", status_code=400)
        normalized_admin_note = admin_note.strip() or None

    try:
        updated = request_db.update_request(
            request_id,
            expected_current_status=request_row["status"],
            status="declined",
            admin_note=normalized_admin_note,
            processed_by=admin_user_id,
            processed_at=now_timestamp(),
        )
    except ValueError as exc:
        raise RequestServiceError(str(exc), status_code=409, code="stale_transition") from exc

    logger.info(f"Request {request_id} declined by admin {admin_user_id}")

    if notifier is not None:
        title = resolve_book_title(catalog, updated["book_id"])
        note_line = f"\nNote: {normalized_admin_note}" if normalized_admin_note else ""
        _notify_safely(
            notifier.notify,
            [updated["user_id"]],
            "request_declined",
            "Book Request Declined",
            f'Your request for "{title}" was declined.{note_line}',
        )
    return updated


def delete_request(
    request_db: "RequestDB",
    *,
    request_id: int,
    actor_user_id: int,
    is_admin: bool,
    notifier: Optional["Notifier"] = None,
    catalog: Optional[BookCatalog] = None,
) -> Dict[str, Any]:
    """Delete a request. Owners may only delete their own pending requests."""
    request_row = ensure_request_access(
        request_db,
        request_id=request_id,
        actor_user_id=actor_user_id,
        is_admin=is_admin,
    )
    if not is_admin and request_row["status"] != "pending":
        raise RequestServiceError("Can only delete pending requests", status_code=400)

    if not request_db.delete_request(request_id):
        raise RequestServiceError("Request not found", status_code=404)
    logger.info(f"Request {request_id} deleted by user {actor_user_id}")

    if notifier is not None and request_row["status"] == "pending":
        user = request_db.get_user(request_row["user_id"]) or {}
        _notify_safely(
            notifier.notify_admins,
            "request_declined",
            "Book Request Cancelled",
            f'{user.get("username") or "A user"} cancelled the request for '
            f'"{resolve_book_title(catalog, request_row["book_id"])}"',
        )
    return request_row


def get_user_request_stats(request_db: "RequestDB", user_id: int) -> Dict[str, int]:
    """Per-status request counts for one user, plus a total."""
    counts = request_db.count_requests_by_status(user_id)
    stats = {status: counts.get(status, 0) for status in sorted(VALID_REQUEST_STATUSES)}
    stats["total"] = sum(counts.values())
    return stats


def list_stuck_requests(
    request_db: "RequestDB",
    *,
    older_than: timedelta,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Processing requests not resolved within ``older_than``.

    Processing requests never expire on their own; this only surfaces them to
    operators, who decide whether to decline or delete.
    """
    cutoff = (now or datetime.now(timezone.utc)) - older_than
    stuck = []
    for row in request_db.list_requests(status="processing"):
        processed_at = _parse_timestamp(row.get("processed_at") or row.get("requested_at"))
        if processed_at is not None and processed_at < cutoff:
            stuck.append(row)
    return stuck


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        # SQLite CURRENT_TIMESTAMP is UTC without an offset.
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_book_title(catalog: Optional[BookCatalog], book_id: str) -> str:
    if catalog is None:
        return str(book_id)
    try:
        book = catalog.get_book_by_id(book_id)
    except Exception as exc:
        logger.warning(f"Book lookup failed for {book_id}: {exc}")
        return str(book_id)
    return str((book or {}).get("title") or book_id)


def _notify_safely(send, *args: Any) -> None:
    # Called after the transition is committed.
    try:
        send(*args)
    except Exception as exc:
        logger.error(f"Notification via {getattr(send, '__name__', send)} failed: {exc}")
