"""In-app and Apprise notification dispatch for request events."""

from __future__ import annotations

import sqlite3
from concurrent.futures import Executor, ThreadPoolExecutor
from enum import Enum
from typing import Any, Iterable, Optional, TYPE_CHECKING
from urllib.parse import urlsplit

import apprise

from bookwarden.core.config import Config, config as app_config
from bookwarden.core.logger import setup_logger

if TYPE_CHECKING:
    from bookwarden.core.request_db import RequestDB

logger = setup_logger(__name__)

_ROUTE_EVENT_ALL = "all"
_APPRISE_APP_ID = "Bookwarden"
_APPRISE_APP_DESC = "Bookwarden notifications"
USER_ROUTES_SETTING = "NOTIFICATION_ROUTES"


class NotificationEvent(str, Enum):
    """Notification kinds emitted by the request lifecycle."""

    REQUEST_SUBMITTED = "request_submitted"
    REQUEST_APPROVED = "request_approved"
    REQUEST_DECLINED = "request_declined"
    REQUEST_AVAILABLE = "request_available"
    BOOKSHELF_ERROR = "bookshelf_error"


def _parse_event(kind: Any) -> NotificationEvent:
    if isinstance(kind, NotificationEvent):
        return kind
    try:
        return NotificationEvent(str(kind or "").strip().lower())
    except ValueError:
        raise ValueError(f"Invalid notification kind: {kind}")


def _normalize_urls(value: Any) -> list[str]:
    if value is None:
        return []

    raw_values: list[Any]
    if isinstance(value, list):
        raw_values = value
    elif isinstance(value, str):
        raw_values = [segment for part in value.splitlines() for segment in part.split(",")]
    else:
        raw_values = [value]

    normalized: list[str] = []
    seen: set[str] = set()
    for raw_url in raw_values:
        # Copy-pasted URLs can carry zero-width or non-breaking characters.
        url = str(raw_url or "").encode("ascii", errors="ignore").decode("ascii").strip()
        if not url or url in seen:
            continue
        seen.add(url)
        normalized.append(url)
    return normalized


def _normalize_routes(value: Any) -> list[dict[str, str]]:
    """Normalize ``[{"event": ..., "url": ...}]`` route rows, dropping invalid ones."""
    if not isinstance(value, list):
        return []

    allowed_events = {_ROUTE_EVENT_ALL, *(event.value for event in NotificationEvent)}
    normalized: list[dict[str, str]] = []
    seen: set[tuple[str, str]] = set()

    for row in value:
        if not isinstance(row, dict):
            continue
        url = str(row.get("url") or "").strip()
        if not url:
            continue

        raw_events = row.get("event")
        event_values = raw_events if isinstance(raw_events, (list, tuple, set)) else [raw_events]
        row_events: list[str] = []
        for raw_event in event_values:
            event = str(raw_event or "").strip().lower()
            if event in allowed_events and event not in row_events:
                row_events.append(event)
        if _ROUTE_EVENT_ALL in row_events:
            row_events = [_ROUTE_EVENT_ALL]

        for event in row_events:
            key = (event, url)
            if key in seen:
                continue
            seen.add(key)
            normalized.append({"event": event, "url": url})

    return normalized


def _resolve_route_urls_for_event(
    routes: list[dict[str, str]],
    event: NotificationEvent,
) -> list[str]:
    selected: list[str] = []
    for row in routes:
        if row.get("event") not in {_ROUTE_EVENT_ALL, event.value}:
            continue
        url = row.get("url", "")
        if url and url not in selected:
            selected.append(url)
    return selected


def _resolve_notify_type(event: NotificationEvent) -> Any:
    mapping = {
        NotificationEvent.REQUEST_SUBMITTED: apprise.NotifyType.INFO,
        NotificationEvent.REQUEST_APPROVED: apprise.NotifyType.SUCCESS,
        NotificationEvent.REQUEST_DECLINED: apprise.NotifyType.WARNING,
        NotificationEvent.REQUEST_AVAILABLE: apprise.NotifyType.SUCCESS,
        NotificationEvent.BOOKSHELF_ERROR: apprise.NotifyType.FAILURE,
    }
    return mapping[event]


def _create_apprise_client() -> Any:
    asset = apprise.AppriseAsset(app_id=_APPRISE_APP_ID, app_desc=_APPRISE_APP_DESC)
    return apprise.Apprise(asset=asset)


def dispatch_to_apprise(
    urls: Iterable[str],
    *,
    title: str,
    body: str,
    notify_type: Any,
) -> dict[str, Any]:
    """Send one message to each URL. Returns a ``{"success", "message"}`` summary."""
    normalized_urls = _normalize_urls(list(urls))
    if not normalized_urls:
        return {"success": False, "message": "No notification URLs configured"}

    delivered = 0
    failures: list[str] = []
    for url in normalized_urls:
        scheme = urlsplit(url).scheme or "unknown"
        client = _create_apprise_client()
        if not client.add(url):
            logger.warning("Apprise rejected notification route URL for scheme '%s'", scheme)
            failures.append(f"{scheme}: route URL rejected by Apprise")
            continue
        try:
            ok = bool(client.notify(title=title, body=body, notify_type=notify_type))
        except Exception as exc:
            logger.warning("Apprise notify raised %s for scheme '%s': %s", type(exc).__name__, scheme, exc)
            failures.append(f"{scheme}: notify raised {type(exc).__name__}: {exc}")
            continue
        if ok:
            delivered += 1
            logger.debug("Notification delivered via %s", scheme)
        else:
            logger.warning("Apprise notify returned False for scheme '%s'", scheme)
            failures.append(f"{scheme}: delivery failed")

    if delivered == 0:
        result: dict[str, Any] = {"success": False, "message": "Notification delivery failed"}
    else:
        message = f"Notification sent to {delivered} URL(s)"
        if failures:
            message += f" ({len(failures)} URL(s) failed)"
        result = {"success": True, "message": message}
    if failures:
        result["details"] = failures
    return result


class Notifier:
    """Stores in-app notifications and fans them out to Apprise routes.

    Apprise sends run on a small thread pool so callers never block on
    third-party services.
    """

    def __init__(
        self,
        request_db: "RequestDB",
        *,
        settings: Config = app_config,
        executor: Optional[Executor] = None,
    ):
        self.request_db = request_db
        self.settings = settings
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="Notify")

    def notify(
        self,
        user_ids: Iterable[int],
        kind: Any,
        subject: str,
        detail: str,
        *,
        link: Optional[str] = None,
    ) -> None:
        """Notify each user in-app and through their personal routes."""
        event = _parse_event(kind)
        for user_id in dict.fromkeys(user_ids):
            try:
                self.request_db.create_notification(
                    user_id=user_id,
                    kind=event.value,
                    title=subject,
                    message=detail,
                    link=link,
                )
            except sqlite3.Error as exc:
                logger.error(f"Failed to store notification for user {user_id}: {exc}")

            routes = _normalize_routes(
                self.request_db.get_user_settings(user_id).get(USER_ROUTES_SETTING, [])
            )
            self._dispatch(event, subject, detail, _resolve_route_urls_for_event(routes, event))

    def notify_admins(self, kind: Any, subject: str, detail: str, *, link: Optional[str] = None) -> None:
        """Notify every admin user plus the global admin routes."""
        event = _parse_event(kind)
        self.notify(self.request_db.list_admin_user_ids(), event, subject, detail, link=link)
        routes = _normalize_routes(self.settings.get("ADMIN_NOTIFICATION_ROUTES", []))
        self._dispatch(event, subject, detail, _resolve_route_urls_for_event(routes, event))

    def _dispatch(self, event: NotificationEvent, subject: str, detail: str, urls: list[str]) -> None:
        if not urls:
            return
        try:
            self._executor.submit(self._dispatch_async, event, subject, detail, urls)
        except RuntimeError as exc:
            logger.warning("Failed to queue notification '%s': %s", event.value, exc)

    @staticmethod
    def _dispatch_async(event: NotificationEvent, subject: str, detail: str, urls: list[str]) -> None:
        result = dispatch_to_apprise(
            urls,
            title=subject,
            body=detail,
            notify_type=_resolve_notify_type(event),
        )
        if not result.get("success", False):
            logger.warning("Notification failed for event '%s': %s", event.value, result.get("message"))


def send_test_notification(urls: list[str]) -> dict[str, Any]:
    """Send a synchronous test notification to the provided URLs."""
    return dispatch_to_apprise(
        urls,
        title="Bookwarden Test Notification",
        body="Notifications are configured correctly.",
        notify_type=apprise.NotifyType.INFO,
    )
