"""Admin-managed quality profile list mirrored from Bookshelf."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING

from bookwarden.bookshelf.api import BookshelfClient
from bookwarden.core.logger import setup_logger
from bookwarden.core.requests_service import RequestServiceError

if TYPE_CHECKING:
    from bookwarden.core.request_db import RequestDB

logger = setup_logger(__name__)


def sync_quality_profiles(request_db: "RequestDB", client: BookshelfClient) -> List[Dict[str, Any]]:
    """Pull profiles from Bookshelf.

    New profiles are appended to the end of the ordering and enabled; known
    profiles keep their order and enabled flag but pick up renames.
    """
    remote = client.get_quality_profiles()
    known = {row["profile_id"]: row for row in request_db.list_quality_profile_configs()}

    added = 0
    for profile in remote:
        if not isinstance(profile, dict) or profile.get("id") is None:
            continue
        profile_id = int(profile["id"])
        name = str(profile.get("name") or f"Profile {profile_id}")
        existing = known.get(profile_id)
        if existing is None:
            request_db.upsert_quality_profile_config(profile_id, profile_name=name)
            added += 1
        elif existing["profile_name"] != name:
            request_db.upsert_quality_profile_config(profile_id, profile_name=name)

    logger.info(f"Synced {len(remote)} quality profile(s) from Bookshelf ({added} new)")
    return request_db.list_quality_profile_configs()


def list_enabled_quality_profiles(request_db: "RequestDB") -> List[Dict[str, Any]]:
    return request_db.list_quality_profile_configs(enabled_only=True)


def update_quality_profile_config(
    request_db: "RequestDB",
    profile_id: int,
    *,
    enabled: Optional[bool] = None,
    order_index: Optional[int] = None,
) -> Dict[str, Any]:
    """Toggle or move a single known profile."""
    if enabled is not None and not isinstance(enabled, bool):
        raise RequestServiceError("enabled must be a boolean", status_code=400)
    if order_index is not None and (isinstance(order_index, bool) or not isinstance(order_index, int)):
        raise RequestServiceError("order_index must be an integer", status_code=400)

    if _find_profile(request_db, profile_id) is None:
        raise RequestServiceError("Quality profile not found", status_code=404)
    request_db.upsert_quality_profile_config(profile_id, enabled=enabled, order_index=order_index)
    return _find_profile(request_db, profile_id)


def reorder_quality_profiles(request_db: "RequestDB", profile_ids: Sequence[int]) -> List[Dict[str, Any]]:
    """Apply a full ordering. Every known profile must appear exactly once."""
    known_ids = {row["profile_id"] for row in request_db.list_quality_profile_configs()}
    requested = [int(pid) for pid in profile_ids]
    if len(set(requested)) != len(requested) or set(requested) != known_ids:
        raise RequestServiceError(
            "profile_ids must list every quality profile exactly once",
            status_code=400,
        )
    for index, profile_id in enumerate(requested):
        request_db.upsert_quality_profile_config(profile_id, order_index=index)
    return request_db.list_quality_profile_configs()


def resolve_quality_profile_name(request_db: "RequestDB", profile_id: Any) -> str:
    try:
        row = _find_profile(request_db, int(profile_id))
    except (TypeError, ValueError):
        row = None
    if row is None:
        return f"Profile {profile_id}"
    return str(row["profile_name"])


def _find_profile(request_db: "RequestDB", profile_id: int) -> Optional[Dict[str, Any]]:
    for row in request_db.list_quality_profile_configs():
        if row["profile_id"] == profile_id:
            return row
    return None
