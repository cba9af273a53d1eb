"""Shared utility functions for Bookwarden."""

from datetime import datetime, timezone
from typing import Optional


def normalize_http_url(
    url: Optional[str],
    *,
    default_scheme: str = "http",
    strip_trailing_slash: bool = True,
) -> str:
    """Normalize a configured HTTP URL for requests and links."""
    if not isinstance(url, str):
        return ""

    normalized = url.strip()
    if not normalized:
        return ""

    if (normalized.startswith("\"") and normalized.endswith("\"")) or (
        normalized.startswith("'") and normalized.endswith("'")
    ):
        normalized = normalized[1:-1].strip()
        if not normalized:
            return ""

    if "://" not in normalized:
        scheme = default_scheme.strip().rstrip(":/")
        if scheme:
            normalized = f"{scheme}://{normalized}"

    if strip_trailing_slash:
        normalized = normalized.rstrip("/")

    return normalized


def now_timestamp() -> str:
    """UTC timestamp in the format stored in the request database."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")
