"""Tests for the admin-managed quality profile list."""

import pytest

from bookwarden.core.quality_profiles import (
    list_enabled_quality_profiles,
    reorder_quality_profiles,
    resolve_quality_profile_name,
    sync_quality_profiles,
    update_quality_profile_config,
)
from bookwarden.core.requests_service import RequestServiceError


def test_sync_appends_new_profiles_and_renames_existing(request_db, fake_bookshelf):
    sync_quality_profiles(request_db, fake_bookshelf)
    update_quality_profile_config(request_db, 1, enabled=False)
    fake_bookshelf.quality_profiles = [
        {"id": 1, "name": "eBook (EPUB)"},
        {"id": 2, "name": "Spoken"},
        {"id": 7, "name": "Lossless"},
    ]

    rows = sync_quality_profiles(request_db, fake_bookshelf)

    assert [(r["profile_id"], r["profile_name"], r["enabled"], r["order_index"]) for r in rows] == [
        (1, "eBook (EPUB)", False, 0),
        (2, "Spoken", True, 1),
        (7, "Lossless", True, 2),
    ]


def test_list_enabled_and_reorder(request_db, fake_bookshelf):
    sync_quality_profiles(request_db, fake_bookshelf)

    reorder_quality_profiles(request_db, [2, 1])
    update_quality_profile_config(request_db, 1, enabled=False)

    assert [r["profile_id"] for r in list_enabled_quality_profiles(request_db)] == [2]
    assert [r["profile_id"] for r in request_db.list_quality_profile_configs()] == [2, 1]


def test_reorder_requires_every_profile_once(request_db, fake_bookshelf):
    sync_quality_profiles(request_db, fake_bookshelf)

    with pytest.raises(RequestServiceError):
        reorder_quality_profiles(request_db, [1])
    with pytest.raises(RequestServiceError):
        reorder_quality_profiles(request_db, [1, 1, 2])


def test_update_unknown_profile(request_db):
    with pytest.raises(RequestServiceError) as exc_info:
        update_quality_profile_config(request_db, 99, enabled=True)

    assert exc_info.value.status_code == 404


def test_update_validates_types(request_db, fake_bookshelf):
    sync_quality_profiles(request_db, fake_bookshelf)

    with pytest.raises(RequestServiceError, match="enabled"):
        update_quality_profile_config(request_db, 1, enabled="yes")


def test_resolve_quality_profile_name(request_db, fake_bookshelf):
    sync_quality_profiles(request_db, fake_bookshelf)

    assert resolve_quality_profile_name(request_db, 2) == "Spoken"
    assert resolve_quality_profile_name(request_db, 42) == "Profile 42"
    assert resolve_quality_profile_name(request_db, None) == "Profile None"
