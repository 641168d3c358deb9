"""
Tests for announcements (single active row)
"""

import pytest

from nova.database import Announcement
from nova.errors import InvalidArgument, NotFound
from nova.announcements import (
    create_announcement,
    get_active_announcement,
    mark_as_viewed,
    has_seen,
    get_announcement_history,
)


class TestAnnouncements:
    """Publishing and viewing."""

    def test_new_announcement_replaces_active(self, db, make_user):
        """Only the latest announcement stays active."""
        admin = make_user(is_admin=True)
        create_announcement(db, "Welcome", "Tier 25 is live", admin.id)
        latest = create_announcement(db, "Maintenance", "Back at 03:00", admin.id)

        active = get_active_announcement(db)

        assert active["id"] == latest["id"]
        assert active["created_by_username"] == admin.username
        assert db.query(Announcement).filter(Announcement.is_active.is_(True)).count() == 1

    def test_no_active_announcement(self, db):
        assert get_active_announcement(db) is None

    def test_title_and_content_required(self, db):
        with pytest.raises(InvalidArgument):
            create_announcement(db, "  ", "content")

    def test_mark_as_viewed_is_idempotent(self, db, make_user):
        """Viewing twice keeps a single view row."""
        user = make_user()
        announcement = create_announcement(db, "Welcome", "Hello")
        assert not has_seen(db, user.id, announcement["id"])

        mark_as_viewed(db, user.id, announcement["id"])
        mark_as_viewed(db, user.id, announcement["id"])

        assert has_seen(db, user.id, announcement["id"])
        history = get_announcement_history(db)
        assert history[0]["view_count"] == 1

    def test_view_unknown_announcement(self, db, make_user):
        with pytest.raises(NotFound):
            mark_as_viewed(db, make_user().id, 9999)

    def test_history_counts_views(self, db, make_user):
        """History is newest first with per-announcement view counts."""
        old = create_announcement(db, "Old", "First")
        new = create_announcement(db, "New", "Second")
        for _ in range(3):
            mark_as_viewed(db, make_user().id, old["id"])

        history = get_announcement_history(db, limit=10)

        assert [a["id"] for a in history] == [new["id"], old["id"]]
        assert history[1]["view_count"] == 3
        assert history[1]["is_active"] is False
        assert history[0]["view_count"] == 0
