# ═══════════════════════════════════════════════════════════════
# Nova: Announcements
# At most one active row; publishing a new one retires the previous
# ═══════════════════════════════════════════════════════════════
import logging
from datetime import datetime
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from .database import User, Announcement, AnnouncementView
from .errors import NotFound, InvalidArgument, ContentionError
from .ledger import atomic, retry_on_contention

logger = logging.getLogger(__name__)


def _as_dict(a: Announcement, author: str = None) -> dict:
    return {
        "id":                  a.id,
        "title":               a.title,
        "content":             a.content,
        "is_active":           bool(a.is_active),
        "created_by":          a.created_by,
        "created_by_username": author,
        "created_at":          a.created_at,
    }


@retry_on_contention
def create_announcement(db: Session, title: str, content: str, created_by: int = None) -> dict:
    title, content = (title or "").strip(), (content or "").strip()
    if not title or not content:
        raise InvalidArgument("Title and content are required")

    with atomic(db):
        db.query(Announcement).filter(Announcement.is_active.is_(True)).update(
            {Announcement.is_active: False, Announcement.updated_at: datetime.utcnow()},
            synchronize_session=False,
        )
        announcement = Announcement(title=title, content=content, is_active=True, created_by=created_by)
        db.add(announcement)
        try:
            db.flush()
        except IntegrityError as e:
            # another publisher activated a row between our deactivate and insert
            raise ContentionError("Concurrent announcement publish") from e
        result = _as_dict(announcement)

    logger.info(f"Announcement #{result['id']} published by admin {created_by}")
    return result


def get_active_announcement(db: Session):
    row = db.query(Announcement, User.username).outerjoin(
        User, Announcement.created_by == User.id
    ).filter(Announcement.is_active.is_(True)).order_by(
        Announcement.created_at.desc(), Announcement.id.desc()
    ).first()
    if row is None:
        return None
    announcement, author = row
    return _as_dict(announcement, author)


@retry_on_contention
def mark_as_viewed(db: Session, user_id: int, announcement_id: int) -> bool:
    """Record that user_id saw the announcement. Repeated calls just bump viewed_at."""
    with atomic(db):
        if db.get(Announcement, announcement_id) is None:
            raise NotFound(f"Announcement {announcement_id} not found")
        view = db.query(AnnouncementView).filter(
            AnnouncementView.user_id         == user_id,
            AnnouncementView.announcement_id == announcement_id,
        ).first()
        if view:
            view.viewed_at = datetime.utcnow()
        else:
            db.add(AnnouncementView(user_id=user_id, announcement_id=announcement_id))
        try:
            db.flush()
        except IntegrityError as e:
            raise ContentionError("Concurrent view insert") from e
    return True


def has_seen(db: Session, user_id: int, announcement_id: int) -> bool:
    return db.query(AnnouncementView.id).filter(
        AnnouncementView.user_id         == user_id,
        AnnouncementView.announcement_id == announcement_id,
    ).first() is not None


def get_announcement_history(db: Session, limit: int = 10) -> list:
    views = db.query(
        AnnouncementView.announcement_id,
        func.count(AnnouncementView.id).label("view_count"),
    ).group_by(AnnouncementView.announcement_id).subquery()

    rows = db.query(Announcement, User.username, views.c.view_count).outerjoin(
        User, Announcement.created_by == User.id
    ).outerjoin(
        views, views.c.announcement_id == Announcement.id
    ).order_by(Announcement.created_at.desc(), Announcement.id.desc()).limit(limit).all()

    history = []
    for announcement, author, view_count in rows:
        entry = _as_dict(announcement, author)
        entry["view_count"] = view_count or 0
        history.append(entry)
    return history
