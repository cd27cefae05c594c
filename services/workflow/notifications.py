"""Per-user notification inbox.

Notifications are written by the lifecycle engine; recipients can only read
them and mark them read.
"""

import logging
import math

from services.shared.config import Settings
from services.shared.errors import ForbiddenError, NotFoundError
from services.storage.database import Database
from services.workflow.repository import unit_of_work
from services.workflow.schema import NotificationPage, NotificationView, Pagination, UpdateCount

logger = logging.getLogger(__name__)


def clamp_page(
    page: int | None, limit: int | None, default_limit: int, max_limit: int
) -> tuple[int, int]:
    """Normalise 1-based page and page size to sane bounds."""
    page = max(1, page or 1)
    limit = min(max_limit, max(1, limit or default_limit))
    return page, limit


def build_pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit))


class NotificationService:
    def __init__(self, db: Database, settings: Settings) -> None:
        self.db = db
        self.settings = settings

    def list_notifications(
        self, user_id: str, page: int | None = 1, limit: int | None = None
    ) -> NotificationPage:
        """Newest-first page of a user's notifications with their unread count."""
        page, limit = clamp_page(
            page,
            limit,
            self.settings.notifications_default_limit,
            self.settings.pagination_max_limit,
        )
        with unit_of_work(self.db) as repo:
            items = repo.list_notifications(user_id, offset=(page - 1) * limit, limit=limit)
            total = repo.count_notifications(user_id)
            unread = repo.count_notifications(user_id, unread_only=True)
            return NotificationPage(
                items=[NotificationView.model_validate(n) for n in items],
                unread_count=unread,
                pagination=build_pagination(page, limit, total),
            )

    def mark_read(self, notification_id: str, user_id: str) -> None:
        """Mark one notification read.

        Raises:
            NotFoundError: Notification does not exist
            ForbiddenError: Notification belongs to another user
        """
        with unit_of_work(self.db) as repo:
            notification = repo.get_notification(notification_id)
            if notification is None:
                raise NotFoundError("Notification not found")
            if notification.user_id != user_id:
                raise ForbiddenError("Not your notification")
            repo.mark_notification_read(notification_id)

    def mark_all_read(self, user_id: str) -> UpdateCount:
        with unit_of_work(self.db) as repo:
            updated = repo.mark_all_notifications_read(user_id)
        logger.debug(f"Marked {updated} notifications read for user {user_id}")
        return UpdateCount(updated_count=updated)
