from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from groupgate.models.user import JoinedGroup, User


class UserService:
    """
    User identity and group membership bookkeeping.
    Writes are flushed, not committed: callers own the unit of work.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_telegram_id(self, telegram_id: int) -> User | None:
        return self.db.query(User).filter(User.telegram_id == int(telegram_id)).one_or_none()

    def get_or_create_user(
        self,
        telegram_id: int,
        telegram_username: str | None = None,
        telegram_first_name: str | None = None,
    ) -> User:
        user = self.get_by_telegram_id(telegram_id)
        if user:
            if telegram_username is not None and user.telegram_username != telegram_username:
                user.telegram_username = telegram_username
            if telegram_first_name is not None and user.telegram_first_name != telegram_first_name:
                user.telegram_first_name = telegram_first_name
            return user
        user = User(
            telegram_id=int(telegram_id),
            telegram_username=telegram_username,
            telegram_first_name=telegram_first_name,
        )
        try:
            with self.db.begin_nested():
                self.db.add(user)
        except IntegrityError:
            # Concurrent first contact created it
            return self.get_by_telegram_id(telegram_id)
        return user

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def get_membership(self, user: User, group_id: int) -> JoinedGroup | None:
        return (
            self.db.query(JoinedGroup)
            .filter(JoinedGroup.user_id == user.id, JoinedGroup.group_id == group_id)
            .one_or_none()
        )

    def record_membership(
        self,
        user: User,
        group_id: int,
        group_title: str | None = None,
        joined_at: datetime | None = None,
    ) -> JoinedGroup:
        """Ensure a JoinedGroup row exists; refreshes the title if it changed."""
        membership = self.get_membership(user, group_id)
        if membership:
            if group_title and membership.group_title != group_title:
                membership.group_title = group_title
            return membership
        membership = JoinedGroup(
            user_id=user.id,
            group_id=group_id,
            group_title=group_title,
            joined_at=joined_at or datetime.now(timezone.utc),
        )
        try:
            with self.db.begin_nested():
                self.db.add(membership)
        except IntegrityError:
            return self.get_membership(user, group_id)
        return membership

    def forget_membership(self, user_id: str, group_id: int) -> bool:
        """Drop the JoinedGroup row. Returns False if there was none."""
        deleted = (
            self.db.query(JoinedGroup)
            .filter(JoinedGroup.user_id == user_id, JoinedGroup.group_id == group_id)
            .delete(synchronize_session="fetch")
        )
        return bool(deleted)

    # ------------------------------------------------------------------
    # Subscription prompts
    # ------------------------------------------------------------------

    def can_prompt(self, user: User, interval_seconds: int, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        last = user.last_subscription_prompt_at
        return last is None or now - last >= timedelta(seconds=interval_seconds)

    def mark_prompted(self, user: User, now: datetime | None = None) -> None:
        user.last_subscription_prompt_at = now or datetime.now(timezone.utc)
        self.db.flush()
