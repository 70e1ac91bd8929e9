"""Per-user notification preferences: opt-outs and quiet hours.

Quiet hours are evaluated against the injected clock in the user's own
timezone. The window ``[start, end)`` wraps past midnight when start > end,
and equal bounds mean the user has no quiet hours.
"""

from datetime import datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from mailqueue.domain.models import (
    NotificationPreference,
    NotificationType,
    preference_field_for,
)
from mailqueue.logging import get_logger
from mailqueue.persistence import Database, PreferenceRepository
from mailqueue.utils.timestamps import Clock, ensure_utc, utc_now

logger = get_logger(__name__, component="preferences")

UTC = ZoneInfo("UTC")


def resolve_timezone(name: str) -> ZoneInfo:
    """Look up an IANA timezone.

    Raises:
        ValueError: If the name is not a known timezone
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: '{name}'") from e


def hour_in_window(hour: int, start: int, end: int) -> bool:
    """Check whether ``hour`` falls in the quiet window ``[start, end)``.

    Example:
        >>> hour_in_window(23, 22, 8), hour_in_window(12, 22, 8)
        (True, False)
    """
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


class PreferenceService:
    """Preference gate consulted before a notification is sent."""

    def __init__(self, database: Database, clock: Clock = utc_now):
        self._database = database
        self._clock = clock

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def should_send(self, user_id: str, notification_type: NotificationType) -> bool:
        """Whether ``user_id`` accepts notifications of this type.

        Users without stored preferences accept everything.
        """
        preference = self.get_preferences(user_id)
        if preference is None:
            return True
        if not preference.email_enabled:
            return False
        return preference.is_type_enabled(notification_type)

    def is_in_quiet_hours(self, user_id: str) -> bool:
        preference = self.get_preferences(user_id)
        if preference is None:
            return False
        local_now = self._local_now(preference)
        return hour_in_window(
            local_now.hour, preference.quiet_hours_start, preference.quiet_hours_end
        )

    def quiet_hours_end(self, user_id: str) -> Optional[datetime]:
        """UTC instant at which the user's current quiet window closes.

        Returns:
            None if the user is not in quiet hours right now
        """
        preference = self.get_preferences(user_id)
        if preference is None:
            return None

        local_now = self._local_now(preference)
        if not hour_in_window(
            local_now.hour, preference.quiet_hours_start, preference.quiet_hours_end
        ):
            return None

        tz = local_now.tzinfo
        end = datetime.combine(local_now.date(), time(preference.quiet_hours_end), tzinfo=tz)
        if end <= local_now:
            end = datetime.combine(
                local_now.date() + timedelta(days=1), time(preference.quiet_hours_end), tzinfo=tz
            )
        return ensure_utc(end)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def get_preferences(self, user_id: str) -> Optional[NotificationPreference]:
        with self._database.session() as session:
            return PreferenceRepository(session).get(user_id)

    def create_or_update_preferences(
        self, preference: NotificationPreference
    ) -> NotificationPreference:
        """Store preferences, replacing any existing ones for the user.

        Raises:
            ValueError: If the timezone is unknown
        """
        resolve_timezone(preference.timezone)
        with self._database.session() as session:
            saved = PreferenceRepository(session).save(preference, self._clock())

        logger.info(
            f"Updated notification preferences for user: {preference.user_id}",
            extra={"event": "preferences.updated", "user_id": preference.user_id},
        )
        return saved

    def create_default_preferences(
        self,
        user_id: str,
        user_email: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> NotificationPreference:
        """Create default preferences for a new user.

        Raises:
            ValueError: If preferences already exist for the user
        """
        with self._database.session() as session:
            repo = PreferenceRepository(session)
            if repo.get(user_id) is not None:
                raise ValueError(f"Preferences already exist for user: {user_id}")
            saved = repo.save(
                NotificationPreference(user_id=user_id, user_email=user_email, user_name=user_name),
                self._clock(),
            )

        logger.info(
            f"Created default notification preferences for user: {user_id}",
            extra={"event": "preferences.created", "user_id": user_id},
        )
        return saved

    def update_specific_preference(
        self, user_id: str, preference_key: str, enabled: bool
    ) -> NotificationPreference:
        """Toggle one flag.

        Args:
            user_id: User whose preferences change
            preference_key: ``"email"`` or a notification type name such as
                ``"application_status_update"`` (case-insensitive)
            enabled: New flag value

        Raises:
            ValueError: If the user has no preferences or the key is unknown
        """
        key = preference_key.strip().lower()
        if key == "email":
            field = "email_enabled"
        else:
            try:
                field = preference_field_for(NotificationType(key.upper()))
            except ValueError:
                raise ValueError(f"Unknown preference key: '{preference_key}'") from None

        with self._database.session() as session:
            repo = PreferenceRepository(session)
            preference = repo.get(user_id)
            if preference is None:
                raise ValueError(f"Preferences not found for user: {user_id}")
            saved = repo.save(preference.model_copy(update={field: enabled}), self._clock())

        logger.info(
            f"Updated preference '{key}' to {enabled} for user: {user_id}",
            extra={"event": "preferences.flag_updated", "user_id": user_id, "field": field},
        )
        return saved

    def delete_preferences(self, user_id: str) -> None:
        """Delete a user's preferences.

        Raises:
            ValueError: If the user has no preferences
        """
        with self._database.session() as session:
            deleted = PreferenceRepository(session).delete(user_id)
        if not deleted:
            raise ValueError(f"Preferences not found for user: {user_id}")

        logger.info(
            f"Deleted notification preferences for user: {user_id}",
            extra={"event": "preferences.deleted", "user_id": user_id},
        )

    # ------------------------------------------------------------------

    def _local_now(self, preference: NotificationPreference) -> datetime:
        try:
            tz = resolve_timezone(preference.timezone)
        except ValueError:
            logger.warning(
                f"Unknown timezone '{preference.timezone}' for user {preference.user_id}, using UTC",
                extra={"event": "preferences.bad_timezone", "user_id": preference.user_id},
            )
            tz = UTC
        return self._clock().astimezone(tz)
