"""Unit tests for notification preferences and quiet hours."""

from datetime import datetime, timezone

import pytest

from mailqueue.domain.models import NotificationPreference, NotificationType
from mailqueue.notifications import PreferenceService
from mailqueue.notifications.preferences import hour_in_window
from mailqueue.persistence import Database, PreferenceRepository
from tests.helpers import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database():
    db = Database("sqlite:///:memory:")
    yield db
    db.close()


@pytest.fixture
def preferences(database, clock):
    return PreferenceService(database, clock=clock)


class TestHourInWindow:
    """Tests for the quiet window membership check."""

    @pytest.mark.parametrize(
        "hour,expected",
        [(21, False), (22, True), (23, True), (0, True), (7, True), (8, False), (12, False)],
    )
    def test_window_wrapping_midnight(self, hour, expected):
        assert hour_in_window(hour, 22, 8) is expected

    @pytest.mark.parametrize("hour,expected", [(8, False), (9, True), (16, True), (17, False)])
    def test_window_within_one_day(self, hour, expected):
        assert hour_in_window(hour, 9, 17) is expected

    def test_equal_bounds_disable_quiet_hours(self):
        assert not any(hour_in_window(hour, 5, 5) for hour in range(24))


class TestShouldSend:
    """Tests for opt-out checks."""

    def test_user_without_preferences_accepts_everything(self, preferences):
        assert preferences.should_send("user-1", NotificationType.SYSTEM_NOTIFICATION)

    def test_email_disabled_blocks_all_types(self, preferences):
        preferences.create_or_update_preferences(
            NotificationPreference(user_id="user-1", email_enabled=False)
        )

        assert not preferences.should_send("user-1", NotificationType.REGISTRATION_CONFIRMATION)

    def test_type_flag_blocks_only_that_type(self, preferences):
        preferences.create_or_update_preferences(
            NotificationPreference(user_id="user-1", application_status_update_enabled=False)
        )

        assert not preferences.should_send("user-1", NotificationType.APPLICATION_STATUS_UPDATE)
        assert preferences.should_send("user-1", NotificationType.JOB_APPLICATION_RECEIVED)


class TestQuietHours:
    """Tests for quiet hours evaluation."""

    def test_no_preferences_never_quiet(self, preferences):
        assert preferences.is_in_quiet_hours("user-1") is False
        assert preferences.quiet_hours_end("user-1") is None

    def test_quiet_at_night_in_utc(self, preferences, clock):
        preferences.create_default_preferences("user-1")
        clock.set(datetime(2025, 11, 4, 23, 30, tzinfo=timezone.utc))

        assert preferences.is_in_quiet_hours("user-1") is True
        assert preferences.quiet_hours_end("user-1") == datetime(
            2025, 11, 5, 8, 0, tzinfo=timezone.utc
        )

    def test_end_same_day_after_midnight(self, preferences, clock):
        preferences.create_default_preferences("user-1")
        clock.set(datetime(2025, 11, 5, 3, 0, tzinfo=timezone.utc))

        assert preferences.quiet_hours_end("user-1") == datetime(
            2025, 11, 5, 8, 0, tzinfo=timezone.utc
        )

    def test_not_quiet_at_noon(self, preferences):
        preferences.create_default_preferences("user-1")

        assert preferences.is_in_quiet_hours("user-1") is False
        assert preferences.quiet_hours_end("user-1") is None

    def test_evaluated_in_user_timezone(self, preferences, clock):
        """Test that 12:00 UTC is 07:00 in New York and therefore quiet."""
        preferences.create_or_update_preferences(
            NotificationPreference(user_id="user-1", timezone="America/New_York")
        )

        assert preferences.is_in_quiet_hours("user-1") is True
        assert preferences.quiet_hours_end("user-1") == datetime(
            2025, 11, 4, 13, 0, tzinfo=timezone.utc
        )

    def test_unknown_stored_timezone_falls_back_to_utc(self, preferences, database, clock):
        with database.session() as session:
            PreferenceRepository(session).save(
                NotificationPreference(user_id="user-1", timezone="Mars/Olympus_Mons"),
                clock.now,
            )
        clock.set(datetime(2025, 11, 4, 23, 0, tzinfo=timezone.utc))

        assert preferences.is_in_quiet_hours("user-1") is True


class TestPreferenceManagement:
    """Tests for creating, updating and deleting preferences."""

    def test_create_defaults(self, preferences, clock):
        created = preferences.create_default_preferences("user-1", "ada@example.com", "Ada")

        assert created.email_enabled is True
        assert created.quiet_hours_start == 22
        assert created.quiet_hours_end == 8
        assert created.timezone == "UTC"
        assert created.created_at == clock.now

    def test_create_defaults_twice_rejected(self, preferences):
        preferences.create_default_preferences("user-1")

        with pytest.raises(ValueError):
            preferences.create_default_preferences("user-1")

    def test_unknown_timezone_rejected_on_save(self, preferences):
        with pytest.raises(ValueError):
            preferences.create_or_update_preferences(
                NotificationPreference(user_id="user-1", timezone="Not/AZone")
            )

        assert preferences.get_preferences("user-1") is None

    def test_update_email_flag(self, preferences):
        preferences.create_default_preferences("user-1")

        updated = preferences.update_specific_preference("user-1", "email", False)

        assert updated.email_enabled is False

    def test_update_type_flag_case_insensitive(self, preferences):
        preferences.create_default_preferences("user-1")

        updated = preferences.update_specific_preference(
            "user-1", "Job_Application_Received", False
        )

        assert updated.job_application_received_enabled is False
        assert updated.registration_confirmation_enabled is True

    def test_update_unknown_key_rejected(self, preferences):
        preferences.create_default_preferences("user-1")

        with pytest.raises(ValueError):
            preferences.update_specific_preference("user-1", "sms", False)

    def test_update_without_preferences_rejected(self, preferences):
        with pytest.raises(ValueError):
            preferences.update_specific_preference("user-1", "email", False)

    def test_delete(self, preferences):
        preferences.create_default_preferences("user-1")

        preferences.delete_preferences("user-1")

        assert preferences.get_preferences("user-1") is None
        with pytest.raises(ValueError):
            preferences.delete_preferences("user-1")
