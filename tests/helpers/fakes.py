"""Deterministic stand-ins for the clock, transport and preference gate.

The queue, delivery and preference services take these through their
constructors, so tests never depend on wall-clock time or a real SMTP server.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Set, Tuple

from mailqueue.config.environment import EnvironmentConfig
from mailqueue.domain.models import NotificationType
from mailqueue.notifications.models import SMTPDeliveryError


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 11, 4, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta given as keyword arguments."""
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class FakeTransport:
    """Records sent messages; fails the next ``fail_times`` sends."""

    def __init__(self, fail_times: int = 0, error: str = "Connection refused"):
        self.fail_times = fail_times
        self.error = error
        self.sent: List[Tuple[str, str, str, str]] = []
        self.attempts = 0

    def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> None:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise SMTPDeliveryError(self.error)
        self.sent.append((recipient, subject, html_body, text_body))


class FakePreferenceGate:
    """Preference gate with fixed answers."""

    def __init__(
        self,
        blocked: Optional[Set[Tuple[str, NotificationType]]] = None,
        quiet_until: Optional[datetime] = None,
    ):
        self.blocked = blocked or set()
        self.quiet_until = quiet_until

    def should_send(self, user_id: str, notification_type: NotificationType) -> bool:
        return (user_id, notification_type) not in self.blocked

    def is_in_quiet_hours(self, user_id: str) -> bool:
        return self.quiet_until is not None

    def quiet_hours_end(self, user_id: str) -> Optional[datetime]:
        return self.quiet_until


def make_env_config(**overrides) -> EnvironmentConfig:
    values = {
        "smtp_host": "smtp.example.com",
        "smtp_port": 587,
        "smtp_user": "mailer@example.com",
        "smtp_pass": "secret",
        "email_from": "noreply@jobapp.example",
        "smtp_sender_name": "JobApp Notifications",
        "log_level": "INFO",
        "database_url": "sqlite:///:memory:",
    }
    values.update(overrides)
    return EnvironmentConfig(**values)
