"""Configuration schema models using Pydantic."""

from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from .duration import DurationParseError, parse_duration, validate_duration_range


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    KEY_VALUE = "key-value"


def _check_duration(value: str, field_name: str, min_seconds: int, max_seconds: int) -> str:
    """Parse a duration string and check its range, raising ValueError for Pydantic."""
    try:
        seconds = parse_duration(value)
        validate_duration_range(seconds, min_seconds, max_seconds, label=field_name)
    except DurationParseError as e:
        raise ValueError(str(e)) from e
    return value.strip()


class QueueConfig(BaseModel):
    """Admission, retry and reclaim settings for the delivery queue."""

    batch_size: int = Field(10, ge=1, le=500, description="Items served per dispatch batch")
    default_priority: int = Field(
        3, ge=1, le=5, description="Priority for new items (1 = served first)"
    )
    max_retries: int = Field(
        3, ge=0, le=10, description="Failed attempts retried before an item fails permanently"
    )
    stale_threshold: str = Field(
        "10m", description="How long a claim may be held before the item counts as stuck"
    )
    stuck_retry_delay: str = Field(
        "5m", description="Fixed delay before a reclaimed stuck item is retried"
    )

    @field_validator("stale_threshold")
    @classmethod
    def validate_stale_threshold(cls, v: str) -> str:
        """Stale threshold must be between 1 minute and 24 hours."""
        return _check_duration(v, "stale_threshold", 60, 86400)

    @field_validator("stuck_retry_delay")
    @classmethod
    def validate_stuck_retry_delay(cls, v: str) -> str:
        """Stuck retry delay must be between 1 second and 24 hours."""
        return _check_duration(v, "stuck_retry_delay", 1, 86400)

    @property
    def stale_threshold_seconds(self) -> int:
        return parse_duration(self.stale_threshold)

    @property
    def stuck_retry_delay_seconds(self) -> int:
        return parse_duration(self.stuck_retry_delay)


class WorkerConfig(BaseModel):
    """Dispatch worker settings."""

    concurrency: int = Field(1, ge=1, le=32, description="Dispatch workers per process")
    poll_interval: str = Field("30s", description="Delay between dispatch cycles")

    @field_validator("poll_interval")
    @classmethod
    def validate_poll_interval(cls, v: str) -> str:
        return _check_duration(v, "poll_interval", 1, 3600)

    @property
    def poll_interval_seconds(self) -> int:
        return parse_duration(self.poll_interval)


class SweepConfig(BaseModel):
    """Intervals for the periodic sweeps that run beside the workers."""

    retry_interval: str = Field("2m", description="Retry reactivation sweep interval")
    stuck_interval: str = Field("10m", description="Stuck item reclaim sweep interval")
    deferred_interval: str = Field("1m", description="Quiet-hours release sweep interval")
    retention_days: int = Field(
        30, ge=1, le=3650, description="Days to keep completed and failed queue items"
    )
    retention_hour: int = Field(2, ge=0, le=23, description="UTC hour of the daily retention sweep")

    @field_validator("retry_interval", "stuck_interval", "deferred_interval")
    @classmethod
    def validate_interval(cls, v: str, info) -> str:
        """Sweep intervals must be between 10 seconds and 24 hours."""
        return _check_duration(v, info.field_name, 10, 86400)

    @property
    def retry_interval_seconds(self) -> int:
        return parse_duration(self.retry_interval)

    @property
    def stuck_interval_seconds(self) -> int:
        return parse_duration(self.stuck_interval)

    @property
    def deferred_interval_seconds(self) -> int:
        return parse_duration(self.deferred_interval)


class EmailConfig(BaseModel):
    """Email transport settings."""

    use_tls: bool = Field(True, description="Use TLS/STARTTLS for secure connection")
    send_timeout: int = Field(
        30, ge=1, le=300, description="Socket timeout for one SMTP delivery (seconds)"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    format: LogFormat = Field(
        LogFormat.KEY_VALUE, description="Log output format (json or key-value)"
    )

    model_config = {"use_enum_values": True}


class AppConfig(BaseModel):
    """Root configuration object for the mail queue service."""

    queue: QueueConfig = Field(default_factory=QueueConfig, description="Queue settings")
    worker: WorkerConfig = Field(default_factory=WorkerConfig, description="Worker settings")
    sweeps: SweepConfig = Field(default_factory=SweepConfig, description="Sweep settings")
    email: EmailConfig = Field(default_factory=EmailConfig, description="Email settings")
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    @model_validator(mode="after")
    def validate_stale_threshold_against_send_timeout(self):
        """A claim must outlive one send attempt, or live workers get reclaimed."""
        if self.queue.stale_threshold_seconds <= self.email.send_timeout:
            raise ValueError(
                f"queue.stale_threshold ({self.queue.stale_threshold}) must be longer than "
                f"email.send_timeout ({self.email.send_timeout}s)"
            )
        return self
