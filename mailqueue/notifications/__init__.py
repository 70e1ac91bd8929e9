"""Delivery pipeline: preferences, templates, SMTP transport and orchestration."""

from .models import (
    DeliveryOutcome,
    NotificationBlockedError,
    NotificationError,
    NotificationNotFoundError,
    NotificationTemplateError,
    RenderedEmail,
    SMTPDeliveryError,
    TemplateNotFoundError,
    TransportError,
)
from .preferences import PreferenceService
from .service import DeliveryService
from .smtp_client import SMTPClient, build_sender_address, validate_recipient
from .templates import TemplateService, render_subject

__all__ = [
    # Services
    "DeliveryService",
    "PreferenceService",
    "TemplateService",
    "SMTPClient",
    # Helpers
    "build_sender_address",
    "validate_recipient",
    "render_subject",
    # Results
    "DeliveryOutcome",
    "RenderedEmail",
    # Exceptions
    "NotificationError",
    "NotificationNotFoundError",
    "NotificationBlockedError",
    "NotificationTemplateError",
    "TemplateNotFoundError",
    "TransportError",
    "SMTPDeliveryError",
]
