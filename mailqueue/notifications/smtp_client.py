"""SMTP transport for email delivery.

A thin wrapper around Python's smtplib with support for STARTTLS and implicit
TLS, authentication, a bounded socket timeout and proper connection cleanup.
"""

import logging
import smtplib
import ssl
from email.headerregistry import Address
from email.message import EmailMessage
from typing import Callable, Optional

from email_validator import EmailNotValidError, validate_email

from mailqueue.config.environment import EnvironmentConfig

from .models import SMTPDeliveryError

logger = logging.getLogger(__name__)

IMPLICIT_TLS_PORT = 465


class SMTPClient:
    """Sends rendered emails over SMTP.

    Every network operation is bounded by ``timeout`` seconds; a timeout
    surfaces as :class:`SMTPDeliveryError` like any other transport failure.
    Designed to be easily mockable for testing.
    """

    def __init__(
        self,
        env_config: EnvironmentConfig,
        use_tls: bool = True,
        timeout: float = 30,
        smtp_factory: Optional[Callable] = None,
        smtp_ssl_factory: Optional[Callable] = None,
    ):
        """Initialize SMTP client.

        Args:
            env_config: Environment configuration with SMTP settings
            use_tls: Whether to upgrade plain connections with STARTTLS
            timeout: Socket timeout in seconds for connect and every command
            smtp_factory: Factory for SMTP instances (for mocking)
            smtp_ssl_factory: Factory for SMTP_SSL instances (for mocking)
        """
        self.env_config = env_config
        self.use_tls = use_tls
        self.timeout = timeout
        self.smtp_factory = smtp_factory or smtplib.SMTP
        self.smtp_ssl_factory = smtp_ssl_factory or smtplib.SMTP_SSL

    def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        recipient_name: Optional[str] = None,
    ) -> None:
        """Send one message.

        Args:
            recipient: Recipient email address
            subject: Subject line
            html_body: HTML alternative
            text_body: Plain text part (falls back to an empty part)
            recipient_name: Optional display name for the To header

        Raises:
            SMTPDeliveryError: If message delivery fails for any reason
        """
        message = self.build_message(recipient, subject, html_body, text_body, recipient_name)
        env = self.env_config

        smtp = None
        try:
            if env.smtp_port == IMPLICIT_TLS_PORT:
                logger.debug(f"Connecting to {env.smtp_host}:{env.smtp_port} with implicit TLS")
                context = ssl.create_default_context()
                smtp = self.smtp_ssl_factory(
                    env.smtp_host, env.smtp_port, timeout=self.timeout, context=context
                )
            else:
                logger.debug(f"Connecting to {env.smtp_host}:{env.smtp_port}")
                smtp = self.smtp_factory(env.smtp_host, env.smtp_port, timeout=self.timeout)

                if self.use_tls:
                    logger.debug("Upgrading connection with STARTTLS")
                    smtp.starttls(context=ssl.create_default_context())

            if env.smtp_user and env.smtp_pass:
                logger.debug(f"Authenticating as {env.smtp_user}")
                smtp.login(env.smtp_user, env.smtp_pass)

            smtp.send_message(message)
            logger.debug(f"Message sent successfully to {recipient}")

        except smtplib.SMTPException as e:
            error_msg = f"SMTP error during message delivery: {e}"
            logger.error(error_msg)
            raise SMTPDeliveryError(error_msg) from e
        except OSError as e:
            # socket.timeout is an OSError subclass
            error_msg = f"Network error during SMTP connection: {e}"
            logger.error(error_msg)
            raise SMTPDeliveryError(error_msg) from e
        except Exception as e:
            error_msg = f"Unexpected error during SMTP delivery: {e}"
            logger.error(error_msg)
            raise SMTPDeliveryError(error_msg) from e
        finally:
            if smtp is not None:
                try:
                    smtp.quit()
                except Exception as e:
                    logger.warning(f"Error closing SMTP connection: {e}")

    def build_message(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        recipient_name: Optional[str] = None,
    ) -> EmailMessage:
        """Build a multipart/alternative message (plain text first, then HTML)."""
        message = EmailMessage()
        message["Subject"] = subject.replace("\r", " ").replace("\n", " ").strip()
        message["From"] = build_sender_address(self.env_config)
        if recipient_name:
            message["To"] = str(Address(display_name=recipient_name, addr_spec=recipient))
        else:
            message["To"] = recipient

        message.set_content(text_body or "")
        message.add_alternative(html_body, subtype="html")
        return message


def validate_recipient(address: str) -> str:
    """Validate and normalise a recipient address.

    Raises:
        ValueError: If the address is not a valid email address
    """
    try:
        return validate_email(address, check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise ValueError(f"Invalid recipient email address: '{address}' - {e}") from e


def build_sender_address(env_config: EnvironmentConfig) -> str:
    """Build the 'From' address for outgoing emails.

    Example:
        "JobApp Notifications <noreply@jobapp.example>"
    """
    return str(
        Address(display_name=env_config.smtp_sender_name, addr_spec=env_config.email_from)
    )
