"""
Mail relay transport.

The email handler only depends on the MailTransport protocol; the SMTP
implementation hands messages to a relay such as Gmail.
"""

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from typing import Protocol

from dispatcher.errors import MailDeliveryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailMessage:
    """One outgoing HTML email."""

    sender: str
    to: str
    subject: str
    html: str

    def to_email_message(self) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = self.to
        msg["Subject"] = self.subject
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(self.html, subtype="html")
        return msg


class MailTransport(Protocol):
    async def send_mail(self, message: MailMessage) -> None: ...


def format_sender(name: str, address: str | None) -> str:
    """Build a ``"Name" <address>`` From header."""
    return formataddr((name, address or ""))


class SmtpMailTransport:
    """
    SMTP client for the mail relay.

    smtplib is blocking, so each send runs in a worker thread and never
    holds up other worker slots.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        if self.use_tls and self.port == 465:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        client = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        if self.use_tls:
            client.starttls()
        return client

    def _send(self, message: MailMessage) -> None:
        with self._connect() as client:
            if self.username and self.password:
                client.login(self.username, self.password)
            client.send_message(message.to_email_message())

    async def send_mail(self, message: MailMessage) -> None:
        """
        Send one message through the relay.

        Raises:
            MailDeliveryError: retryable for connection problems and 4xx
                replies, permanent for 5xx replies and rejected recipients.
        """
        try:
            await asyncio.to_thread(self._send, message)
        except smtplib.SMTPRecipientsRefused as e:
            raise MailDeliveryError(f"Recipient refused: {message.to}", retryable=False) from e
        except smtplib.SMTPAuthenticationError as e:
            raise MailDeliveryError(f"SMTP authentication failed: {e.smtp_code}", retryable=False) from e
        except smtplib.SMTPResponseException as e:
            retryable = 400 <= e.smtp_code < 500
            raise MailDeliveryError(f"SMTP error {e.smtp_code}: {e.smtp_error!r}", retryable=retryable) from e
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f"SMTP connection failed: {e}", retryable=True) from e

        logger.debug("Mail handed to relay", extra={"to": message.to, "relay": self.host})
