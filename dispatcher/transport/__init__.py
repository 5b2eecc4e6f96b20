"""
Transport module.
Contains the collaborators job handlers deliver through.
"""

from dispatcher.transport.mail import MailMessage, MailTransport, SmtpMailTransport, format_sender
from dispatcher.transport.notification import LoggingNotificationDelivery, NotificationDelivery

__all__ = [
    "MailMessage",
    "MailTransport",
    "SmtpMailTransport",
    "format_sender",
    "NotificationDelivery",
    "LoggingNotificationDelivery",
]
