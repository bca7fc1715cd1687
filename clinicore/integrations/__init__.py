"""
Integrations package initialization.
Exports the outbound email transport.
"""
from .email import EmailDeliveryError, Mailer, OutgoingEmail, SmtpMailer

__all__ = [
    "EmailDeliveryError",
    "Mailer",
    "OutgoingEmail",
    "SmtpMailer",
]
