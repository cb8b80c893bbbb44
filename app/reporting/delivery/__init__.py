# ============================================================================
# CEIBA - Report Delivery Module
# ============================================================================
# Email delivery: SMTP, SendGrid, Mailgun
# ============================================================================

from .base import Attachment, DeliveryResult, EmailMessage, EmailProvider
from .mailgun import MailgunEmailProvider
from .sendgrid_email import SendGridEmailProvider
from .service import DeliveryService, TestResult, get_email_provider
from .smtp import SmtpEmailProvider

__all__ = [
    "Attachment",
    "DeliveryResult",
    "DeliveryService",
    "EmailMessage",
    "EmailProvider",
    "MailgunEmailProvider",
    "SendGridEmailProvider",
    "SmtpEmailProvider",
    "TestResult",
    "get_email_provider",
]
