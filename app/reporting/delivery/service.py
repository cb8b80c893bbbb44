# ============================================================================
# CEIBA - Report Delivery Service
# ============================================================================
# Picks the provider named by the email configuration and makes one send
# attempt. Retrying is the caller's decision (manual resend).
# ============================================================================

import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

from .base import Attachment, DeliveryResult, EmailMessage, EmailProvider
from .mailgun import MailgunEmailProvider
from .sendgrid_email import SendGridEmailProvider
from .smtp import SmtpEmailProvider
from ..models import EmailProviderConfig

logger = logging.getLogger("reporting.delivery")

PROVIDERS = {
    "SMTP": SmtpEmailProvider,
    "SendGrid": SendGridEmailProvider,
    "Mailgun": MailgunEmailProvider,
}

TEST_SUBJECT = "CEIBA - Prueba de configuración de correo"
TEST_BODY_HTML = (
    "<p>Este es un correo de prueba enviado desde CEIBA.</p>"
    "<p>Si lo recibió, la configuración de correo es correcta.</p>"
)


def get_email_provider(config: EmailProviderConfig, timeout: float = 30) -> EmailProvider:
    provider_cls = PROVIDERS.get(config.provider)
    if provider_cls is None:
        raise ValueError(f"Unknown email provider: {config.provider}")
    return provider_cls(config, timeout=timeout)


@dataclass
class TestResult:
    __test__ = False  # not a pytest class

    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {"success": self.success, "error": self.error}


class DeliveryService:
    def __init__(self, provider_factory=get_email_provider):
        self.provider_factory = provider_factory

    def _failure(self, recipients: List[str], channel: str, error: str) -> DeliveryResult:
        logger.warning("Delivery not attempted: %s", error)
        return DeliveryResult(success=False, recipient=", ".join(recipients),
                              channel=channel, error=error)

    def send(self,
             document_path: Optional[str],
             recipients: List[str],
             config: Optional[EmailProviderConfig],
             subject: str,
             body_html: str,
             body_text: str = "",
             timeout: float = 30) -> DeliveryResult:
        """Send the document to every recipient in one message."""
        channel = config.provider if config else "email"
        if config is None or not config.enabled:
            return self._failure(recipients, channel, "Email service disabled")
        if not recipients:
            return self._failure(recipients, channel, "No recipients configured")
        if not document_path or not os.path.exists(document_path):
            return self._failure(recipients, channel, f"Document not found: {document_path}")

        message = EmailMessage(
            recipients=list(recipients),
            subject=subject,
            body_html=body_html,
            body_text=body_text,
            attachments=[Attachment(path=document_path)],
        )
        try:
            provider = self.provider_factory(config, timeout=timeout)
        except ValueError as e:
            return self._failure(recipients, channel, str(e))

        result = provider.send(message)
        if not result.success:
            logger.warning("Delivery via %s failed: %s", channel, result.error)
        return result

    def test_send(self, recipient: str, config: Optional[EmailProviderConfig],
                  timeout: float = 30) -> TestResult:
        """Send a fixed test message. Touches no report."""
        if config is None:
            return TestResult(success=False, error="Email not configured")
        if not recipient or "@" not in recipient:
            return TestResult(success=False, error=f"Invalid recipient: {recipient}")
        try:
            provider = self.provider_factory(config, timeout=timeout)
        except ValueError as e:
            return TestResult(success=False, error=str(e))

        result = provider.send(EmailMessage(
            recipients=[recipient],
            subject=TEST_SUBJECT,
            body_html=TEST_BODY_HTML,
            body_text="Este es un correo de prueba enviado desde CEIBA.",
        ))
        return TestResult(success=result.success, error=result.error)
