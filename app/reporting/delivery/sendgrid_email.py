# ============================================================================
# CEIBA - SendGrid Email Provider
# ============================================================================

import base64
import logging

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import (
    Mail, Email, To, Attachment as SgAttachment,
    FileContent, FileName, FileType, Disposition,
)

from .base import EmailProvider, EmailMessage, DeliveryResult

logger = logging.getLogger("reporting.delivery.sendgrid")


class SendGridEmailProvider(EmailProvider):
    channel_name = "sendgrid"

    def _get_client(self) -> SendGridAPIClient:
        client = SendGridAPIClient(self.config.sendgrid_api_key)
        client.client.timeout = self.timeout
        return client

    def build_mail(self, message: EmailMessage) -> Mail:
        mail = Mail(
            from_email=Email(self.config.from_address, self.config.from_name or None),
            to_emails=[To(r) for r in message.recipients],
            subject=message.subject,
            html_content=message.body_html,
            plain_text_content=message.body_text or None,
        )
        for att in message.attachments:
            attachment = SgAttachment()
            attachment.file_content = FileContent(base64.b64encode(att.read()).decode())
            attachment.file_name = FileName(att.name)
            attachment.file_type = FileType(att.content_type)
            attachment.disposition = Disposition("attachment")
            mail.add_attachment(attachment)
        return mail

    def send(self, message: EmailMessage) -> DeliveryResult:
        try:
            mail = self.build_mail(message)
            response = self._get_client().send(mail)

            message_id = None
            if hasattr(response, "headers") and response.headers and "X-Message-Id" in response.headers:
                message_id = response.headers["X-Message-Id"]

            if response.status_code in (200, 201, 202):
                logger.info(f"Email sent via SendGrid to {len(message.recipients)} recipient(s)")
                return self._result(message, True, message_id=message_id)
            return self._result(message, False,
                                error=f"SendGrid returned status {response.status_code}")

        except Exception as e:
            body = getattr(e, "body", None)
            if isinstance(body, bytes):
                body = body.decode("utf-8", "replace")
            logger.error(f"SendGrid send failed: {e} {body or ''}")
            return self._result(message, False, error=f"SendGrid error: {e}")
