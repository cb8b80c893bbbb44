# ============================================================================
# CEIBA - SMTP Email Provider
# ============================================================================

import logging
import smtplib
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .base import EmailProvider, EmailMessage, DeliveryResult

logger = logging.getLogger("reporting.delivery.smtp")


class SmtpEmailProvider(EmailProvider):
    channel_name = "smtp"

    def build_mime(self, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("mixed")
        msg["Subject"] = message.subject
        msg["From"] = self.sender
        msg["To"] = ", ".join(message.recipients)

        body = MIMEMultipart("alternative")
        if message.body_text:
            body.attach(MIMEText(message.body_text, "plain", "utf-8"))
        body.attach(MIMEText(message.body_html, "html", "utf-8"))
        msg.attach(body)

        for att in message.attachments:
            part = MIMEApplication(att.read(), _subtype=att.content_type.split("/")[-1])
            part.add_header("Content-Disposition", "attachment", filename=att.name)
            msg.attach(part)
        return msg

    def send(self, message: EmailMessage) -> DeliveryResult:
        cfg = self.config
        try:
            msg = self.build_mime(message)

            server = smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=self.timeout)
            try:
                if cfg.smtp_use_tls:
                    server.starttls()
                if cfg.smtp_username and cfg.smtp_password:
                    server.login(cfg.smtp_username, cfg.smtp_password)
                server.sendmail(cfg.from_address, message.recipients, msg.as_string())
            finally:
                server.quit()

            logger.info(f"Email sent via SMTP to {len(message.recipients)} recipient(s)")
            return self._result(message, True)

        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP auth failed: {e}")
            return self._result(message, False, error="SMTP authentication failed")
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send failed: {e}")
            return self._result(message, False, error=f"SMTP error: {e}")
