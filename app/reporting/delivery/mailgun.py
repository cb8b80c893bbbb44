# ============================================================================
# CEIBA - Mailgun Email Provider
# ============================================================================
# Mailgun messages API over requests (multipart form with attachments).
# Region selects the API host; EU domains live on a separate cluster.
# ============================================================================

import logging
from typing import Optional

import requests

from .base import EmailProvider, EmailMessage, DeliveryResult
from ..models import EmailProviderConfig

logger = logging.getLogger("reporting.delivery.mailgun")

MAILGUN_API_HOSTS = {
    "US": "https://api.mailgun.net",
    "EU": "https://api.eu.mailgun.net",
}


class MailgunEmailProvider(EmailProvider):
    channel_name = "mailgun"

    def __init__(self, config: EmailProviderConfig, timeout: float = 30,
                 session: Optional[requests.Session] = None):
        super().__init__(config, timeout)
        self._session = session or requests.Session()

    @property
    def messages_url(self) -> str:
        host = MAILGUN_API_HOSTS.get((self.config.mailgun_region or "US").upper(),
                                     MAILGUN_API_HOSTS["US"])
        return f"{host}/v3/{self.config.mailgun_domain}/messages"

    def send(self, message: EmailMessage) -> DeliveryResult:
        data = {
            "from": self.sender,
            "to": message.recipients,
            "subject": message.subject,
            "html": message.body_html,
        }
        if message.body_text:
            data["text"] = message.body_text

        try:
            files = [
                ("attachment", (att.name, att.read(), att.content_type))
                for att in message.attachments
            ]
            response = self._session.post(
                self.messages_url,
                auth=("api", self.config.mailgun_api_key or ""),
                data=data,
                files=files or None,
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.error(f"Mailgun unreachable: {e}")
            return self._result(message, False, error=f"Mailgun unreachable: {e}")
        except (requests.RequestException, OSError) as e:
            logger.error(f"Mailgun send failed: {e}")
            return self._result(message, False, error=f"Mailgun error: {e}")

        if response.status_code != 200:
            logger.error(f"Mailgun error {response.status_code}: {response.text[:500]}")
            return self._result(message, False,
                                error=f"Mailgun returned status {response.status_code}")

        try:
            message_id = response.json().get("id")
        except ValueError:
            message_id = None
        logger.info(f"Email sent via Mailgun to {len(message.recipients)} recipient(s)")
        return self._result(message, True, message_id=message_id)
