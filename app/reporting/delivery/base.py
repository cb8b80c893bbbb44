# ============================================================================
# CEIBA - Base Email Provider
# ============================================================================

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.utils import formataddr
from pathlib import Path
from typing import Optional, Dict, List

from ..models import EmailProviderConfig


@dataclass
class Attachment:
    path: str
    filename: Optional[str] = None
    content_type: str = "application/pdf"

    @property
    def name(self) -> str:
        return self.filename or Path(self.path).name

    def read(self) -> bytes:
        with open(self.path, "rb") as f:
            return f.read()


@dataclass
class EmailMessage:
    recipients: List[str]
    subject: str
    body_html: str
    body_text: str = ""
    attachments: List[Attachment] = field(default_factory=list)


@dataclass
class DeliveryResult:
    """Result of a delivery attempt."""
    success: bool
    recipient: str
    channel: str
    message_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "recipient": self.recipient,
            "channel": self.channel,
            "message_id": self.message_id,
            "error": self.error,
        }


class EmailProvider(ABC):
    """One implementation per email backend. Exactly one send attempt per call."""

    channel_name: str = "base"

    def __init__(self, config: EmailProviderConfig, timeout: float = 30):
        self.config = config
        self.timeout = timeout

    @property
    def sender(self) -> str:
        if self.config.from_name:
            return formataddr((self.config.from_name, self.config.from_address))
        return self.config.from_address

    def _result(self, message: EmailMessage, success: bool, error: str = None,
                message_id: str = None) -> DeliveryResult:
        return DeliveryResult(
            success=success,
            recipient=", ".join(message.recipients),
            channel=self.channel_name,
            message_id=message_id,
            error=error,
        )

    @abstractmethod
    def send(self, message: EmailMessage) -> DeliveryResult:
        """Send a message through this provider."""
        pass
