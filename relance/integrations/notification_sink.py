"""
Relance - Notification Sink
The engine never talks SMTP. A follow-up that is due is handed to a sink,
which only has to accept or refuse the message.

Sinks:
  - ResendSink: Resend HTTP API
  - SimulatedSink: logs and returns a fake id (no API key configured)
"""
import logging
import httpx
from abc import ABC, abstractmethod
from typing import Optional
from pydantic import BaseModel
from relance.errors import NotificationError
from relance.config import RESEND_API_KEY, RESEND_FROM_EMAIL, RESEND_BASE_URL

logger = logging.getLogger(__name__)


class OutboundMessage(BaseModel):
    """One rendered follow-up, ready to go out."""
    follow_up_id: str
    to_email: str
    subject: str
    text: str = ""
    html: str = ""
    email_type: Optional[str] = None


class NotificationSink(ABC):
    """Abstract interface for notification sinks."""

    name = "abstract"

    @abstractmethod
    def send(self, message: OutboundMessage) -> dict:
        """Deliver a message. Returns {provider_message_id}. Raises NotificationError."""
        ...


class ResendSink(NotificationSink):
    """Resend email API."""

    name = "resend"

    def __init__(self, api_key: str = RESEND_API_KEY, from_email: str = RESEND_FROM_EMAIL,
                 base_url: str = RESEND_BASE_URL, client: Optional[httpx.Client] = None):
        self.api_key = api_key
        self.from_email = from_email
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=30)

    def send(self, message: OutboundMessage) -> dict:
        try:
            resp = self.client.post(
                f"{self.base_url}/emails",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.from_email,
                    "to": [message.to_email],
                    "subject": message.subject,
                    "html": message.html,
                    "text": message.text,
                },
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Resend API error for follow-up {message.follow_up_id}: {e}")
            raise NotificationError(f"Resend error: {e.response.status_code} {e.response.text}") from e
        except httpx.HTTPError as e:
            logger.error(f"Resend request failed for follow-up {message.follow_up_id}: {e}")
            raise NotificationError(f"Resend request failed: {e}") from e

        return {"provider_message_id": resp.json().get("id")}


class SimulatedSink(NotificationSink):
    """No provider configured: accept everything, keep a copy for inspection."""

    name = "simulated"

    def __init__(self):
        self.sent: list[OutboundMessage] = []

    def send(self, message: OutboundMessage) -> dict:
        self.sent.append(message)
        logger.info(f"[simulated] {message.to_email}: {message.subject}")
        return {"provider_message_id": "simulated"}


def get_sink() -> NotificationSink:
    """Factory: Resend when an API key is configured, simulated otherwise."""
    if RESEND_API_KEY:
        return ResendSink()
    return SimulatedSink()
