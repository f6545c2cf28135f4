# src/infrastructure/email.py

import logging
from typing import Protocol

import resend

from src.domain.exceptions import NonRetryableDeliveryError
from src.infrastructure.config import EMAIL_FROM_ADDRESS, resend_api_key

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    def send(self, to: list[str], subject: str, html: str, text: str) -> None: ...


class ResendEmailSender:

    def __init__(self, api_key: str | None = None, from_address: str = EMAIL_FROM_ADDRESS):
        self.api_key = api_key
        self.from_address = from_address

    def send(self, to: list[str], subject: str, html: str, text: str) -> None:
        api_key = self.api_key or resend_api_key()
        if not api_key:
            raise NonRetryableDeliveryError("RESEND_API_KEY is not configured")

        resend.api_key = api_key
        response = resend.Emails.send(
            {
                "from": self.from_address,
                "to": to,
                "subject": subject,
                "html": html,
                "text": text,
            }
        )
        logger.info("Email '%s' sent to %s (id=%s)", subject, to, _message_id(response))


def _message_id(response) -> str | None:
    if isinstance(response, dict):
        return response.get("id")
    return getattr(response, "id", None)
