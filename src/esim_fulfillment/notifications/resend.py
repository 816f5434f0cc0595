"""Resend HTTP email API implementation of the notifier."""

import base64
from typing import Any

from esim_fulfillment.config import settings
from esim_fulfillment.core.exceptions import ConfigurationException, NotifierException
from esim_fulfillment.core.http import HTTPClient
from esim_fulfillment.core.logging import get_logger
from esim_fulfillment.notifications.base import Attachment, BaseNotifier, SendResult

logger = get_logger(__name__)


class ResendNotifier(BaseNotifier):
    """Sends email through `POST /emails`."""

    name = "resend"

    def __init__(self, api_key: str, sender: str, base_url: str | None = None):
        if not api_key:
            raise ConfigurationException("Missing EMAIL_API_KEY")
        if not sender:
            raise ConfigurationException("Missing EMAIL_FROM")
        self.sender = sender
        self._client = HTTPClient(
            base_url=base_url or settings.email_api_url,
            service=self.name,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            error_class=NotifierException,
        )

    async def close(self) -> None:
        await self._client.close()

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: list[Attachment] | None = None,
    ) -> SendResult:
        if not to:
            return SendResult(ok=False, error="Missing recipient")

        payload: dict[str, Any] = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html_body,
        }
        if attachments:
            payload["attachments"] = [
                {
                    "filename": a.filename,
                    "content": base64.b64encode(a.content).decode("ascii"),
                    "content_type": a.content_type,
                }
                for a in attachments
            ]

        try:
            response = await self._client.post("/emails", json=payload)
        except NotifierException as e:
            logger.error("email_send_failed", to=to, subject=subject, error=e.message)
            return SendResult(ok=False, error=e.message)

        message_id = response.get("id") if isinstance(response, dict) else None
        logger.info("email_sent", to=to, subject=subject, message_id=message_id)
        return SendResult(ok=True, provider_message_id=message_id)
