"""Notifier interface."""

from abc import ABC, abstractmethod

from pydantic import BaseModel


class Attachment(BaseModel):
    """Binary attachment for a transactional email."""

    filename: str
    content_type: str = "application/octet-stream"
    content: bytes


class SendResult(BaseModel):
    """Outcome of one send; failures are reported, not raised."""

    ok: bool
    provider_message_id: str | None = None
    error: str | None = None


class BaseNotifier(ABC):
    """Transactional email channel."""

    name: str

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: list[Attachment] | None = None,
    ) -> SendResult:
        """Send one email."""

    async def close(self) -> None:
        """Release transport resources."""
