"""Tests for the Resend notifier against mocked HTTP."""

import base64
import json

import pytest
from pytest_httpx import HTTPXMock

from esim_fulfillment.core.exceptions import ConfigurationException
from esim_fulfillment.notifications.base import Attachment
from esim_fulfillment.notifications.resend import ResendNotifier

EMAILS_URL = "https://api.resend.com/emails"


@pytest.fixture
def resend() -> ResendNotifier:
    return ResendNotifier(api_key="re_test", sender="eSIM <esim@example.com>", base_url="https://api.resend.com")


class TestResendNotifier:
    """Test transactional email sends."""

    @pytest.mark.asyncio
    async def test_send(self, resend: ResendNotifier, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(method="POST", url=EMAILS_URL, json={"id": "msg-1"})

        result = await resend.send(
            "buyer@example.com",
            "Your eSIM",
            "<p>Hello</p>",
            attachments=[Attachment(filename="qr.png", content_type="image/png", content=b"\x89PNG")],
        )

        assert result.ok is True
        assert result.provider_message_id == "msg-1"
        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == "Bearer re_test"
        payload = json.loads(request.content)
        assert payload["from"] == "eSIM <esim@example.com>"
        assert payload["to"] == ["buyer@example.com"]
        assert payload["subject"] == "Your eSIM"
        assert payload["html"] == "<p>Hello</p>"
        assert payload["attachments"] == [
            {
                "filename": "qr.png",
                "content": base64.b64encode(b"\x89PNG").decode("ascii"),
                "content_type": "image/png",
            }
        ]

    @pytest.mark.asyncio
    async def test_send_without_attachments(self, resend: ResendNotifier, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(method="POST", url=EMAILS_URL, json={"id": "msg-2"})

        await resend.send("buyer@example.com", "Top-up", "<p>Done</p>")

        assert "attachments" not in json.loads(httpx_mock.get_requests()[0].content)

    @pytest.mark.asyncio
    async def test_rejected_send_is_reported(self, resend: ResendNotifier, httpx_mock: HTTPXMock) -> None:
        """Test a rejected send returns a failed result instead of raising."""
        httpx_mock.add_response(
            method="POST",
            url=EMAILS_URL,
            status_code=422,
            json={"message": "Invalid `to` field"},
        )

        result = await resend.send("not-an-email", "Your eSIM", "<p>Hello</p>")

        assert result.ok is False
        assert result.error == "resend returned 422"
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_missing_recipient(self, resend: ResendNotifier, httpx_mock: HTTPXMock) -> None:
        result = await resend.send("", "Your eSIM", "<p>Hello</p>")

        assert result.ok is False
        assert httpx_mock.get_requests() == []


class TestResendConfiguration:
    def test_missing_api_key(self) -> None:
        with pytest.raises(ConfigurationException):
            ResendNotifier(api_key="", sender="esim@example.com")

    def test_missing_sender(self) -> None:
        with pytest.raises(ConfigurationException):
            ResendNotifier(api_key="re_test", sender="")
