# tests/test_mailer.py — Email delivery never raises
import asyncio
import json

import httpx
import pytest

import mailer


@pytest.fixture
def email_configured(monkeypatch):
    monkeypatch.setattr(mailer, "EMAIL_API_URL", "https://mail.example.test/send")
    monkeypatch.setattr(mailer, "EMAIL_API_KEY", "key-123")


@pytest.mark.asyncio
async def test_not_configured_is_reported():
    result = await mailer.send_email("a@example.test", "Hi", "Body")
    assert result.delivered is False
    assert result.error == "Email delivery not configured"


@pytest.mark.asyncio
async def test_successful_delivery(email_configured):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"id": "msg-1"})

    result = await mailer.send_welcome_email(
        "jane@acme.test", "Jane", "Acme School", "123456",
        transport=httpx.MockTransport(handler),
    )
    assert result.delivered is True
    assert result.error is None

    assert len(seen) == 1
    assert seen[0].headers["Authorization"] == "Bearer key-123"
    body = json.loads(seen[0].content)
    assert body["to"] == ["jane@acme.test"]
    assert body["subject"] == "Welcome to Acme School"
    assert "123456" in body["text"]


@pytest.mark.asyncio
async def test_api_error_is_returned(email_configured):
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    result = await mailer.send_password_reset_email("a@example.test", "A", "654321", transport=transport)
    assert result.delivered is False
    assert result.error == "Email API returned 500"


@pytest.mark.asyncio
async def test_connection_error_is_returned(email_configured):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await mailer.send_email("a@example.test", "Hi", "Body", transport=httpx.MockTransport(handler))
    assert result.delivered is False
    assert result.error == "Email delivery failed"


@pytest.mark.asyncio
async def test_slow_api_times_out(email_configured):
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200)

    result = await mailer.send_email(
        "a@example.test", "Hi", "Body", transport=httpx.MockTransport(handler), timeout=0.05,
    )
    assert result.delivered is False
    assert result.error == "Email delivery timed out"
