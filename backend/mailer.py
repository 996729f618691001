# mailer.py — Outbound account emails over an HTTP email API
"""
Delivery is a side effect of account creation, never part of it: every send
is raced against EMAIL_TIMEOUT_SECONDS and failures come back as a
DeliveryResult instead of an exception, so callers can surface the temporary
credential to the operator.
"""
import os
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from telemetry import span

logger = logging.getLogger("taskboard.mailer")

EMAIL_API_URL = os.getenv("EMAIL_API_URL", "")
EMAIL_API_KEY = os.getenv("EMAIL_API_KEY", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", "Task Board <no-reply@taskboard.local>")
EMAIL_TIMEOUT_SECONDS = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "30"))


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    error: Optional[str] = None


async def _post(payload: dict, transport: Optional[httpx.AsyncBaseTransport]) -> None:
    headers = {"Content-Type": "application/json"}
    if EMAIL_API_KEY:
        headers["Authorization"] = f"Bearer {EMAIL_API_KEY}"
    async with httpx.AsyncClient(transport=transport, timeout=EMAIL_TIMEOUT_SECONDS) as client:
        resp = await client.post(EMAIL_API_URL, json=payload, headers=headers)
        resp.raise_for_status()


async def send_email(
    to: str,
    subject: str,
    text: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: Optional[float] = None,
) -> DeliveryResult:
    if not EMAIL_API_URL:
        logger.info(f"Email delivery not configured; skipped message to {to}")
        return DeliveryResult(delivered=False, error="Email delivery not configured")

    payload = {"from": EMAIL_FROM, "to": [to], "subject": subject, "text": text}
    try:
        with span("email.send", subject=subject):
            await asyncio.wait_for(_post(payload, transport), timeout=timeout or EMAIL_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"Email to {to} timed out after {timeout or EMAIL_TIMEOUT_SECONDS}s")
        return DeliveryResult(delivered=False, error="Email delivery timed out")
    except httpx.HTTPStatusError as e:
        logger.warning(f"Email API rejected message to {to}: HTTP {e.response.status_code}")
        return DeliveryResult(delivered=False, error=f"Email API returned {e.response.status_code}")
    except httpx.HTTPError as e:
        logger.warning(f"Email to {to} failed: {e}")
        return DeliveryResult(delivered=False, error="Email delivery failed")

    logger.info(f"Email sent to {to}: {subject}")
    return DeliveryResult(delivered=True)


async def send_welcome_email(
    email: str, display_name: str, organisation_name: str, temporary_password: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> DeliveryResult:
    text = (
        f"Hello {display_name},\n\n"
        f"An account was created for you at {organisation_name}.\n"
        f"Email: {email}\n"
        f"Temporary password: {temporary_password}\n\n"
        "You will be asked to choose a new password on first login.\n"
    )
    return await send_email(email, f"Welcome to {organisation_name}", text, transport=transport)


async def send_password_reset_email(
    email: str, display_name: str, temporary_password: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> DeliveryResult:
    text = (
        f"Hello {display_name},\n\n"
        f"Your password was reset by an administrator.\n"
        f"Temporary password: {temporary_password}\n\n"
        "You will be asked to choose a new password on your next login.\n"
    )
    return await send_email(email, "Your password was reset", text, transport=transport)
