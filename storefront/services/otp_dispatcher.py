"""
OTP Dispatcher (SendGrid)

Delivers e-mail verification codes and password reset links. Delivery is
best effort: callers get a SendResult and never an exception, so a mail
outage cannot block registration.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from storefront.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class OTPDispatcher:
    """Sends one-time codes and reset links through the SendGrid v3 mail API."""

    BASE_URL = "https://api.sendgrid.com/v3"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return bool(settings.SENDGRID_API_KEY)

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=10.0,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {settings.SENDGRID_API_KEY}",
                    "Content-Type": "application/json",
                },
            )
        return self._http_client

    async def close(self):
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _send(self, destination: str, subject: str, body: str, kind: str) -> SendResult:
        if not self.configured:
            logger.warning(f"SendGrid not configured; {kind} mail for {destination} not sent")
            return SendResult(success=False, error="Email not configured")

        payload = {
            "personalizations": [{"to": [{"email": destination}]}],
            "from": {"email": settings.SENDGRID_FROM_EMAIL, "name": settings.SENDGRID_FROM_NAME},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }

        try:
            http = await self._get_http_client()
            resp = await http.post(f"{self.BASE_URL}/mail/send", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"SendGrid request failed for {destination}: {e}")
            return SendResult(success=False, error=str(e))

        if resp.status_code in (200, 202):
            return SendResult(success=True, message_id=resp.headers.get("X-Message-Id"))

        logger.error(f"SendGrid rejected {kind} mail: {resp.status_code} - {resp.text}")
        return SendResult(success=False, error=f"SendGrid returned {resp.status_code}")

    async def send_otp(self, destination: str, code: str) -> SendResult:
        return await self._send(
            destination,
            f"Your {settings.APP_NAME} verification code",
            (
                f"Your verification code is {code}. "
                f"It expires in {settings.OTP_EXPIRATION_MINUTES} minutes."
            ),
            kind="OTP",
        )

    async def send_password_reset(self, destination: str, token: str) -> SendResult:
        link = f"{settings.PASSWORD_RESET_URL}?token={token}"
        return await self._send(
            destination,
            f"Reset your {settings.APP_NAME} password",
            (
                f"Use this link to choose a new password: {link}\n"
                f"It expires in {settings.PASSWORD_RESET_TOKEN_MINUTES} minutes. "
                "If you did not ask for a reset, ignore this e-mail."
            ),
            kind="password reset",
        )


otp_dispatcher = OTPDispatcher()
