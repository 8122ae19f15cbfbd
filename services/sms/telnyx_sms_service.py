"""
=====================================================
Dynamic AI Calling Platform - Telnyx SMS Service
=====================================================

Sends SMS via Telnyx API for the send_sms function
(booking confirmations, links, follow-ups requested on the call).
"""

import httpx
from dataclasses import dataclass
from typing import Optional
from loguru import logger

from config.settings import get_settings


INVALID_NUMBERS = {"+0000000000", "unknown", "private", "anonymous", "restricted"}


@dataclass
class SMSResult:
    """Outcome of one send"""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class SMSTransientError(Exception):
    """Telnyx unreachable or timed out"""


class TelnyxSMSService:
    """
    Send SMS messages via Telnyx REST API.
    Uses httpx directly (no SDK needed).
    """

    API_URL = "https://api.telnyx.com/v2/messages"

    def __init__(self, api_key: str = None, from_number: str = None,
                 timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = get_settings()
        self.api_key = settings.telnyx_api_key if api_key is None else api_key
        self.from_number = settings.telnyx_phone_number if from_number is None else from_number
        self.timeout = timeout
        self._transport = transport
        self._available = bool(self.api_key and self.from_number)

        if self._available:
            logger.info(f"Telnyx SMS: Configured (from={self.from_number})")
        else:
            logger.warning("Telnyx SMS: Not configured (missing TELNYX_API_KEY or TELNYX_PHONE_NUMBER)")

    def is_available(self) -> bool:
        return self._available

    async def send(self, to_number: str, body: str) -> SMSResult:
        """
        Send an SMS message.

        Args:
            to_number: Recipient phone number (E.164 format, e.g. +16471234567)
            body: Message text

        Returns:
            SMSResult; a rejected or misconfigured send is success=False

        Raises:
            SMSTransientError: On timeout or connection failure (retryable)
        """
        if not self._available:
            logger.warning("Telnyx SMS: Cannot send - not configured")
            return SMSResult(success=False, error="SMS not configured")

        if not to_number or to_number.lower().strip() in INVALID_NUMBERS:
            logger.warning(f"Telnyx SMS: Cannot send - invalid number: {to_number}")
            return SMSResult(success=False, error="Invalid destination number")

        if not body or not body.strip():
            return SMSResult(success=False, error="Empty message")

        kwargs = {"timeout": self.timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport

        try:
            async with httpx.AsyncClient(**kwargs) as client:
                response = await client.post(
                    self.API_URL,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "from": self.from_number,
                        "to": to_number,
                        "text": body,
                    },
                )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.error(f"Telnyx SMS: Transport error sending to {to_number[-4:]}: {e}")
            raise SMSTransientError(str(e)) from e

        if response.status_code in (200, 201, 202):
            data = response.json().get("data", {})
            msg_id = data.get("id", "unknown")
            logger.info(f"Telnyx SMS: Sent to ...{to_number[-4:]} (id={msg_id})")
            return SMSResult(success=True, message_id=msg_id)

        if response.status_code >= 500:
            logger.error(f"Telnyx SMS: Server error {response.status_code}")
            raise SMSTransientError(f"Telnyx server error {response.status_code}")

        logger.error(f"Telnyx SMS: Failed {response.status_code} - {response.text}")
        return SMSResult(success=False, error=f"SMS rejected ({response.status_code})")
