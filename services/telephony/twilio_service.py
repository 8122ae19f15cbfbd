"""
=====================================================
Dynamic AI Calling Platform - Twilio Telephony Service
=====================================================
Renders orchestrator replies as TwiML (speak, then listen or hang up)
and controls live calls over the Twilio REST API.
"""

from typing import Optional
from xml.sax.saxutils import escape
import httpx
from loguru import logger


SAY_VOICE = "Polly.Joanna"
NO_INPUT_PROMPT = "I didn't hear anything. Please try again or say goodbye to end the call."
TECHNICAL_DIFFICULTIES = "Sorry, we are experiencing technical difficulties. Please call back later."

SPEECH_WEBHOOK_PATH = "/api/webhooks/speech"
PARTIAL_WEBHOOK_PATH = "/api/webhooks/speech-partial"


def xml_escape(value: str) -> str:
    """Escape text and attribute values (&, <, >, ", ')"""
    return escape(value or "", {'"': '&quot;', "'": '&apos;'})


class TwilioService:
    """
    Twilio service for managing calls

    - TwiML for a reply: <Play> the pull URL (or <Say> when speech delivery
      is unavailable) inside a speech <Gather>, or followed by <Hangup>
    - REST call control: end_call
    """

    def __init__(self, account_sid: str, auth_token: str, phone_number: str,
                 public_base_url: str = "", speech_timeout_seconds: int = 10,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize Twilio service

        Args:
            account_sid: Twilio Account SID
            auth_token: Twilio Auth Token
            phone_number: Twilio phone number
            public_base_url: Externally reachable base URL for webhook actions
            speech_timeout_seconds: Seconds <Gather> waits for the caller to start speaking
            transport: Optional httpx transport (tests)
        """
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.phone_number = phone_number
        self.public_base_url = public_base_url.rstrip("/")
        self.speech_timeout_seconds = speech_timeout_seconds
        self._base_url = f"https://api.twilio.com/2010-04-01/Accounts/{account_sid}"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client"""
        if self._client is None or self._client.is_closed:
            kwargs = {"auth": (self.account_sid, self.auth_token), "timeout": 30.0}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    def _speak(self, text: str, audio_url: Optional[str], indent: str) -> str:
        if audio_url:
            return f'{indent}<Play>{xml_escape(audio_url)}</Play>'
        return f'{indent}<Say voice="{SAY_VOICE}">{xml_escape(text)}</Say>'

    def reply_twiml(self, reply_text: str, end_call: bool,
                    audio_url: Optional[str] = None) -> str:
        """
        TwiML for one orchestrator reply

        Args:
            reply_text: What to say
            end_call: Hang up after speaking instead of listening again
            audio_url: Pull URL from speech delivery; <Say> is used when None

        Returns:
            TwiML as string
        """
        if end_call:
            return f'''<?xml version="1.0" encoding="UTF-8"?>
<Response>
{self._speak(reply_text, audio_url, "    ")}
    <Hangup/>
</Response>'''

        action = xml_escape(f"{self.public_base_url}{SPEECH_WEBHOOK_PATH}")
        partial = xml_escape(f"{self.public_base_url}{PARTIAL_WEBHOOK_PATH}")
        return f'''<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Gather input="speech" action="{action}" method="POST" timeout="{self.speech_timeout_seconds}" speechTimeout="auto" speechModel="phone_call" language="en-US" partialResultCallback="{partial}">
{self._speak(reply_text, audio_url, "        ")}
    </Gather>
    <Say voice="{SAY_VOICE}">{xml_escape(NO_INPUT_PROMPT)}</Say>
    <Redirect method="POST">{action}</Redirect>
</Response>'''

    def hangup_twiml(self, message: str = TECHNICAL_DIFFICULTIES) -> str:
        """TwiML that apologizes and hangs up"""
        return f'''<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Say voice="{SAY_VOICE}">{xml_escape(message)}</Say>
    <Hangup/>
</Response>'''

    async def end_call(self, call_sid: str) -> bool:
        """
        End an active call

        Args:
            call_sid: Call SID to end

        Returns:
            True if successful
        """
        if not self.is_configured:
            logger.warning("Twilio: Cannot end call - credentials not configured")
            return False

        client = await self._get_client()
        try:
            response = await client.post(
                f"{self._base_url}/Calls/{call_sid}.json",
                data={"Status": "completed"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Twilio: Error ending call {call_sid}: {e}")
            return False

        if response.status_code == 200:
            logger.info(f"Twilio: Ended call {call_sid}")
            return True
        logger.error(f"Twilio: Failed to end call {call_sid}: {response.status_code}")
        return False

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


def create_twilio_service(settings) -> TwilioService:
    """
    Factory function to create Twilio service from settings

    Args:
        settings: Application settings

    Returns:
        Configured TwilioService instance
    """
    return TwilioService(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        phone_number=settings.twilio_phone_number,
        public_base_url=settings.public_base_url,
    )
