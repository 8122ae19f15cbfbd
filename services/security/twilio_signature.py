"""
=====================================================
Dynamic AI Calling Platform - Webhook Signature Validation
=====================================================
Twilio signs every webhook with X-Twilio-Signature; requests that
fail validation never reach the orchestrator.
"""

from typing import Optional

from fastapi import HTTPException, Request, status
from twilio.request_validator import RequestValidator
from loguru import logger


class TwilioSignatureValidator:
    """
    Validates Twilio webhook request signatures

    Twilio signs the full public URL plus the POST form parameters,
    so behind a reverse proxy the URL is rebuilt from the public base URL.
    """

    def __init__(self, auth_token: str, public_base_url: str = ""):
        """
        Args:
            auth_token: Twilio account auth token
            public_base_url: Externally reachable base URL Twilio calls
        """
        self.validator = RequestValidator(auth_token)
        self.public_base_url = public_base_url.rstrip("/")

    def signed_url(self, request: Request) -> str:
        """URL as Twilio saw it"""
        if self.public_base_url:
            url = f"{self.public_base_url}{request.url.path}"
        else:
            proto = request.headers.get("X-Forwarded-Proto", request.url.scheme)
            host = request.headers.get("X-Forwarded-Host", request.headers.get("Host", ""))
            url = f"{proto}://{host}{request.url.path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        return url

    async def validate_request(self, request: Request, url: Optional[str] = None) -> bool:
        """
        Validate a Twilio webhook request

        Args:
            request: Incoming request
            url: Optional URL override

        Returns:
            True if the signature matches
        """
        signature = request.headers.get("X-Twilio-Signature", "")
        if not signature:
            logger.warning("Twilio: Missing X-Twilio-Signature header")
            return False

        request_url = url or self.signed_url(request)
        if request.method == "POST":
            params = dict(await request.form())
        else:
            params = {}

        is_valid = self.validator.validate(request_url, params, signature)
        if not is_valid:
            logger.warning(f"Twilio: Invalid signature for {request_url} (params: {list(params.keys())})")
        return is_valid


async def verify_twilio_signature(request: Request) -> None:
    """
    FastAPI dependency for webhook routes

    A no-op unless the app carries a validator (TWILIO_VALIDATE_SIGNATURES
    with an auth token configured).

    Raises:
        HTTPException: 403 on a missing or invalid signature
    """
    validator: Optional[TwilioSignatureValidator] = getattr(request.app.state, "signature_validator", None)
    if validator is None:
        return
    if not await validator.validate_request(request):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid Twilio signature")
