"""
=====================================================
Dynamic AI Calling Platform - Security
=====================================================
"""

from loguru import logger

from config.settings import Settings
from .twilio_signature import TwilioSignatureValidator, verify_twilio_signature

__all__ = [
    'TwilioSignatureValidator',
    'verify_twilio_signature',
    'create_signature_validator',
]


def create_signature_validator(settings: Settings):
    """
    Validator for webhook routes, or None when validation is off

    Args:
        settings: Application settings

    Returns:
        TwilioSignatureValidator or None
    """
    if not settings.twilio_validate_signatures:
        return None
    if not settings.twilio_auth_token:
        logger.warning("Twilio: Signature validation requested but TWILIO_AUTH_TOKEN is not set, skipping")
        return None
    return TwilioSignatureValidator(settings.twilio_auth_token, settings.public_base_url)
