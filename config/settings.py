"""
=====================================================
Dynamic AI Calling Platform - Configuration Module
=====================================================
Centralized configuration management using pydantic-settings
"""

import json
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True
    )

    # =====================================================
    # APPLICATION
    # =====================================================
    app_name: str = "Dynamic AI Calling Platform"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: str = Field(default="logs/calling-platform.log", alias="LOG_FILE")
    debug: bool = False

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    # Public base URL Twilio uses to reach our webhooks and TTS pull URLs
    public_base_url: str = Field(default="", alias="PUBLIC_BASE_URL")
    allowed_origins_str: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="ALLOWED_ORIGINS"
    )

    # =====================================================
    # DATABASE
    # =====================================================
    database_url: str = Field(default="", alias="DATABASE_URL")

    # =====================================================
    # TWILIO
    # =====================================================
    twilio_account_sid: str = Field(default="", alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: str = Field(default="", alias="TWILIO_AUTH_TOKEN")
    twilio_phone_number: str = Field(default="", alias="TWILIO_PHONE_NUMBER")
    twilio_validate_signatures: bool = Field(default=False, alias="TWILIO_VALIDATE_SIGNATURES")

    # =====================================================
    # LLM PROVIDERS
    # =====================================================
    llm_default_provider: str = Field(default="openai", alias="LLM_DEFAULT_PROVIDER")
    llm_timeout_seconds: float = 4.0  # Per provider; the gateway tries providers in order
    llm_max_tokens: int = 200
    llm_temperature: float = 0.7
    llm_history_window: int = 10  # Messages replayed to the model per turn

    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")

    azure_openai_api_key: str = Field(default="", alias="AZURE_OPENAI_API_KEY")
    azure_openai_endpoint: str = Field(default="", alias="AZURE_OPENAI_ENDPOINT")
    azure_openai_deployment: str = Field(default="gpt-4o-mini", alias="AZURE_OPENAI_DEPLOYMENT")
    azure_openai_api_version: str = Field(default="2024-06-01", alias="AZURE_OPENAI_API_VERSION")

    openrouter_api_key: str = Field(default="", alias="OPENROUTER_API_KEY")
    openrouter_model: str = Field(default="openai/gpt-4o-mini", alias="OPENROUTER_MODEL")
    openrouter_app_name: str = "Dynamic AI Calling Platform"

    # =====================================================
    # FUNCTION EXECUTION
    # =====================================================
    function_timeout_seconds: float = 10.0
    function_max_retries: int = 3
    function_backoff_seconds: float = 1.0  # Linear: backoff * attempt

    # =====================================================
    # CALENDAR
    # =====================================================
    calcom_api_key: str = Field(default="", alias="CALCOM_API_KEY")
    calcom_base_url: str = Field(default="https://api.cal.com/v1", alias="CALCOM_BASE_URL")
    calcom_enabled: bool = Field(default=True, alias="CALCOM_ENABLED")
    calendar_timeout_seconds: float = 3.0  # Per provider call; calendar functions allow every attempt plus the internal store
    calendar_external_attempts: int = 2
    availability_cache_ttl_seconds: int = 15 * 60

    # Internal slot store working hours
    internal_calendar_day_start: str = "09:00"
    internal_calendar_day_end: str = "17:00"
    internal_calendar_slot_minutes: int = 30
    internal_calendar_workdays: str = "0,1,2,3,4"  # Monday=0

    # =====================================================
    # SMS (Telnyx)
    # =====================================================
    telnyx_api_key: str = Field(default="", alias="TELNYX_API_KEY")
    telnyx_phone_number: str = Field(default="", alias="TELNYX_PHONE_NUMBER")

    # =====================================================
    # ELEVENLABS TTS
    # =====================================================
    elevenlabs_api_key: str = Field(default="", alias="ELEVENLABS_API_KEY")
    elevenlabs_voice_id: str = Field(default="21m00Tcm4TlvDq8ikWAM", alias="ELEVENLABS_VOICE_ID")
    elevenlabs_model: str = "eleven_turbo_v2"
    elevenlabs_stability: float = 0.25
    elevenlabs_similarity_boost: float = 0.75
    elevenlabs_output_format: str = "mp3_44100_128"
    tts_timeout_seconds: float = 4.0
    tts_cache_ttl_seconds: int = 20 * 60
    tts_cache_max_entries: int = 150
    tts_truncate_chars: int = 200
    tts_prewarm: bool = Field(default=False, alias="TTS_PREWARM")

    # =====================================================
    # CONVERSATION
    # =====================================================
    # Agent used when a webhook carries no agentId (and seeded when there is no database)
    default_agent_id: str = Field(default="default", alias="DEFAULT_AGENT_ID")
    default_agent_name: str = Field(default="Assistant", alias="DEFAULT_AGENT_NAME")
    default_agent_prompt: str = Field(default="", alias="DEFAULT_AGENT_PROMPT")
    speech_confidence_floor: float = 0.1
    session_inactivity_ceiling_seconds: int = 24 * 60 * 60
    session_sweep_interval_seconds: int = 60 * 60
    session_end_grace_seconds: float = 5.0
    # Twilio abandons a webhook after 15s; a turn past this speaks the fallback reply
    turn_timeout_seconds: float = 13.0
    conversation_log_max_entries: int = 10000  # In-memory log only (no DATABASE_URL)

    # =====================================================
    # PROPERTIES
    # =====================================================
    @property
    def allowed_origins(self) -> List[str]:
        """Get allowed origins as a list"""
        return self._parse_origins_string(self.allowed_origins_str)

    @property
    def workdays(self) -> List[int]:
        """Working weekdays of the internal calendar (Monday=0)"""
        return [int(d) for d in self.internal_calendar_workdays.split(",") if d.strip()]

    def _parse_origins_string(self, origins_str: str) -> List[str]:
        """Parse origins from comma-separated string"""
        if not origins_str:
            return ["http://localhost:3000"]

        # Try JSON parsing first (for backward compatibility)
        try:
            parsed = json.loads(origins_str)
            if isinstance(parsed, list):
                return parsed
        except (json.JSONDecodeError, TypeError):
            pass

        origins = [origin.strip() for origin in origins_str.split(',')]
        return [o for o in origins if o]


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get settings instance (for dependency injection)"""
    return settings
