"""
Application configuration.

All settings are loaded from environment variables. No defaults for secrets —
if a required secret is missing, the app fails to start with a clear error.

Usage:
    from callbot.config import settings
    print(settings.llm_api_url)
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Literal, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Completion API (Llama-compatible chat endpoint) ---
    llm_api_key: str = Field(description="Bearer token for the completion API")
    llm_api_url: str = Field(description="Full URL of the chat completion endpoint")
    llm_model: str = Field(default="Llama-3.3-70B-Instruct")
    llm_temperature: float = Field(default=0.1)
    llm_timeout_seconds: float = Field(default=60.0)

    # Request-rate limit: at most N calls per window
    llm_rate_limit_requests: int = Field(default=50)
    llm_rate_limit_window_seconds: float = Field(default=1.0)
    # Token-volume limit; 0 disables the token-aware limiter
    llm_token_budget: int = Field(default=0)
    llm_token_window_seconds: float = Field(default=60.0)

    # Max output tokens per prompt purpose
    llm_max_tokens_vendor: int = Field(default=10)
    llm_max_tokens_relevance: int = Field(default=10)
    llm_max_tokens_needed_info: int = Field(default=150)
    llm_max_tokens_extraction: int = Field(default=400)
    llm_max_tokens_phone: int = Field(default=25)
    llm_max_tokens_summary: int = Field(default=500)
    llm_max_tokens_event_fallback: int = Field(default=200)
    llm_max_tokens_role: int = Field(default=20)

    # --- Email lookup pipeline ---
    gmail_max_results: int = Field(default=50)
    max_choices_to_show: int = Field(default=5)
    max_content_length: int = Field(
        default=10000,
        description="Characters of email content sent to the relevance classifier",
    )

    # --- Google OAuth / APIs ---
    google_client_id: str = Field(description="Google OAuth client ID")
    google_client_secret: str = Field(description="Google OAuth client secret")
    google_redirect_uri: str = Field(
        default="http://localhost:8000/auth/callback",
        description="OAuth redirect URI (must match the Google Cloud console entry)",
    )
    google_scopes: list[str] = Field(
        default=[
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/calendar.events",
            "https://www.googleapis.com/auth/calendar.settings.readonly",
            "https://www.googleapis.com/auth/calendar.readonly",
        ],
    )
    gmail_base_url: str = Field(default="https://gmail.googleapis.com/gmail/v1")
    calendar_base_url: str = Field(default="https://www.googleapis.com/calendar/v3")

    # --- Telephony (ElevenLabs conversational AI over Twilio) ---
    elevenlabs_api_key: str = Field(description="ElevenLabs API key")
    elevenlabs_agent_id: str = Field(description="ElevenLabs agent ID")
    elevenlabs_phone_number_id: str = Field(description="ElevenLabs phone number ID")
    elevenlabs_base_url: str = Field(default="https://api.elevenlabs.io")
    elevenlabs_webhook_secret: Optional[str] = Field(
        default=None,
        description="HMAC secret for webhook signatures. Unset skips verification.",
    )
    call_session_ttl_seconds: int = Field(default=3600)

    # --- Session / Security ---
    session_secret_key: str = Field(description="Secret key for encrypting session cookies")
    session_max_age_seconds: int = Field(default=7 * 24 * 3600)

    # --- App ---
    app_name: str = Field(default="Call Assistant")
    app_env: Literal["development", "staging", "production"] = Field(default="development")
    app_base_url: str = Field(default="http://localhost:8000")
    log_level: str = Field(default="info")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
