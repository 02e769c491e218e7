"""
Configuration settings for the ticket ingestion service
Loads configuration from environment variables with validation
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import Literal, Union


class ConfigurationError(Exception):
    """Required configuration is missing; the service cannot start"""
    pass


DEFAULT_REPLY_INDICATORS = [
    "you mentioned",
    "as discussed",
    "following up",
    "regarding my previous",
    "still waiting",
    "no response",
]


class Settings(BaseSettings):
    """Application settings with environment variable loading"""

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        validate_default=True,
        extra='ignore'
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///data/ticket_ingest.db",
        description="Database connection string"
    )

    # Google OAuth client (tokens themselves live on the company row)
    gmail_client_id: str | None = Field(default=None)
    gmail_client_secret: str | None = Field(default=None)
    gmail_token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint used for refresh"
    )
    gmail_query: str = Field(
        default="in:inbox is:unread",
        description="Gmail search query used when listing new messages"
    )
    gmail_max_results: int = Field(
        default=25,
        ge=1,
        le=500,
        description="Max message ids to list per page"
    )
    gmail_max_pages: int = Field(
        default=1,
        ge=1,
        description="Max listing pages walked per poll cycle"
    )
    token_refresh_margin_seconds: int = Field(
        default=300,
        ge=0,
        description="Refresh the access token when it expires within this margin"
    )

    # IMAP / SMTP defaults
    imap_port: int = Field(default=993)
    smtp_port: int = Field(default=587)
    mail_timeout_seconds: int = Field(
        default=15,
        ge=1,
        description="Socket timeout for IMAP and SMTP sessions"
    )

    # Polling Configuration
    email_poll_interval_seconds: int = Field(
        default=60,
        ge=1,
        description="Email polling interval per connected mailbox"
    )
    max_messages_per_cycle: int = Field(
        default=5,
        ge=1,
        description="Upper bound on messages processed per tenant per cycle"
    )
    max_processing_attempts: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed cycles before a message is recorded as skipped"
    )

    # AI Configuration
    ai_provider: Literal["openai", "anthropic", "gemini"] = Field(
        default="gemini",
        description="AI provider used for complaint classification"
    )
    openai_api_key: str | None = Field(default=None)
    anthropic_api_key: str | None = Field(default=None)
    google_api_key: str | None = Field(default=None)
    ai_model: str = Field(
        default="gemini-1.5-flash-latest",
        description="AI model identifier"
    )
    ai_temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=2.0,
        description="AI response temperature"
    )
    ai_max_tokens: int = Field(
        default=16,
        ge=1,
        le=16000,
        description="Maximum tokens for the classifier answer"
    )
    ai_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Request timeout for a single classifier call"
    )
    classifier_max_body_chars: int = Field(
        default=1000,
        ge=1,
        description="Body length submitted to the classifier after HTML stripping"
    )
    classifier_min_interval_seconds: float = Field(
        default=10.0,
        ge=0.0,
        description="Minimum delay between two classifier calls"
    )

    # Dedup / reply matching windows
    duplicate_window_days: int = Field(default=30, ge=1)
    reply_prefix_window_days: int = Field(default=7, ge=1)
    reply_indicator_window_days: int = Field(default=14, ge=1)
    reply_indicator_phrases: list[str] = Field(
        default_factory=lambda: list(DEFAULT_REPLY_INDICATORS),
        description="Body phrases implying a continuation of an earlier conversation"
    )

    # Ticket creation
    sentiment_high_threshold: float = Field(
        default=-5,
        description="Sentiment score strictly below this gives high priority"
    )
    sentiment_medium_threshold: float = Field(
        default=-2,
        description="Sentiment score strictly below this gives medium priority"
    )
    ticket_number_max_retries: int = Field(
        default=5,
        ge=1,
        description="Candidate ticket numbers tried before giving up"
    )

    # Acknowledgment
    frontend_url: str = Field(
        default="http://localhost:5173",
        description="Base URL of the customer portal"
    )
    ack_async: bool = Field(
        default=False,
        description="Send acknowledgments from a background worker"
    )

    # Web API
    jwt_secret_key: str = Field(
        default="change-this-secret-key-in-production-use-openssl-rand-hex-32",
        description="Secret key used to verify bearer tokens"
    )
    jwt_algorithm: str = Field(default="HS256")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    serve_api: bool = Field(
        default=True,
        description="Serve the web API in the main process alongside the pollers"
    )

    # Logging Configuration
    log_level: str = Field(default="INFO")
    log_file: str = Field(default="logs/ticket_ingest.log")

    @field_validator(
        'gmail_max_results', 'gmail_max_pages', 'email_poll_interval_seconds',
        'max_messages_per_cycle', 'max_processing_attempts', 'ai_max_tokens', 'ticket_number_max_retries',
        mode='before'
    )
    @classmethod
    def validate_integers(cls, v: Union[str, int]) -> int:
        """Convert string integers from env vars to int"""
        try:
            return int(v)
        except (ValueError, TypeError):
            raise ValueError("Must be a valid integer")

    @field_validator('reply_indicator_phrases', mode='before')
    @classmethod
    def parse_phrases(cls, v):
        """Allow JSON or a semicolon separated list in env."""
        if isinstance(v, list) or v is None:
            return v or list(DEFAULT_REPLY_INDICATORS)
        s = str(v).strip()
        if not s:
            return list(DEFAULT_REPLY_INDICATORS)
        if s.startswith('['):
            import json
            return [str(p).lower() for p in json.loads(s)]
        return [part.strip().lower() for part in s.split(';') if part.strip()]

    @field_validator('sentiment_medium_threshold')
    @classmethod
    def validate_thresholds(cls, v: float, info) -> float:
        """Medium threshold must not sit below the high threshold"""
        high = info.data.get('sentiment_high_threshold')
        if high is not None and v < high:
            raise ValueError("sentiment_medium_threshold must be >= sentiment_high_threshold")
        return v

    def ai_api_key(self) -> str | None:
        """API key for the configured AI provider"""
        return {
            'openai': self.openai_api_key,
            'anthropic': self.anthropic_api_key,
            'gemini': self.google_api_key,
        }[self.ai_provider]

    def validate_startup(self, require_gmail: bool = True) -> None:
        """
        Check credentials the service cannot run without

        Raises:
            ConfigurationError: listing every missing value
        """
        missing = []
        if not self.ai_api_key():
            missing.append(f"{self.ai_provider} API key")
        if require_gmail and not (self.gmail_client_id and self.gmail_client_secret):
            missing.append("GMAIL_CLIENT_ID / GMAIL_CLIENT_SECRET")
        if missing:
            raise ConfigurationError("Missing configuration: " + ", ".join(missing))


def get_settings(**overrides) -> Settings:
    """Build a fresh settings object with explicit overrides"""
    return Settings(**overrides)


# Global settings instance
settings = Settings()
