from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Redis settings (token store, quota/cooldown documents, consent signals)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Gmail OAuth settings
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None
    GOOGLE_REDIRECT_URI: str | None = None
    GMAIL_SCOPE: str = "https://www.googleapis.com/auth/gmail.send"

    ENCRYPTION_KEY: str | None = None

    # =================================================================
    # NUDGE POLICY
    # =================================================================
    NUDGE_DAILY_LIMIT: int = 100
    NUDGE_COOLDOWN_DAYS: int = 14
    NUDGE_BATCH_DELAY_SECONDS: float = 1.5

    # Gmail send
    GMAIL_SEND_TIMEOUT_SECONDS: float = 30.0
    GMAIL_RATE_LIMIT_RETRIES: int = 0  # 429 maps straight to rate_limited
    GMAIL_RATE_LIMIT_BACKOFF_SECONDS: float = 60.0

    # =================================================================
    # CONSENT FLOW
    # =================================================================
    CONSENT_TIMEOUT_SECONDS: float = 300.0  # 5 minutes
    CONSENT_POLL_INTERVAL_SECONDS: float = 0.3
    CONSENT_MIN_CLOSE_CHECK_SECONDS: float = 10.0
    CONSENT_CLOSE_GRACE_SECONDS: float = 15.0
    CONSENT_WINDOW_WIDTH: int = 500
    CONSENT_WINDOW_HEIGHT: int = 600

    TOKEN_EXPIRY_BUFFER_SECONDS: int = 300  # 5 minutes
    DEFAULT_TOKEN_TTL_SECONDS: int = 3600

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def gmail_redirect_uri(self) -> str:
        """Get Gmail OAuth redirect URI with fallback."""
        if self.GOOGLE_REDIRECT_URI:
            return self.GOOGLE_REDIRECT_URI
        # Default for local development
        return "http://localhost:8000/oauth2callback"

    def get_consent_config(self) -> dict:
        """Consent flow timing, as keyword arguments for ConsentFlowCoordinator."""
        return {
            "timeout_s": self.CONSENT_TIMEOUT_SECONDS,
            "poll_interval_s": self.CONSENT_POLL_INTERVAL_SECONDS,
            "min_close_check_s": self.CONSENT_MIN_CLOSE_CHECK_SECONDS,
            "close_grace_s": self.CONSENT_CLOSE_GRACE_SECONDS,
            "window_width": self.CONSENT_WINDOW_WIDTH,
            "window_height": self.CONSENT_WINDOW_HEIGHT,
        }


settings = Settings()
