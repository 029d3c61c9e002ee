"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. Secrets stay out of source code: the .env file is gitignored,
and .env.example provides a safe template for developers.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Usage:
    from payauth.config import settings
    print(settings.FACE_MATCH_THRESHOLD)
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the payment authorization service.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Signs session JWTs and keys the fingerprint digest
      - TEMPLATE_ENCRYPTION_KEY: Fernet key for credential templates at rest
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "PayAuth API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Database ---
    # SQLite for development; swap to a postgresql+asyncpg URL for production
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/payauth.db"

    # --- Sessions ---
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    SESSION_EXPIRE_MINUTES: int = 60 * 24 * 7
    # A password confirmation keeps the session "fresh" for this long
    FRESHNESS_WINDOW_SECONDS: int = 300

    # --- Credential templates ---
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    TEMPLATE_ENCRYPTION_KEY: str

    FACE_EMBEDDING_DIMENSIONS: int = 128
    FACE_MATCH_THRESHOLD: float = 0.6
    VOICE_EMBEDDING_DIMENSIONS: int = 192
    VOICE_MATCH_THRESHOLD: float = 0.80

    # --- Device-bound public-key ceremonies ---
    RP_ID: str = "localhost"
    RP_ORIGIN: str = "http://localhost:3000"

    # --- Capture windows (seconds a Verifying state may stay open) ---
    DEVICE_KEY_CEREMONY_SECONDS: int = 60
    FACE_CAPTURE_SECONDS: int = 30
    VOICE_CAPTURE_SECONDS: int = 15
    FINGERPRINT_CAPTURE_SECONDS: int = 30
    PIN_ENTRY_SECONDS: int = 120

    # --- Authorization attempts ---
    ATTEMPT_TTL_SECONDS: int = 600
    MAX_VERIFICATION_ATTEMPTS: int = 3
    # Voice and legacy fingerprint cannot authorize more than this (minor units)
    LOW_ASSURANCE_MAX_AMOUNT_MINOR: int = 200_000

    # --- Rate limits (requests per window) ---
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    SIGNUP_RATE_LIMIT: int = 5
    LOGIN_RATE_LIMIT: int = 10
    # Per account; each attempt allows MAX_VERIFICATION_ATTEMPTS proofs
    AUTHORIZATION_RATE_LIMIT: int = 20

    # --- Downstream settlement ---
    # None selects the in-process mock gateway
    SETTLEMENT_URL: str | None = None
    SETTLEMENT_TIMEOUT_SECONDS: float = 5.0
    SETTLEMENT_MAX_ATTEMPTS: int = 3
    SETTLEMENT_BACKOFF_SECONDS: float = 0.2

    # --- CORS ---
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
