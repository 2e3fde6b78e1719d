from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pathlib import Path

# Find the backend directory (where .env is located)
BACKEND_DIR = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(BACKEND_DIR / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    PROJECT_NAME: str = "Clinical Trial Eligibility Engine"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

    # Trial database (JSON export of the slot-filled criteria)
    TRIAL_DATABASE_PATH: Optional[str] = None

    # LLM Settings - supports multiple keys for rate limit fallback
    # Fallback order: Groq 1 -> Gemini 1 -> Gemini 2 -> Groq 2 (last resort)
    GROQ_API_KEY: Optional[str] = None
    GROQ_API_KEY_2: Optional[str] = None  # Last resort backup
    GROQ_MODEL: str = "llama-3.1-8b-instant"

    # Google Gemini
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_API_KEY_2: Optional[str] = None  # Gemini backup
    GEMINI_MODEL: str = "gemini-2.0-flash"

    # Semantic matching
    AI_MATCHING_ENABLED: bool = True
    SEMANTIC_TIMEOUT_SECONDS: float = 15.0
    SEMANTIC_BATCH_LIMIT: int = 50
    AI_CONFIDENCE_CAP: float = 0.9

    # Confidence thresholds for AI-derived verdicts
    CONFIDENCE_EXCLUDE: float = 0.8
    CONFIDENCE_REVIEW: float = 0.5
    CONFIDENCE_IGNORE: float = 0.3

    # Semantic response cache
    CACHE_MAX_SIZE: int = 1000
    CACHE_TTL_MINUTES: int = 60


settings = Settings()
