"""Configuration management for the margin engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase configuration (required)
    SUPABASE_URL: str = Field(..., description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(..., description="Supabase service role key")

    # Model providers (required)
    ANTHROPIC_API_KEY: str = Field(..., description="Anthropic API key")
    OPENAI_API_KEY: str = Field(..., description="OpenAI API key (query embeddings)")

    # Environment
    MARGIN_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Embedding configuration
    EMBEDDING_MODEL: str = Field(
        default="text-embedding-3-small", description="OpenAI embedding model"
    )
    EMBEDDING_DIM: int = Field(default=1536, description="Embedding vector dimension")

    # Generation / judging
    MARGIN_GENERATE_MODEL: str = Field(
        default="claude-haiku-4-5-20251001", description="Model drafting candidate nudges"
    )
    MARGIN_JUDGE_MODEL: str = Field(
        default="claude-haiku-4-5-20251001", description="Model scoring candidate nudges"
    )
    MARGIN_GENERATE_MAX_TOKENS: int = Field(default=700, description="Max tokens for drafts")
    MARGIN_JUDGE_MAX_TOKENS: int = Field(default=500, description="Max tokens for judge output")
    MARGIN_JUDGE_MODE: str = Field(
        default="llm", description="Judge implementation: llm or deterministic"
    )

    # Per-stage network timeouts (seconds)
    MARGIN_RETRIEVE_TIMEOUT: float = Field(default=4.0, description="Retrieval timeout")
    MARGIN_GENERATE_TIMEOUT: float = Field(default=10.0, description="Generation timeout")
    MARGIN_JUDGE_TIMEOUT: float = Field(default=8.0, description="Judging timeout")

    # History used for repetition / type-mix math
    MARGIN_HISTORY_LIMIT: int = Field(
        default=3, description="Recent nudges loaded for diversification"
    )

    # Personalization policy
    PERSONALIZATION_BASE_WEIGHT: float = Field(default=2.5, description="Weight with no feedback")
    PERSONALIZATION_UP_STEP: float = Field(default=0.25, description="Gain per up-vote")
    PERSONALIZATION_DOWN_STEP: float = Field(default=0.2, description="Loss per down-vote")
    PERSONALIZATION_MIN_WEIGHT: float = Field(default=0.0, description="Weight floor")
    PERSONALIZATION_MAX_WEIGHT: float = Field(default=5.0, description="Weight ceiling")
    PERSONALIZATION_FEEDBACK_WINDOW: int = Field(
        default=100, description="Most recent feedback rows considered"
    )
    PERSONALIZATION_REASON_PENALTIES: dict[str, float] = Field(
        default={
            "too_vague": 0.15,
            "wrong_connection": 0.25,
            "already_obvious": 0.15,
            "bad_tone": 0.1,
            "not_now": 0.0,
        },
        description="Extra weight loss per down-vote, keyed by reason",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    return Settings()
