"""Application configuration"""
from pydantic_settings import BaseSettings
from typing import Optional
from pathlib import Path


class Settings(BaseSettings):
    """Settings from environment. Every key has a usable local default."""

    DATABASE_URL: str = "sqlite:///./atlas.db"

    OPENAI_API_KEY: Optional[str] = None
    ANTHROPIC_API_KEY: Optional[str] = None
    GEMINI_API_KEY: Optional[str] = None
    SERPER_API_KEY: Optional[str] = None

    DEFAULT_OPENAI_MODEL: str = "gpt-4o-mini"
    DEFAULT_ANTHROPIC_MODEL: str = "claude-3-5-sonnet-latest"
    DEFAULT_GEMINI_MODEL: str = "gemini-2.0-flash"
    AGENT_MAX_TOKENS: int = 2048

    OPEN_REGISTER_API_KEY: Optional[str] = None
    OPEN_REGISTER_BASE_URL: str = "https://api.openregister.de"

    # Trailing-edge debounce for persistence hand-off
    PERSIST_DEBOUNCE_SECONDS: float = 1.0
    # Delay between a write and the auto-trigger check that follows it
    AUTO_TRIGGER_DELAY_SECONDS: float = 0.1
    # Empty = load the bundled seed vertical
    SEED_DATA_PATH: Optional[str] = None

    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    FRONTEND_URL: str = "http://localhost:3000"
    API_V1_PREFIX: str = "/api/v1"
    PROJECT_NAME: str = "Atlas Grid"
    VERSION: str = "1.0.0"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    @property
    def openai_enabled(self) -> bool:
        return bool((self.OPENAI_API_KEY or "").strip())

    @property
    def anthropic_enabled(self) -> bool:
        return bool((self.ANTHROPIC_API_KEY or "").strip())

    @property
    def gemini_enabled(self) -> bool:
        return bool((self.GEMINI_API_KEY or "").strip())

    @property
    def open_register_enabled(self) -> bool:
        return bool((self.OPEN_REGISTER_API_KEY or "").strip())

    @property
    def seed_data_path(self) -> Path:
        """Seed file for an empty backing store (env or bundled default)."""
        if self.SEED_DATA_PATH:
            return Path(self.SEED_DATA_PATH)
        return Path(__file__).parent / "data" / "seed.yaml"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
