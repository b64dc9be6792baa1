from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Security: Read from .env, never hardcode the key here
    OPENAI_API_KEY: str | None = None

    # Model Configuration
    OPENAI_MODEL: str = "gpt-4o"

    # Generation Parameters
    LLM_TEMPERATURE: float = 0.0

    # Orchestration
    MAX_TOOL_LOOPS: int = 5
    HISTORY_WINDOW: int = 10  # Messages shown to the model in response prompts
    MIN_ROUTE_SCORE: int = 0  # Best route score below this falls back to an unscoped reply
    AUTO_SAVE: bool = True

    # Persistence
    SESSION_STORE: Literal["memory", "sql"] = "memory"
    DATABASE_URL: str = "sqlite:///./route_orchestrator.db"

    LOG_LEVEL: str = "INFO"

    # Loads from a .env file in the root directory
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

# Singleton instance
settings = Settings()
