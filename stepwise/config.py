"""
Stepwise Configuration

Loads configuration from environment variables with sensible defaults.
Components never read this class implicitly; callers pass values in.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

from .logging_utils import LOG_LEVELS

# Load .env file if it exists
load_dotenv()


SUPPORTED_PROVIDERS = ("ollama", "openai", "anthropic", "google", "groq", "mistral")


class Config:
    """Application configuration loaded from environment variables."""

    # Inference collaborator
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "ollama")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "llama3.1")
    OLLAMA_BASE_URL: str = os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434")
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "nomic-embed-text")

    # Storage
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql://localhost/stepwise")
    DATA_DIR: Path = Path(os.getenv("STEPWISE_DATA_DIR", ".stepwise"))

    # Planner / memory / retrieval budgets
    PLAN_THRESHOLD: float = float(os.getenv("PLAN_THRESHOLD", "0.6"))
    MEMORY_MAX_ENTRIES: int = int(os.getenv("MEMORY_MAX_ENTRIES", "500"))
    VECTOR_MAX_ENTRIES: int = int(os.getenv("VECTOR_MAX_ENTRIES", "5000"))
    CONTEXT_MAX_TOKENS: int = int(os.getenv("CONTEXT_MAX_TOKENS", "4096"))
    SAVE_DEBOUNCE_SECONDS: float = float(os.getenv("SAVE_DEBOUNCE_SECONDS", "2.0"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors for inconsistent values."""
        if cls.LLM_PROVIDER.lower() not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported LLM_PROVIDER '{cls.LLM_PROVIDER}'. "
                f"Choose one of: {', '.join(SUPPORTED_PROVIDERS)}"
            )

        if not 0.0 < cls.PLAN_THRESHOLD <= 2.0:
            raise ValueError("PLAN_THRESHOLD must be in (0, 2]")

        for name in ("MEMORY_MAX_ENTRIES", "VECTOR_MAX_ENTRIES", "CONTEXT_MAX_TOKENS"):
            if getattr(cls, name) <= 0:
                raise ValueError(f"{name} must be a positive integer")

        if cls.SAVE_DEBOUNCE_SECONDS < 0:
            raise ValueError("SAVE_DEBOUNCE_SECONDS cannot be negative")

        if cls.LOG_LEVEL.upper() not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of: {', '.join(LOG_LEVELS)}")

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "Stepwise Configuration:",
            f"  LLM Provider: {cls.LLM_PROVIDER}",
            f"  LLM Model: {cls.LLM_MODEL}",
            f"  Embedding Model: {cls.EMBEDDING_MODEL}",
            f"  Data Dir: {cls.DATA_DIR}",
            f"  Plan Threshold: {cls.PLAN_THRESHOLD}",
            f"  Memory Cap: {cls.MEMORY_MAX_ENTRIES}",
            f"  Context Tokens: {cls.CONTEXT_MAX_TOKENS}",
            f"  Log Level: {cls.LOG_LEVEL.upper()}",
        ]
        return "\n".join(lines)
