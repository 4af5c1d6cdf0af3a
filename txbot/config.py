"""Configuration management for txbot."""

import logging
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LLM Configuration
    llm_provider: Literal["ollama", "openai"] = "ollama"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"
    llm_temperature: float = 0.1  # Low temperature for consistent, structured output
    llm_max_tokens: int = 200
    llm_timeout_seconds: float = 30.0

    # OCR configuration
    tesseract_cmd: str | None = None  # Falls back to "tesseract" on PATH
    ocr_language: str = "eng"
    ocr_timeout_seconds: float = 30.0
    max_image_bytes: int = 10 * 1024 * 1024

    # Duplicate detection
    duplicate_tolerance: float = 0.05
    use_merchant_date_index: bool = True

    # Storage
    db_timeout_seconds: float = 5.0
    default_history_limit: int = 100

    # Development mode
    dev_mode: bool = True
    log_level: str = "INFO"

    # Data directory
    data_dir: Path = Path.home() / ".txbot"

    # API settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # LLM_PROVIDER and llm_provider both work
        extra="ignore",  # Ignore extra environment variables
    )

    @property
    def db_path(self) -> Path:
        """Get the SQLite database path."""
        suffix = "dev" if self.dev_mode else "prod"
        return self.data_dir / f"txbot_{suffix}.db"

    @property
    def uploads_path(self) -> Path:
        """Get the directory where uploaded receipts wait for OCR."""
        return self.data_dir / "uploads"

    def ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_path.mkdir(parents=True, exist_ok=True)

    def summary(self) -> dict[str, object]:
        """Configuration values safe to print; the API key is reduced to set/not set."""
        return {
            "LLM provider": self.llm_provider,
            "OpenAI API key": "set" if self.openai_api_key else "not set",
            "OpenAI model": self.openai_model,
            "Ollama": f"{self.ollama_model} at {self.ollama_host}",
            "LLM timeout": f"{self.llm_timeout_seconds}s",
            "Tesseract": f"{self.tesseract_cmd or 'tesseract (PATH)'} [{self.ocr_language}]",
            "Max image size": f"{self.max_image_bytes / 1024 / 1024:.0f} MB",
            "Duplicate tolerance": f"{self.duplicate_tolerance:.0%}",
            "Merchant/date index": self.use_merchant_date_index,
            "Dev mode": self.dev_mode,
            "Database": self.db_path,
            "Uploads": self.uploads_path,
            "API": f"{self.api_host}:{self.api_port}",
        }

    def log_config(self) -> None:
        """Log current configuration with sensitive values redacted."""
        logger.info("Configuration loaded:")
        for label, value in self.summary().items():
            logger.info(f"  {label + ':':<22}{value}")


def configure_logging(level: str | None = None) -> None:
    """Apply the configured log level to the root logger."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# Global settings instance
settings = Settings()
