# config.py

"""
Centralized configuration for the narrative engine.
Uses environment variables with sensible defaults.
"""

import os
import logging
from typing import Dict, Any

from dotenv import load_dotenv

load_dotenv()

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


class Config:
    """Configuration management driven by environment variables."""

    def __init__(self):
        """Initialize configuration from environment variables."""
        # LLM Configuration (OpenAI-compatible endpoint, OpenRouter by default)
        self.LLM_API_KEY = os.getenv("OPEN_ROUTER_API_KEY") or os.getenv("OPENAI_API_KEY")
        self.LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://openrouter.ai/api/v1")
        self.LLM_HTTP_REFERER = os.getenv("OPEN_ROUTER_HTTP_REFERER")
        self.LLM_TITLE = os.getenv("OPEN_ROUTER_TITLE")
        self.LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.9"))
        self.LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "90"))
        self.LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))

        # Embedding Configuration
        self.EMBEDDING_API_KEY = os.getenv("EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY")
        self.EMBEDDING_BASE_URL = os.getenv("EMBEDDING_BASE_URL") or None
        self.EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
        self.EMBEDDING_DIMENSIONS = int(os.getenv("EMBEDDING_DIMENSIONS", "1024"))
        self.EMBEDDING_REQUEST_DIMENSIONS = _env_flag("EMBEDDING_REQUEST_DIMENSIONS", "true")
        self.EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "30"))

        # Turn loop Configuration
        self.MAX_TOOL_ROUNDS = int(os.getenv("MAX_TOOL_ROUNDS", "4"))
        self.TRANSCRIPT_WINDOW_CHARS = int(os.getenv("TRANSCRIPT_WINDOW_CHARS", "8000"))
        self.RETRIEVAL_MESSAGE_WINDOW = int(os.getenv("RETRIEVAL_MESSAGE_WINDOW", "6"))
        self.CARD_LIMIT = int(os.getenv("CARD_LIMIT", "6"))
        self.MEMORY_LIMIT = int(os.getenv("MEMORY_LIMIT", "6"))
        self.RELATIONSHIP_LIMIT = int(os.getenv("RELATIONSHIP_LIMIT", "4"))
        self.TOOL_TIMEOUT = float(os.getenv("TOOL_TIMEOUT", "60"))

        # Summary Configuration
        self.SUMMARY_MAX_ATTEMPTS = int(os.getenv("SUMMARY_MAX_ATTEMPTS", "3"))
        self.SUMMARY_TRANSCRIPT_CHARS = int(os.getenv("SUMMARY_TRANSCRIPT_CHARS", "20000"))
        self.SUMMARY_TEMPERATURE = float(os.getenv("SUMMARY_TEMPERATURE", "0.2"))

        # Database Configuration
        self.DB_DSN = os.getenv("DB_DSN") or os.getenv("DATABASE_URL")
        self.DB_POOL_MIN_SIZE = int(os.getenv("DB_POOL_MIN_SIZE", "2"))
        self.DB_POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX_SIZE", "10"))
        self.DB_COMMAND_TIMEOUT = float(os.getenv("DB_COMMAND_TIMEOUT", "60"))
        self.DB_ACQUIRE_TIMEOUT = float(os.getenv("DB_ACQUIRE_TIMEOUT", "30"))

        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # Initialize logging configuration
        self._configure_logging()

        logging.debug("Configuration initialized")

    def _configure_logging(self):
        """Configure logging based on settings."""
        log_levels = {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL
        }

        log_level = log_levels.get(self.LOG_LEVEL.upper(), logging.INFO)

        logging.basicConfig(
            level=log_level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def llm_default_headers(self) -> Dict[str, str]:
        """Optional attribution headers understood by OpenRouter."""
        headers = {}
        if self.LLM_HTTP_REFERER:
            headers["HTTP-Referer"] = self.LLM_HTTP_REFERER
        if self.LLM_TITLE:
            headers["X-Title"] = self.LLM_TITLE
        return headers

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary, hiding secrets."""
        return {
            k: ("***" if "API_KEY" in k and v else v)
            for k, v in self.__dict__.items()
            if not k.startswith('_')
        }

    def __str__(self) -> str:
        return str(self.to_dict())

    def get(self, key, default=None):
        """Get configuration value with optional default."""
        return getattr(self, key, default)


# Create global instance
CONFIG = Config()


def get_config():
    """Get the global configuration instance."""
    return CONFIG


def get(key, default=None):
    """Get configuration value with fallback."""
    return CONFIG.get(key, default)
