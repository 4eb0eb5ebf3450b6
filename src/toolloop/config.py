"""Configuration settings for the application."""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = False
    DATA_DIR: str = "./data"
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # Model Configuration
    MODEL_CLIENT: str = "gemini"
    GEMINI_API_KEY: str | None = None
    GEMINI_MODEL: str = "gemini-1.5-flash"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    TEMPERATURE: float = 0.1
    REQUEST_TIMEOUT: float = 60.0
    SYSTEM_INSTRUCTION_FILE: str | None = None

    # Agent Loop Configuration
    MAX_RESPONSE_LOOP: int = 5  # Model round-trips per user message
    CALL_ORDER: str = "request"  # Options: request, stack

    # Workspace Configuration
    WORKSPACE_ROOT: str = "."
    PROTECTED_DIRECTORIES: List[str] = [".git", ".env"]

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
