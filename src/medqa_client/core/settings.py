"""Client settings and configuration.

This module defines all configuration options for the MedQA client.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Hosted data/auth service
    remote_url: str = Field(default="http://localhost:54321", alias="REMOTE_STORE_URL")
    remote_anon_key: str = Field(default="", alias="REMOTE_STORE_ANON_KEY")
    remote_http_timeout_seconds: float = Field(
        default=10.0,
        alias="REMOTE_STORE_HTTP_TIMEOUT_SECONDS",
    )
    # Refresh the access token when it expires within this many seconds
    token_refresh_margin_seconds: int = Field(default=60, alias="TOKEN_REFRESH_MARGIN_SECONDS")

    # Stored credential persistence
    credential_database_url: str = Field(
        default="sqlite:///./medqa_session.db",
        alias="CREDENTIAL_DATABASE_URL",
    )
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Object storage for question images
    question_image_bucket: str = Field(default="question_images", alias="QUESTION_IMAGE_BUCKET")
    image_cache_control_seconds: int = Field(default=3600, alias="IMAGE_CACHE_CONTROL_SECONDS")

    # Content edit limits
    max_question_tags: int = Field(default=5, alias="MAX_QUESTION_TAGS")
    max_question_images: int = Field(default=3, alias="MAX_QUESTION_IMAGES")
    max_image_bytes: int = Field(default=5 * 1024 * 1024, alias="MAX_IMAGE_BYTES")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )


settings = Settings()
