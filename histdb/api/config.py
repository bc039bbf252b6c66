"""
Configuration for the HistDB HTTP API.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """HTTP API configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, description="Bind port")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins",
    )

    # Set to false to expose reads and ledger verification only
    allow_writes: bool = Field(default=True, description="Enable write endpoints")

    model_config = {"env_prefix": "HISTDB_API_"}
