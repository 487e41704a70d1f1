"""Sync client configuration using pydantic-settings."""
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """
    Settings for clients of the Bookmarks API.

    Loaded from ``BOOKMARKS_``-prefixed environment variables, e.g.
    ``BOOKMARKS_API_URL`` and ``BOOKMARKS_API_TOKEN``.
    """

    model_config = SettingsConfigDict(
        env_prefix="BOOKMARKS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_url: str = "http://localhost:8000"
    # Auth0 access token; not needed against a DEV_MODE server
    api_token: str | None = None
    # Seconds; applies to regular requests, the change feed never times out on read
    api_timeout: float = 30.0
