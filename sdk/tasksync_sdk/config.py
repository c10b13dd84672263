"""
Configuration for the TaskSync SDK.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class SyncSettings(BaseSettings):
    """Client sync configuration loaded from environment."""

    # Remote document store
    base_url: str = Field(default="http://localhost:3001/api", description="Server API base URL")
    request_timeout: float = Field(default=30.0, description="HTTP timeout seconds")
    realtime_url: str = Field(default="http://localhost:3001/ws", description="WebSocket endpoint")

    # Local caches
    cache_dir: str = Field(default="./.tasksync", description="Directory for local caches")
    fallback_quota_bytes: int = Field(
        default=5 * 1024 * 1024, description="Byte quota of the fallback cache"
    )

    # Documents
    primary_document_key: str = Field(
        default="tasksync-app-storage",
        description="Key of the application document the shared view is folded into",
    )

    # Outbox drain
    outbox_max_retries: int = Field(default=8, description="Attempts before a send is parked")
    outbox_initial_delay: float = Field(default=0.5, description="First backoff delay seconds")
    outbox_max_delay: float = Field(default=30.0, description="Backoff delay cap seconds")

    model_config = {"env_prefix": "TASKSYNC_"}
