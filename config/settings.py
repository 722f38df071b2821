"""
Configuration settings for the sandbox lifecycle service.
Uses pydantic-settings for environment variable management.
"""

from typing import Literal
from pydantic_settings import BaseSettings
from pydantic import Field
from dotenv import load_dotenv

# Load .env file BEFORE pydantic-settings initializes
# This ensures Modal SDK can read MODAL_TOKEN_ID and MODAL_TOKEN_SECRET
load_dotenv()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Runtime environment (selects "dev" vs "main" template snapshots)
    node_env: str = Field(default="production", env="NODE_ENV")

    # Modal Configuration
    modal_app_name: str = Field(default="shipper-sandboxes", env="MODAL_APP_NAME")

    # Sandbox resource limits
    sandbox_cpu: float = Field(default=1, env="SANDBOX_CPU")
    sandbox_memory_mb: int = Field(default=2048, env="SANDBOX_MEMORY_MB")
    sandbox_timeout_s: int = Field(
        default=3600,
        env="SANDBOX_TIMEOUT_S",
        description="Absolute sandbox lifetime enforced by the provider",
    )
    sandbox_idle_timeout_s: int = Field(
        default=900,
        env="SANDBOX_IDLE_TIMEOUT_S",
        description="Provider-side idle timeout",
    )
    dev_server_port: int = Field(default=5173, env="DEV_SERVER_PORT")
    sandbox_exposed_ports: list[int] = Field(
        default_factory=lambda: [8000, 5173],
        env="SANDBOX_EXPOSED_PORTS",
    )

    # Redis Configuration
    redis_url: str | None = Field(
        default="redis://localhost:6379",
        env="REDIS_URL"
    )

    # Database Configuration
    database_url: str = Field(
        default="postgresql://localhost:5432/shipper",
        env="DATABASE_URL"
    )

    # Deployment plane
    deployment_plane_url: str | None = Field(default=None, env="DEPLOYMENT_PLANE_URL")
    deployment_plane_api_key: str | None = Field(default=None, env="DEPLOYMENT_PLANE_API_KEY")

    # Parent app origin allowed to receive monitor messages
    next_public_app_url: str = Field(
        default="http://localhost:3000",
        env="NEXT_PUBLIC_APP_URL"
    )

    # Snapshot retention
    snapshot_keep_count: int = Field(default=10, env="SNAPSHOT_KEEP_COUNT")

    # Health polling
    health_poll_interval_s: float = Field(default=30, env="HEALTH_POLL_INTERVAL_S")
    recovery_strategy: Literal["immediate", "progressive", "manual"] = Field(
        default="immediate",
        env="RECOVERY_STRATEGY"
    )

    # HTTP surface
    internal_api_key: str = Field(default="", env="INTERNAL_API_KEY")
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=8000, env="PORT")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    # Sentry
    sentry_dsn: str = Field(default="", env="SENTRY_DSN")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def snapshot_environment(self) -> Literal["main", "dev"]:
        """Template snapshot environment matching NODE_ENV."""
        return "dev" if self.node_env == "development" else "main"


# Global settings instance
settings = Settings()
