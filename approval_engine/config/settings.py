"""
Environment-aware configuration settings for the approval engine.

Supports dev, test, and prod environments with appropriate defaults.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""

    DEV = "dev"
    TEST = "test"
    PROD = "prod"


class TimeoutAction(str, Enum):
    """What the timeout sweep does with an overdue required step."""

    ESCALATE = "escalate"
    REJECT = "reject"
    REPORT = "report"


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis server hostname")
    port: int = Field(default=6379, description="Redis server port")
    db: int = Field(default=0, description="Redis database number")
    password: Optional[str] = Field(default=None, description="Redis password")
    max_connections: int = Field(default=50, description="Maximum connection pool size")
    socket_timeout: float = Field(default=5.0, description="Socket timeout (seconds)")
    socket_connect_timeout: float = Field(default=5.0, description="Connection timeout")

    # Stream trimming to prevent unbounded growth
    stream_max_length: int = Field(
        default=10000,
        description="Maximum stream length before trimming (approximate)"
    )
    notification_stream: str = Field(
        default="wf:stream:notifications",
        description="Stream that assignee notifications are appended to"
    )
    event_stream: str = Field(
        default="wf:stream:events",
        description="Stream that workflow lifecycle events are appended to"
    )

    @property
    def url(self) -> str:
        """Generate Redis connection URL."""
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


class PostgresSettings(BaseSettings):
    """PostgreSQL connection settings."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="PostgreSQL server hostname")
    port: int = Field(default=5432, description="PostgreSQL server port")
    database: str = Field(default="approval_engine", description="Database name")
    user: str = Field(default="postgres", description="Database user")
    password: str = Field(default="postgres", description="Database password")
    pool_size: int = Field(default=10, description="Connection pool size (prod: 10-20)")
    max_overflow: int = Field(default=20, description="Max overflow connections (prod: 20-30)")
    pool_timeout: float = Field(default=10.0, description="Pool timeout in seconds (fail fast)")

    # Full URL override, e.g. sqlite+aiosqlite:///./approvals.db for local runs
    dsn: Optional[str] = Field(default=None, description="Explicit SQLAlchemy URL")

    @property
    def url(self) -> str:
        """Generate async SQLAlchemy connection URL."""
        if self.dsn:
            return self.dsn
        return (
            f"postgresql+asyncpg://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    @property
    def sync_url(self) -> str:
        """Generate synchronous PostgreSQL connection URL for migrations."""
        return (
            f"postgresql://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class EngineSettings(BaseSettings):
    """Workflow engine behaviour settings."""

    model_config = SettingsConfigDict(env_prefix="ENGINE_")

    system_actor: str = Field(default="system", description="Actor id used for system decisions")
    max_revisions: int = Field(
        default=3,
        ge=0,
        description="Change requests allowed per step before a request is treated as a reject"
    )
    store_backend: str = Field(
        default="sql",
        description="Persistence backend: 'sql' or 'memory'"
    )


class SweepSettings(BaseSettings):
    """Background sweep settings."""

    model_config = SettingsConfigDict(env_prefix="SWEEP_")

    enabled: bool = Field(default=True, description="Run sweeps in the API process")
    auto_approval_interval: float = Field(
        default=60.0, gt=0, description="Seconds between auto-approval sweeps"
    )
    timeout_interval: float = Field(
        default=300.0, gt=0, description="Seconds between timeout sweeps"
    )
    timeout_action: TimeoutAction = Field(
        default=TimeoutAction.ESCALATE,
        description="Action applied to overdue required steps"
    )
    escalation_assignee_id: Optional[str] = Field(
        default=None,
        description="Who is notified on escalation (defaults to the initiator)"
    )


class SubjectSettings(BaseSettings):
    """Subject attribute service settings."""

    model_config = SettingsConfigDict(env_prefix="SUBJECTS_")

    base_url: Optional[str] = Field(
        default=None,
        description="Base URL of the subject service; attributes are read from {base_url}/{subject_id}"
    )
    timeout: float = Field(default=5.0, gt=0, description="HTTP timeout (seconds)")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        case_sensitive=False,  # REDIS_HOST and redis_host both work
        extra="ignore",        # Ignore unknown environment variables
    )

    # Application
    app_name: str = Field(default="Approval Workflow Engine")
    environment: Environment = Field(default=Environment.DEV)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Sub-settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    sweep: SweepSettings = Field(default_factory=SweepSettings)
    subjects: SubjectSettings = Field(default_factory=SubjectSettings)

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str | Environment) -> Environment:
        """Validate and convert environment string to enum."""
        if isinstance(v, Environment):
            return v
        return Environment(v.lower())

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEV

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TEST

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PROD


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
