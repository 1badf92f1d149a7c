"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for the audit trail service configuration.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _default_role_capabilities() -> dict[str, list[str]]:
    return {
        "admin": [
            "manage:users",
            "manage:vendors",
            "manage:data-types",
            "view:reports",
            "export:data",
            "audit:logs",
        ],
        "auditor": ["view:reports", "audit:logs"],
        "regular": [],
        "user": [],
    }


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: AUDIT__EXPORT_BATCH_SIZE=1000
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("vendorhub-audit", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode (auto-reload under `vendorhub serve`)")

    host: str = Field("0.0.0.0", description="Server host")  # nosec B104
    port: int = Field(8000, description="Server port")
    api_prefix: str = Field("/api", description="Prefix for all API routes")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("vendorhub", description="Database name")
        username: str = Field("vendorhub", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # JWT & Authentication
    # ============================================================

    class JWTSettings(BaseModel):
        """JWT configuration.

        Tokens are issued by the authentication collaborator; this service only
        verifies them.
        """

        secret_key: str = Field("change-me", description="JWT secret key")
        algorithm: str = Field("HS256", description="JWT algorithm")
        access_token_expire_minutes: int = Field(30, description="Access token expiration")
        issuer: str | None = Field(None, description="Expected JWT issuer")
        audience: str | None = Field(None, description="Expected JWT audience")

    jwt: JWTSettings = JWTSettings()  # type: ignore[call-arg]

    # ============================================================
    # CORS Configuration
    # ============================================================

    class CORSSettings(BaseModel):
        """CORS configuration."""

        enabled: bool = Field(True, description="Enable CORS")
        origins: list[str] = Field(
            default_factory=lambda: [
                "http://localhost:3000",
                "http://127.0.0.1:3000",
            ],
            description="Allowed origins for CORS",
        )
        methods: list[str] = Field(default_factory=lambda: ["GET"], description="Allowed methods")
        headers: list[str] = Field(default_factory=lambda: ["*"], description="Allowed headers")
        credentials: bool = Field(True, description="Allow credentials")
        # Browsers only read Content-Disposition on cross-origin downloads when exposed
        expose_headers: list[str] = Field(
            default_factory=lambda: ["Content-Disposition"], description="Exposed headers"
        )

    cors: CORSSettings = CORSSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Add thread names to log records")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Audit Trail
    # ============================================================

    class AuditSettings(BaseModel):
        """Audit trail configuration."""

        # Ingestion
        writer_queue_size: int = Field(10_000, description="Max events buffered for persistence")
        writer_workers: int = Field(2, description="Concurrent persistence workers")
        request_logging_enabled: bool = Field(
            True, description="Record successful business requests via middleware"
        )

        # Reads
        default_page_size: int = Field(50, description="Default page size for log listing")
        max_page_size: int = Field(1000, description="Upper bound for page size")
        query_timeout_seconds: float = Field(15.0, description="Timeout for query/stats reads")
        stats_top_users: int = Field(10, description="Number of users reported in stats")

        # Export
        export_batch_size: int = Field(500, description="Rows fetched per export batch")
        record_exports: bool = Field(True, description="Record an EXPORT event per export")

        # Permissions
        role_capabilities: dict[str, list[str]] = Field(
            default_factory=_default_role_capabilities,
            description="Capabilities granted by each role",
        )

        # Retention (None delegates expiry to the storage layer)
        retention_days: int | None = Field(None, description="Days to keep audit events")
        retention_batch_size: int = Field(1000, description="Rows deleted per purge batch")

        @field_validator("export_batch_size", "retention_batch_size", "writer_workers")
        @classmethod
        def validate_positive(cls, v: int) -> int:
            if v < 1:
                raise ValueError("value must be >= 1")
            return v

    audit: AuditSettings = AuditSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port number range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {v}")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
