"""StaffHub settings, read from the environment and an optional ``.env`` file."""

from enum import Enum
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class ConfigurationError(Exception):
    """The configuration is unsafe for the selected environment."""


DEFAULT_JWT_SECRET = "dev-insecure-key-change-me"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Values shipped in example .env files. Treated the same as an empty key.
_PLACEHOLDER_GROQ_KEYS = frozenset({
    "tu_groq_api_key_aqui",
    "gsk_placeholder_configure_real_api_key",
})


class Settings(BaseSettings):
    """
    Application settings with validation.

    Every field can be overridden by the upper-case environment variable
    of the same name, or from a ``.env`` file in the working directory.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment (development/production)"
    )

    # CORS Configuration
    cors_allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:3001",
        description="Allowed CORS origins (comma-separated)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./staffhub.db",
        description="Database connection URL"
    )
    # Connection pool tuning (PostgreSQL only; ignored for SQLite).
    db_pool_size: int = Field(default=5, description="Number of persistent database connections")
    db_max_overflow: int = Field(default=10, description="Extra connections allowed during traffic bursts")
    db_pool_timeout: int = Field(default=30, description="Seconds to wait for a pooled connection")
    db_pool_recycle: int = Field(default=1800, description="Seconds before a connection is recycled")

    # Authentication
    # JWT_SECRET_KEY: signing key for user tokens. Default is insecure, override in production.
    # AUTH_ENABLED: when False, all endpoints accept unauthenticated requests (dev mode).
    jwt_secret_key: str = Field(
        default=DEFAULT_JWT_SECRET,
        description="JWT signing secret (override in production)"
    )
    jwt_algorithm: str = Field(default="HS256")
    jwt_expires_hours: int = Field(default=24, description="Lifetime of a session token")
    mfa_pending_minutes: int = Field(
        default=5,
        description="Lifetime of the token issued between password check and MFA check"
    )
    auth_enabled: bool = Field(
        default=False,
        description="Enable JWT authentication (False for development)"
    )

    # Rate Limiting
    rate_limit_per_minute: int = Field(
        default=60,
        description="Maximum requests per client per minute"
    )
    rate_limit_auth_per_minute: int = Field(
        default=10,
        description="Maximum login, registration and MFA requests per client per minute"
    )

    # Upstream circuit breakers (Groq, Drive, WhatsApp Graph API)
    upstream_failure_threshold: int = Field(default=3, description="Consecutive outages before calls fail fast")
    upstream_cooldown_seconds: float = Field(default=60.0, description="Seconds before a failed upstream is tried again")

    # Groq LLM (called through LiteLLM as "groq/<model>")
    groq_api_key: str = Field(default="", description="Groq API key (empty = AI features disabled)")
    groq_model: str = Field(default="llama-3.3-70b-versatile", description="Default Groq chat model")
    groq_temperature: float = Field(default=0.7, description="Default sampling temperature")
    groq_max_tokens: int = Field(default=800, description="Default completion token cap")
    groq_timeout: int = Field(default=30, description="Seconds before an LLM call is abandoned")

    # Embeddings (LLM-approximated semantic vectors)
    embedding_dimensions: int = Field(default=768, description="Length of stored document vectors")

    # Recommendations
    recommendations_cache_ttl: int = Field(
        default=300,
        description="Seconds an AI recommendation result stays cached"
    )

    # Google Drive
    google_client_id: str = Field(default="", description="OAuth client id (empty = local drive only)")
    google_client_secret: str = Field(default="", description="OAuth client secret")
    google_redirect_uri: str = Field(
        default="http://localhost:3000/auth/google/callback",
        description="OAuth redirect URI registered with Google"
    )
    google_drive_timeout: int = Field(default=30, description="Seconds per Drive API request")
    local_drive_path: str = Field(
        default="./local_drive.json",
        description="JSON file backing the local Drive substitute"
    )

    # Messaging webhooks
    whatsapp_verify_token: str = Field(
        default="",
        description="Fallback hub.verify_token when no WhatsApp config row matches"
    )
    whatsapp_app_secret: str = Field(
        default="",
        description="Meta app secret for X-Hub-Signature-256 checks (empty = skip)"
    )
    whatsapp_graph_url: str = Field(
        default="https://graph.facebook.com/v18.0",
        description="Graph API base URL used for auto-replies"
    )
    telegram_secret_token: str = Field(
        default="",
        description="Expected X-Telegram-Bot-Api-Secret-Token header (empty = skip)"
    )

    # Audit
    audit_enabled: bool = Field(default=True, description="Record audit entries in memory")
    audit_max_entries: int = Field(default=50000, description="Oldest audit entries are dropped past this")

    # MFA
    mfa_enabled: bool = Field(default=True, description="Allow users to enrol second factors")
    mfa_issuer: str = Field(default="StaffHub", description="Issuer shown in authenticator apps")

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}")
        return level

    @field_validator("embedding_dimensions", "upstream_failure_threshold")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    def get_cors_origins(self) -> List[str]:
        """Allowed browser origins. A wildcard is rejected because credentials are allowed."""
        origins = [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]
        if "*" in origins:
            raise ValueError("CORS_ALLOWED_ORIGINS cannot contain '*'; list the frontend origins")
        return origins

    def groq_configured(self) -> bool:
        """True when a real (non-placeholder) Groq key is set."""
        key = (self.groq_api_key or "").strip()
        return bool(key) and key not in _PLACEHOLDER_GROQ_KEYS

    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    def insecure_settings(self) -> List[str]:
        """Settings that are fine on a laptop and unacceptable in production."""
        problems = []
        if self.jwt_secret_key == DEFAULT_JWT_SECRET:
            problems.append("JWT_SECRET_KEY still has the development default")
        if not self.auth_enabled:
            problems.append("AUTH_ENABLED is false")
        local = [o for o in self.get_cors_origins() if "localhost" in o or "127.0.0.1" in o]
        if local:
            problems.append(f"CORS_ALLOWED_ORIGINS includes local origins {local}")
        if self.google_configured() and not self.google_redirect_uri.startswith("https://"):
            problems.append("GOOGLE_REDIRECT_URI must use https")
        if not self.whatsapp_app_secret:
            problems.append("WHATSAPP_APP_SECRET is empty, so webhook signatures go unchecked")
        return problems

    def validate_production_config(self) -> None:
        """Raise ConfigurationError in production when ``insecure_settings()`` finds anything."""
        if self.environment != Environment.PRODUCTION:
            return
        problems = self.insecure_settings()
        if problems:
            raise ConfigurationError("Insecure production configuration:\n  - " + "\n  - ".join(problems))

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


settings = Settings()
