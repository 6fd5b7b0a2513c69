"""Configuration settings for the Axis governance service."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="AXIS_", env_file=".env", extra="ignore")

    # Database
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "axis"
    db_user: str = "axis"
    db_password: str = "axis"
    database_url_override: str | None = None

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_queue_max_depth: int = 1000
    redis_idempotency_ttl_seconds: int = 3600

    # AI inference gateway
    gateway_url: str = "https://ai.gateway.example.com/v1/chat/completions"
    gateway_api_key: str | None = None
    gateway_model: str = "google/gemini-2.5-flash"
    gateway_timeout: float = 60.0

    # Task execution backend
    execution_url: str | None = None
    execution_api_key: str | None = None
    execution_timeout: float = 300.0

    # Outbound webhooks
    webhook_timeout: float = 15.0

    # Service-to-service bearer token
    service_key: str | None = None

    # Task retry policy
    default_max_attempts: int = 3
    retry_delay_seconds: float = 2.0

    # Autonomy tick / auto-approval policy
    auto_approve_types: list[str] = [
        "send_memo",
        "start_task",
        "suggest_next_task",
        "continue_task",
    ]
    tick_max_companies: int = 12
    tick_max_roles_per_company: int = 8
    tick_max_auto_approvals_per_company: int = 30

    # Governance hierarchy, highest rank first
    governance_name_ranking: list[str] = [
        r"\bceo\b",
        "chief executive officer",
        "chief of staff",
    ]
    governance_authority_levels: list[str] = ["executive", "orchestrator"]
    coordinator_role_names: list[str] = ["chief of staff"]
    product_role_keywords: list[str] = ["product"]

    log_level: str = "INFO"
    log_json: bool = False

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"


# Global settings instance
settings = Settings()
