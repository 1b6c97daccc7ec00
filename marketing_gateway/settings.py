from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Identity (headers set by the authenticating proxy)
    IDENTITY_EMAIL_HEADER: str = "X-Auth-Request-Email"
    IDENTITY_NAME_HEADER: str = "X-Auth-Request-User"
    ALLOWED_EMAIL_DOMAIN: str | None = None  # e.g. "example.com"
    GATEWAY_SHARED_SECRET: str | None = None

    # Persistence
    DATABASE_URL: str = "sqlite:///./jobs.db"

    # Hosted workflow engine
    WORKFLOW_API_URL: str = "http://localhost:5001/v1/workflows/run"
    WORKFLOW_API_KEY: str | None = None
    WORKFLOW_RESPONSE_MODE: str = "blocking"

    # Automation platform webhook
    AUTOMATION_WEBHOOK_URL: str | None = None
    AUTOMATION_API_KEY: str | None = None
    ASSISTANT_WEBHOOK_URL: str | None = None  # conversation agent webhook on the automation platform

    # Job lifecycle
    UPSTREAM_TIMEOUT_SECONDS: float = 300.0  # total deadline per upstream call
    UPSTREAM_CONNECT_TIMEOUT_SECONDS: float = 10.0
    LEASE_GRACE_SECONDS: float = 60.0
    POLL_INTERVAL_SECONDS: int = 5
    RETENTION_DAYS: int = 30
    SWEEP_INTERVAL_SECONDS: int = 24 * 60 * 60

    # Web
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    CORS_ORIGINS: str = "http://localhost:3100"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "structured"  # structured or json

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @property
    def max_call_seconds(self) -> float:
        # connect, then up to one full read timeout for the headers and one more
        # for the body chunk in flight when the deadline passes
        return self.UPSTREAM_CONNECT_TIMEOUT_SECONDS + 2 * self.UPSTREAM_TIMEOUT_SECONDS

    @property
    def lease_seconds(self) -> float:
        return self.max_call_seconds + self.LEASE_GRACE_SECONDS

settings = Settings()
