"""Settings shared by every service.

Each service subclasses ServiceSettings, builds one instance in its main
module and hands it to create_app(). Nothing below the app factory reads
os.environ directly.
"""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class ServiceSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    SERVICE_NAME: str = "service"
    VERSION:      str = "1.0.0"
    ENVIRONMENT:  Literal["development", "production", "test"] = "development"
    HOST:         str = "0.0.0.0"
    PORT:         int = 8000
    LOG_LEVEL:    str = "INFO"

    # Signing secret must be identical across services so the gateway and
    # the users service accept each other's tokens.
    JWT_SECRET:          str = "dev-secret-change-me"
    JWT_ALGORITHM:       str = "HS256"
    JWT_EXPIRES_MINUTES: int = 60 * 24 * 7

    # Comma-separated list of allowed origins.
    CORS_ORIGIN: str = "http://localhost:3000"

    RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60
    RATE_LIMIT_MAX_REQUESTS:   int = 100

    # Number of reverse proxies in front of this service whose
    # X-Forwarded-For entries are trusted. 0 keys clients by socket address.
    TRUST_PROXY_HOPS: int = 0

    HEALTH_CHECK_TIMEOUT_SECONDS: float = 3.0

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGIN.split(",") if origin.strip()]
