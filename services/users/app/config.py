from shared.config import ServiceSettings


class UsersSettings(ServiceSettings):
    SERVICE_NAME: str = "user-service"
    PORT:         int = 3001

    # deployed behind the gateway, which appends the caller to X-Forwarded-For
    TRUST_PROXY_HOPS: int = 1

    DATABASE_URL:  str = "sqlite+aiosqlite:///./users.db"
    BCRYPT_ROUNDS: int = 12
