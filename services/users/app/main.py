import datetime
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.users.app.config import UsersSettings
from services.users.app.directory import UserDirectory
from services.users.app.models import Base
from services.users.app.routes import auth_router, users_router
from shared.auth import Authenticator
from shared.errors import install_error_handlers
from shared.health import process_health
from shared.log import configure_logging
from shared.middleware import RateLimitMiddleware, install_pipeline
from shared.shutdown import serve
from shared.tokens import TokenCodec

# Users service: owns identity and issues the tokens every other service
# verifies. Run with `python -m services.users.app.main`, or
# `uvicorn --factory services.users.app.main:create_app`.

logger = logging.getLogger(__name__)


def create_app(settings: Optional[UsersSettings] = None) -> FastAPI:
    settings  = settings or UsersSettings()
    engine    = create_async_engine(settings.DATABASE_URL, echo=False)
    sessions  = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    directory = UserDirectory(sessions, bcrypt_rounds=settings.BCRYPT_ROUNDS)
    codec     = TokenCodec(
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
        expires_minutes=settings.JWT_EXPIRES_MINUTES,
    )

    async def resolve(subject_id: str, _token: str):
        return await directory.find_by_id(subject_id)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("[users] %s ready environment=%s", settings.SERVICE_NAME, settings.ENVIRONMENT)
        yield
        await engine.dispose()
        logger.info("[users] database connection closed")

    app = FastAPI(title="Users Service", version=settings.VERSION, lifespan=lifespan)
    app.state.settings      = settings
    app.state.directory     = directory
    app.state.codec         = codec
    app.state.authenticator = Authenticator(codec, resolve)

    install_pipeline(app, settings, extra=(
        (RateLimitMiddleware, {
            "window_seconds": settings.RATE_LIMIT_WINDOW_SECONDS,
            "max_requests":   settings.RATE_LIMIT_MAX_REQUESTS,
            "path_prefix":    "/v1/",
            "trusted_hops":   settings.TRUST_PROXY_HOPS,
        }),
    ))
    install_error_handlers(app, settings)

    @app.get("/")
    def root():
        return {
            "status":      "success",
            "message":     f"{settings.SERVICE_NAME} is running!",
            "version":     settings.VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp":   datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }

    @app.get("/health")
    async def health():
        body = process_health(settings.SERVICE_NAME, "Service is healthy")
        try:
            await directory.ping()
        except (SQLAlchemyError, OSError) as exc:
            logger.error("[users] database health check failed: %s", exc)
            body.update(status="error", message="Database is unreachable")
            body["database"] = {"status": "unhealthy", "error": str(exc)}
            return JSONResponse(body, status_code=503)
        body["database"] = {"status": "healthy"}
        return body

    app.include_router(auth_router)
    app.include_router(users_router)
    return app


def run() -> None:
    settings = UsersSettings()
    configure_logging(settings.LOG_LEVEL)
    serve(create_app(settings), settings.HOST, settings.PORT)


if __name__ == "__main__":
    run()
