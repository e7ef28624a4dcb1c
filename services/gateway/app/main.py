import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from services.gateway.app.config import GatewaySettings
from services.gateway.app.proxy import RemoteIdentityResolver, RouteBinding, RouteTable, ServiceProxy
from shared.auth import Authenticator
from shared.errors import install_error_handlers
from shared.health import check_service_health, process_health, utc_timestamp
from shared.log import configure_logging
from shared.middleware import install_pipeline
from shared.shutdown import serve
from shared.tokens import TokenCodec

# API Gateway: single entry point, dispatches /api/... by path prefix.
# Tokens are checked here only for upstreams that cannot check them
# themselves; the users service authenticates its own routes.

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

LEGACY_USERS = {
    "status":          "deprecated",
    "message":         "This endpoint has been moved to a dedicated user service.",
    "newEndpoint":     "/api/v1/users",
    "deprecationDate": "2025-01-01",
    "documentation":   "Please migrate to the new user service API.",
}


def build_route_table(settings: GatewaySettings) -> RouteTable:
    return RouteTable([
        RouteBinding(
            prefix="/api/v1/sms",
            service="sms-service",
            target=settings.SMS_SERVICE_URL,
            rewrite=((r"^/api/v1/sms", "/api/v1"),),
            requires_auth=True,
        ),
        RouteBinding(
            prefix="/api/v1/insights",
            service="insight-service",
            target=settings.INSIGHT_SERVICE_URL,
            rewrite=((r"^/api/v1/insights", "/api/v1"),),
            requires_auth=True,
        ),
        RouteBinding(
            prefix="/api/v1",
            service="user-service",
            target=settings.USER_SERVICE_URL,
            rewrite=((r"^/api", ""),),
        ),
    ])


def create_app(
    settings: Optional[GatewaySettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the gateway. *transport* replaces the network layer (tests pass a MockTransport)."""
    settings = settings or GatewaySettings()
    routes   = build_route_table(settings)
    client   = httpx.AsyncClient(transport=transport, timeout=settings.PROXY_TIMEOUT_SECONDS)
    proxy    = ServiceProxy(client, timeout=settings.PROXY_TIMEOUT_SECONDS)
    codec    = TokenCodec(
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
        expires_minutes=settings.JWT_EXPIRES_MINUTES,
    )
    resolver = RemoteIdentityResolver(
        client,
        settings.USER_SERVICE_URL,
        timeout=settings.HEALTH_CHECK_TIMEOUT_SECONDS,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "[gateway] listening port=%d environment=%s user_service=%s",
            settings.PORT, settings.ENVIRONMENT, settings.USER_SERVICE_URL,
        )
        yield
        await client.aclose()
        logger.info("[gateway] upstream client closed")

    app = FastAPI(title="API Gateway", version=settings.VERSION, lifespan=lifespan)
    app.state.settings      = settings
    app.state.routes        = routes
    app.state.proxy         = proxy
    app.state.authenticator = Authenticator(codec, resolver)

    install_pipeline(app, settings)
    install_error_handlers(app, settings, not_found_extra={"availableServices": routes.services()})

    @app.get("/")
    def root():
        return {
            "status":      "success",
            "message":     "API Gateway is running!",
            "version":     settings.VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp":   utc_timestamp(),
            "services":    routes.services(),
        }

    @app.get("/health")
    async def health():
        services = routes.services()
        checks = await asyncio.gather(*(
            check_service_health(client, name, url, settings.HEALTH_CHECK_TIMEOUT_SECONDS)
            for name, url in services.items()
        ))
        body = process_health(settings.SERVICE_NAME, "API Gateway is healthy")
        body["services"] = dict(zip(services, checks))
        unhealthy = [c["service"] for c in checks if c["status"] != "healthy"]
        if unhealthy:
            logger.warning("[gateway] unhealthy upstreams: %s", ", ".join(unhealthy))
        return body

    @app.get("/users")
    def legacy_users():
        logger.warning("[gateway] legacy /users endpoint accessed")
        return JSONResponse(LEGACY_USERS, status_code=410)

    @app.api_route("/api/{path:path}", methods=PROXY_METHODS)
    async def dispatch(path: str, request: Request):
        binding = routes.resolve(request.url.path)
        if binding is None:
            raise HTTPException(status_code=404)

        identity = None
        if binding.requires_auth:
            identity = await app.state.authenticator.authenticate(request.headers.get("authorization"))
            request.state.user = identity
        return await proxy.forward(request, binding, identity)

    return app


def run() -> None:
    settings = GatewaySettings()
    configure_logging(settings.LOG_LEVEL)
    serve(create_app(settings), settings.HOST, settings.PORT)


if __name__ == "__main__":
    run()
