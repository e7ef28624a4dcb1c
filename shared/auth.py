"""Bearer-token authentication shared by the gateway and the users service.

The authenticator only knows how to turn an Authorization header into an
identity. Where identities come from is the caller's business: the users
service resolves them from its own directory, the gateway asks the users
service over HTTP. Either way the resolved object must expose ``id``,
``role`` and ``is_active``.

FastAPI dependencies at the bottom pull the authenticator from
``app.state.authenticator``, which each app factory sets up.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from fastapi import Depends, Header, Request

from shared.errors import AppError, ErrorKind
from shared.tokens import TokenCodec

logger = logging.getLogger(__name__)

Resolver = Callable[[str, str], Awaitable[Optional[Any]]]

NOT_LOGGED_IN  = "You are not logged in! Please log in to get access."
INVALID_TOKEN  = "Invalid token. Please log in again!"
USER_GONE      = "The user belonging to this token does no longer exist."
DEACTIVATED    = "Your account has been deactivated. Please contact support."
NO_PERMISSION  = "You do not have permission to perform this action"


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token.strip():
        return None
    return token.strip()


class Authenticator:
    def __init__(self, codec: TokenCodec, resolve: Resolver) -> None:
        self.codec   = codec
        self.resolve = resolve

    async def authenticate(self, authorization: Optional[str]) -> Any:
        token = bearer_token(authorization)
        if token is None:
            logger.warning("[auth] no bearer token in request")
            raise AppError(ErrorKind.UNAUTHENTICATED, NOT_LOGGED_IN)

        subject_id = self.codec.verify(token)
        if subject_id is None:
            raise AppError(ErrorKind.UNAUTHENTICATED, INVALID_TOKEN)

        identity = await self.resolve(subject_id, token)
        if identity is None:
            logger.warning("[auth] user for token not found user_id=%s", subject_id)
            raise AppError(ErrorKind.UNAUTHENTICATED, USER_GONE)
        if not identity.is_active:
            logger.warning("[auth] deactivated account user_id=%s", subject_id)
            raise AppError(ErrorKind.UNAUTHENTICATED, DEACTIVATED)

        logger.debug("[auth] authenticated user_id=%s", subject_id)
        return identity

    async def authenticate_optional(self, authorization: Optional[str]) -> Optional[Any]:
        """Like authenticate(), but any rejection means an anonymous caller."""
        if bearer_token(authorization) is None:
            return None
        try:
            return await self.authenticate(authorization)
        except AppError as exc:
            logger.debug("[auth] optional auth fell back to guest: %s", exc.message)
            return None


def require_role(identity: Any, roles: tuple[str, ...]) -> None:
    if identity.role not in roles:
        logger.warning("[auth] role %r not in %r for user_id=%s", identity.role, roles, identity.id)
        raise AppError(ErrorKind.FORBIDDEN, NO_PERMISSION)


# ──────────────────────────────────────────
#  FastAPI dependencies
# ──────────────────────────────────────────

async def current_user(request: Request, authorization: Optional[str] = Header(None)) -> Any:
    identity = await request.app.state.authenticator.authenticate(authorization)
    request.state.user = identity
    return identity


async def optional_user(request: Request, authorization: Optional[str] = Header(None)) -> Optional[Any]:
    identity = await request.app.state.authenticator.authenticate_optional(authorization)
    request.state.user = identity
    return identity


def restrict_to(*roles: str):
    async def dependency(user: Any = Depends(current_user)) -> Any:
        require_role(user, roles)
        return user
    return dependency
