"""Route table and reverse proxy for the gateway.

A RouteBinding says which upstream owns a path prefix, how to rewrite the
path on the way through, and whether the gateway must authenticate the
caller first. ServiceProxy does the forwarding; it never retries, and an
unreachable upstream becomes a single 503.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

import httpx
from fastapi import Request
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from shared.auth import DEACTIVATED
from shared.errors import AppError, ErrorKind, error_response
from shared.middleware import client_address

logger = logging.getLogger(__name__)

UNAVAILABLE_CODE = "SERVICE_UNAVAILABLE"

HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# httpx hands back a decoded body, so the upstream's framing headers no longer apply.
_DROP_FROM_RESPONSE = HOP_BY_HOP | {"content-encoding", "content-length"}
# X-User-Id is only ever set by the gateway itself.
_DROP_FROM_REQUEST  = HOP_BY_HOP | {"host", "content-length", "x-user-id"}


def unavailable(service: str) -> AppError:
    return AppError(
        ErrorKind.UPSTREAM_UNAVAILABLE,
        f"{service} is currently unavailable",
        errors=[UNAVAILABLE_CODE],
    )


def raw_path(request: Request) -> str:
    """The request path as the client sent it, percent-escapes intact."""
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    return raw.split(b"?", 1)[0].decode("latin-1")


def _message(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body.get("message") if isinstance(body, dict) else None


# ──────────────────────────────────────────
#  Routing
# ──────────────────────────────────────────

@dataclass(frozen=True)
class RouteBinding:
    prefix:        str
    service:       str
    target:        str
    rewrite:       tuple[tuple[str, str], ...] = ()
    requires_auth: bool = False

    def matches(self, path: str) -> bool:
        prefix = self.prefix.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")

    def rewrite_path(self, path: str) -> str:
        # first matching rule wins
        for pattern, replacement in self.rewrite:
            if re.search(pattern, path):
                path = re.sub(pattern, replacement, path, count=1)
                break
        return path or "/"


class RouteTable:
    def __init__(self, bindings: Iterable[RouteBinding]) -> None:
        # longest prefix first, so /api/v1/sms beats /api/v1
        self.bindings = sorted(bindings, key=lambda b: len(b.prefix.rstrip("/")), reverse=True)

    def resolve(self, path: str) -> Optional[RouteBinding]:
        for binding in self.bindings:
            if binding.matches(path):
                return binding
        return None

    def services(self) -> dict[str, str]:
        return {binding.service: binding.target for binding in reversed(self.bindings)}


# ──────────────────────────────────────────
#  Remote identity
# ──────────────────────────────────────────

class Identity(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id:        str
    role:      str
    is_active: bool
    email:     Optional[str] = None


class RemoteIdentityResolver:
    """Looks a token's owner up by asking the users service who it belongs to."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, *, timeout: float, service: str = "user-service") -> None:
        self.client   = client
        self.base_url = base_url.rstrip("/")
        self.timeout  = timeout
        self.service  = service

    async def __call__(self, subject_id: str, token: str) -> Optional[Identity]:
        try:
            resp = await self.client.get(
                f"{self.base_url}/v1/users/me",
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TransportError as exc:
            logger.error("[auth] identity lookup failed service=%s: %s", self.service, exc)
            raise unavailable(self.service)

        if resp.status_code == 401 and _message(resp) == DEACTIVATED:
            raise AppError(ErrorKind.UNAUTHENTICATED, DEACTIVATED)
        if resp.status_code in (401, 404):
            return None
        if not resp.is_success:
            logger.error("[auth] identity lookup answered status=%d", resp.status_code)
            raise unavailable(self.service)

        try:
            identity = Identity.model_validate(resp.json()["data"]["user"])
        except (ValueError, KeyError, TypeError, ValidationError) as exc:
            logger.error("[auth] malformed identity response: %s", exc)
            raise unavailable(self.service)

        if identity.id != subject_id:
            logger.warning("[auth] identity mismatch token_sub=%s resolved=%s", subject_id, identity.id)
            return None
        return identity


# ──────────────────────────────────────────
#  Forwarding
# ──────────────────────────────────────────

class ServiceProxy:
    def __init__(self, client: httpx.AsyncClient, timeout: float) -> None:
        self.client  = client
        self.timeout = timeout

    def _upstream_headers(self, request: Request, identity) -> dict[str, str]:
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _DROP_FROM_REQUEST}

        forwarded_for = request.headers.get("x-forwarded-for")
        client_ip     = client_address(request)
        headers["x-forwarded-for"]   = f"{forwarded_for}, {client_ip}" if forwarded_for else client_ip
        headers["x-forwarded-host"]  = request.headers.get("host", "")
        headers["x-forwarded-proto"] = request.url.scheme
        if identity is not None:
            headers["x-user-id"] = str(identity.id)
        return headers

    async def forward(self, request: Request, binding: RouteBinding, identity=None) -> Response:
        path = binding.rewrite_path(raw_path(request))
        url  = f"{binding.target.rstrip('/')}{path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"

        logger.info("[proxy] -> %s %s target=%s%s", request.method, request.url.path, binding.service, path)
        body = await request.body()
        try:
            resp = await self.client.request(
                method=request.method,
                url=url,
                headers=self._upstream_headers(request, identity),
                content=body,
                timeout=self.timeout,
            )
        except httpx.TransportError as exc:
            logger.error("[proxy] %s unreachable: %s", binding.service, str(exc) or type(exc).__name__)
            return error_response(unavailable(binding.service))

        logger.info("[proxy] <- %s status=%d", binding.service, resp.status_code)
        response = Response(content=resp.content, status_code=resp.status_code)
        for name, value in resp.headers.multi_items():
            if name.lower() not in _DROP_FROM_RESPONSE:
                response.headers.append(name, value)
        return response
