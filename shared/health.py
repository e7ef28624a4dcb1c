"""Health payloads: this process, and best-effort checks of other services."""

import datetime
import sys
import time

import httpx

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

_STARTED = time.monotonic()


def utc_timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def uptime_seconds() -> float:
    return round(time.monotonic() - _STARTED, 3)


def memory_usage() -> dict:
    if resource is None:
        return {"maxRssBytes": None}
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is KiB on Linux, bytes on macOS
    max_rss = usage.ru_maxrss if sys.platform == "darwin" else usage.ru_maxrss * 1024
    return {"maxRssBytes": max_rss}


def process_health(service: str, message: str) -> dict:
    return {
        "status":      "success",
        "message":     message,
        "service":     service,
        "timestamp":   utc_timestamp(),
        "uptime":      uptime_seconds(),
        "memoryUsage": memory_usage(),
    }


async def check_service_health(client: httpx.AsyncClient, service: str, base_url: str, timeout: float) -> dict:
    """Check ``<base_url>/health``. Never raises; failures come back as data."""
    try:
        resp = await client.get(
            f"{base_url.rstrip('/')}/health",
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
    except httpx.HTTPError as exc:
        return {
            "service":   service,
            "status":    "unhealthy",
            "timestamp": utc_timestamp(),
            "error":     str(exc) or type(exc).__name__,
        }

    result = {
        "service":   service,
        "status":    "healthy" if resp.is_success else "unhealthy",
        "timestamp": utc_timestamp(),
    }
    if not resp.is_success:
        result["error"] = f"HTTP {resp.status_code}"
    return result
