"""
Health checks used to verify a redeployed container.

- ``check_http_health``: one GET against a health URL
- ``wait_for_http_healthy``: poll until healthy or timeout
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from pydantic import BaseModel, Field

from selfupdate.logging import get_logger

logger = get_logger(__name__)


class HealthCheckResult(BaseModel):
    """Outcome of one health check; ``details`` carries the URL and status code."""

    name: str
    passed: bool
    message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()


async def check_http_health(url: str, timeout: float = 5.0) -> HealthCheckResult:
    """
    Check an HTTP health endpoint.

    Any 2xx status passes. Connection errors are reported as a failed result,
    not raised.

    Args:
        url: Health endpoint URL.
        timeout: Request timeout in seconds.

    Returns:
        HealthCheckResult indicating HTTP health status.
    """
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        return HealthCheckResult(
            name="http_health",
            passed=False,
            message=f"HTTP health check failed: {e}",
            details={"url": url},
        )

    if response.is_success:
        return HealthCheckResult(
            name="http_health",
            passed=True,
            message=f"HTTP health check passed at {url}",
            details={"url": url, "status_code": response.status_code},
        )
    return HealthCheckResult(
        name="http_health",
        passed=False,
        message=f"HTTP health check returned {response.status_code}",
        details={"url": url, "status_code": response.status_code},
    )


async def wait_for_http_healthy(
    url: str,
    timeout_seconds: float = 30.0,
    check_interval_seconds: float = 1.0,
) -> HealthCheckResult:
    """
    Poll a health URL until it passes or the timeout expires.

    Returns:
        The last HealthCheckResult (passed or not).
    """
    loop = asyncio.get_running_loop()
    start_time = loop.time()

    while True:
        result = await check_http_health(url, timeout=min(5.0, timeout_seconds))
        if result.passed:
            return result

        elapsed = loop.time() - start_time
        if elapsed >= timeout_seconds:
            logger.warning(
                f"Timeout waiting for {url} to become healthy",
                extra={"url": url, "timeout": timeout_seconds},
            )
            return result

        await asyncio.sleep(check_interval_seconds)
