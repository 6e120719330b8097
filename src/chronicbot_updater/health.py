"""Post-install health gate.

A failing probe is an expected outcome that drives rollback, so nothing
here raises for an unhealthy or unreachable service.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import httpx

from chronicbot_updater.logging import get_logger

log = get_logger("chronicbot_updater.health")


@dataclass(frozen=True)
class HealthCheckConfig:
    """How hard to try before declaring the service unhealthy."""

    retries: int = 3
    delay_seconds: float = 5.0
    timeout_seconds: float = 5.0


async def check_service_health(url: str, config: HealthCheckConfig | None = None) -> bool:
    """Poll ``url`` until it answers with a 2xx status.

    Returns True on the first success and False once ``config.retries``
    attempts have failed.  A non-2xx status, a timeout and a refused
    connection each count as one failed attempt.  There is no sleep after
    the final attempt.
    """
    config = config or HealthCheckConfig()
    retries = max(1, config.retries)

    for attempt in range(1, retries + 1):
        try:
            async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                resp = await client.get(url)
            if 200 <= resp.status_code < 300:
                log.info("health_ok", url=url, attempt=attempt)
                return True
            log.warning(
                "health_attempt_failed",
                url=url,
                attempt=attempt,
                retries=retries,
                status=resp.status_code,
            )
        except httpx.HTTPError as exc:
            log.warning(
                "health_attempt_failed",
                url=url,
                attempt=attempt,
                retries=retries,
                error=str(exc) or type(exc).__name__,
            )

        if attempt < retries:
            await asyncio.sleep(config.delay_seconds)

    log.error("health_check_exhausted", url=url, retries=retries)
    return False


class HealthProbe:
    """Liveness probe for one endpoint with a fixed retry policy."""

    def __init__(self, endpoint: str, config: HealthCheckConfig | None = None) -> None:
        self._endpoint = endpoint
        self._config = config or HealthCheckConfig()

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def config(self) -> HealthCheckConfig:
        return self._config

    async def check(self) -> bool:
        return await check_service_health(self._endpoint, self._config)
