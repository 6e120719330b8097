"""Control of the managed agent service.

All subprocess calls are confined to this module.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from chronicbot_updater.errors import ServiceControlError
from chronicbot_updater.logging import get_logger

log = get_logger("chronicbot_updater.service")


class ServiceController(Protocol):
    """Start, stop and inspect the managed service."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def restart(self) -> None: ...

    async def is_running(self) -> bool: ...


class SystemdServiceController:
    """Drive a systemd unit with ``systemctl``.

    ``systemctl stop`` on an inactive unit already succeeds, so stop is
    idempotent without extra checks.
    """

    def __init__(self, unit: str, timeout: float = 60.0, systemctl: str = "systemctl") -> None:
        self._unit = unit
        self._timeout = timeout
        self._systemctl = systemctl

    @property
    def unit(self) -> str:
        return self._unit

    async def start(self) -> None:
        await self._run("start")
        log.info("service_started", unit=self._unit)

    async def stop(self) -> None:
        await self._run("stop")
        log.info("service_stopped", unit=self._unit)

    async def restart(self) -> None:
        await self._run("restart")
        log.info("service_restarted", unit=self._unit)

    async def is_running(self) -> bool:
        try:
            output = await self._run("is-active")
        except ServiceControlError:
            return False
        return output.strip() == "active"

    async def _run(self, verb: str) -> str:
        """Run ``systemctl <verb> <unit>`` and return stdout."""
        cmd = [self._systemctl, verb, self._unit]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ServiceControlError(f"Could not run {' '.join(cmd)}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise ServiceControlError(
                f"{' '.join(cmd)} timed out after {self._timeout:g}s"
            ) from exc

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()[:500]
            log.debug("service_cmd_failed", cmd=cmd, returncode=proc.returncode, stderr=message)
            raise ServiceControlError(
                f"{' '.join(cmd)} exited with {proc.returncode}: {message or 'no output'}"
            )
        return stdout.decode(errors="replace")
