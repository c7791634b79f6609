"""
Device identification and binding.

The device id comes from a platform call that must survive reinstalls
(/etc/machine-id by default).  If it cannot be read, initialisation fails
with DeviceUnavailableError — no fallback id is ever synthesised, because a
made-up id would silently grant or deny access to the wrong bundles.
"""
from __future__ import annotations

import asyncio
import inspect
import platform
from typing import Awaitable, Callable, Optional, Union

import config
from crypto_service import derive_device_key
from errors import DeviceUnavailableError
from logging_config import get_logger
from schemas import DeviceInfo

logger = get_logger(__name__)

IdentityProvider = Callable[[], Union[str, Awaitable[str]]]


def _read_machine_id(path: str) -> str:
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read().strip()


async def platform_device_id() -> str:
    """Default identity provider: the OS machine id."""
    return await asyncio.to_thread(_read_machine_id, config.DEVICE_ID_PATH)


class DeviceBinding:
    def __init__(
        self,
        identity_provider: Optional[IdentityProvider] = None,
        salt: Optional[str] = None,
    ) -> None:
        self._identity_provider = identity_provider or platform_device_id
        self._salt = salt if salt is not None else config.DEVICE_KEY_SALT
        self._info: Optional[DeviceInfo] = None

    async def _resolve_id(self) -> str:
        try:
            result = self._identity_provider()
            if inspect.isawaitable(result):
                result = await result
        except (OSError, RuntimeError) as exc:
            logger.error("device_id_unavailable", extra={"error": str(exc)})
            raise DeviceUnavailableError("Device identifier could not be read") from exc
        if not result or not isinstance(result, str):
            logger.error("device_id_unavailable", extra={"error": "empty identifier"})
            raise DeviceUnavailableError("Platform returned an empty device identifier")
        return result

    async def initialize(self) -> DeviceInfo:
        """Resolve and cache the identity.  Idempotent."""
        if self._info is not None:
            return self._info
        device_id = await self._resolve_id()
        self._info = DeviceInfo(
            device_id=device_id,
            device_key=derive_device_key(device_id, self._salt),
            brand=platform.system() or None,
            model=platform.machine() or None,
            system_version=platform.release() or None,
        )
        logger.info("device_initialized", extra={"device_id": device_id})
        return self._info

    async def is_device_allowed(self, allowed_device_ids) -> bool:
        info = await self.initialize()
        return info.device_id in set(allowed_device_ids or ())

    async def get_device_id(self) -> str:
        return (await self.initialize()).device_id

    async def get_device_key(self) -> str:
        return (await self.initialize()).device_key
