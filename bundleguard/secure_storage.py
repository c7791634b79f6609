"""
Secure media storage — encrypted payloads at rest, decrypted on demand.

Layout
──────
  {STORAGE_DIR}/{media_id}.enc      ciphertext exactly as shipped in the bundle
  {SCRATCH_DIR}/{media_id}_temp     decrypted copy, removed by clear_temp_files()

The content key is obtained from `key_provider` at retrieval time: the
unwrapped bundle key for 2.1+ bundles, or the device key itself for 2.0
bundles.  The tracker never calls into this module; it only decides whether
retrieve_media_file() should be called.

Filesystem calls are synchronous and run via asyncio.to_thread.
"""
from __future__ import annotations

import asyncio
import os
from typing import Awaitable, Callable, Optional

import config
import crypto_service
from errors import IntegrityError, MediaNotFoundError, StorageError
from logging_config import get_logger
from schemas import ProtectionDescriptor

logger = get_logger(__name__)

KeyProvider = Callable[[], Awaitable[str]]

_TEMP_SUFFIX = "_temp"


class SecureStorage:
    def __init__(
        self,
        key_provider: KeyProvider,
        base_path: Optional[str] = None,
        scratch_path: Optional[str] = None,
    ) -> None:
        self._key_provider = key_provider
        self.base_path = base_path or config.STORAGE_DIR
        self.scratch_path = scratch_path or config.SCRATCH_DIR

    def _encrypted_path(self, media_id: str) -> str:
        if os.sep in media_id or media_id in ("", ".", ".."):
            raise ValueError(f"Invalid media id: {media_id!r}")
        return os.path.join(self.base_path, f"{media_id}.{config.CIPHERTEXT_SUFFIX}")

    def _temp_path(self, media_id: str) -> str:
        return os.path.join(self.scratch_path, f"{media_id}{_TEMP_SUFFIX}")

    # ── Sync helpers (run in a worker thread) ────────────────────────────────

    @staticmethod
    def _write(path: str, data: bytes) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(data)

    @staticmethod
    def _read(path: str) -> bytes:
        with open(path, "rb") as fh:
            return fh.read()

    # ── Public API ───────────────────────────────────────────────────────────

    async def store_media_file(self, media_id: str, encrypted_data: bytes) -> str:
        path = self._encrypted_path(media_id)
        try:
            await asyncio.to_thread(self._write, path, encrypted_data)
        except OSError as exc:
            logger.error("storage_error", extra={"op": "store_media_file", "media_id": media_id, "error": str(exc)})
            raise StorageError(f"Failed to store media file {media_id}") from exc
        return path

    async def retrieve_media_file(
        self,
        media_id: str,
        protection: Optional[ProtectionDescriptor] = None,
        checksum: Optional[str] = None,
    ) -> str:
        """
        Decrypt `media_id` to the scratch directory and return that path.

        Raises MediaNotFoundError if nothing is stored, IntegrityError if the
        payload does not decrypt or does not match `checksum`.
        """
        encrypted_path = self._encrypted_path(media_id)
        if not await self.media_file_exists(media_id):
            raise MediaNotFoundError(media_id)
        try:
            stored = await asyncio.to_thread(self._read, encrypted_path)
        except OSError as exc:
            logger.error("storage_error", extra={"op": "retrieve_media_file", "media_id": media_id, "error": str(exc)})
            raise StorageError(f"Failed to read media file {media_id}") from exc

        key = await self._key_provider()
        plaintext = crypto_service.decrypt(crypto_service.remove_protection(stored, protection), key)
        if checksum and crypto_service.sha256_hex(plaintext) != checksum:
            logger.error("checksum_mismatch", extra={"media_id": media_id})
            raise IntegrityError(f"Checksum mismatch for media file {media_id}")

        temp_path = self._temp_path(media_id)
        try:
            await asyncio.to_thread(self._write, temp_path, plaintext)
        except OSError as exc:
            logger.error("storage_error", extra={"op": "write_scratch", "media_id": media_id, "error": str(exc)})
            raise StorageError(f"Failed to write scratch copy of {media_id}") from exc
        return temp_path

    async def media_file_exists(self, media_id: str) -> bool:
        return await asyncio.to_thread(os.path.isfile, self._encrypted_path(media_id))

    async def delete_media_file(self, media_id: str) -> None:
        path = self._encrypted_path(media_id)
        try:
            if await asyncio.to_thread(os.path.exists, path):
                await asyncio.to_thread(os.remove, path)
        except OSError as exc:
            logger.error("storage_error", extra={"op": "delete_media_file", "media_id": media_id, "error": str(exc)})
            raise StorageError(f"Failed to delete media file {media_id}") from exc

    async def clear_temp_files(self) -> int:
        """Remove every decrypted scratch copy.  Returns how many were removed."""
        def _clear() -> int:
            if not os.path.isdir(self.scratch_path):
                return 0
            removed = 0
            for name in os.listdir(self.scratch_path):
                if name.endswith(_TEMP_SUFFIX):
                    os.remove(os.path.join(self.scratch_path, name))
                    removed += 1
            return removed

        try:
            return await asyncio.to_thread(_clear)
        except OSError as exc:
            logger.error("storage_error", extra={"op": "clear_temp_files", "error": str(exc)})
            raise StorageError("Failed to clear scratch files") from exc
