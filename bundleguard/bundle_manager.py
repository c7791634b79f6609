"""
Playback-side bundle loading and lifecycle.

load_bundle() pipeline (any failure aborts the load — there is no partial trust)
──────────────────────────────────────────────────────────────────────────────
  1. read      .smbundle archive (extracted to a work dir) or a bundle directory
  2. decrypt   bundle.smb envelope with CONFIG_SHARED_KEY (bundle.json is read as-is)
  3. validate  validate_bundle_config → BundleValidationError with every violation
  4. integrity verify_bundle_integrity for versions that carry a hash → IntegrityError
  5. authorise this device must be in allowedDeviceIds → DeviceNotAuthorizedError
  6. unwrap    this device's wrapped bundle key (2.1+) → IntegrityError on failure
  7. persist   current_bundle in the key-value store

Expiration is not a load error; the tracker reports it on every play request.
"""
from __future__ import annotations

import asyncio
import json
import os
import tarfile
from typing import Optional

from pydantic import ValidationError

import config
import crypto_service
from bundle_schema import rules_for, validate_bundle_config, verify_bundle_integrity
from device_binding import DeviceBinding
from errors import (
    BundleGuardError,
    BundleValidationError,
    DecryptionError,
    DeviceNotAuthorizedError,
    IntegrityError,
)
from kv_store import KeyValueStore
from logging_config import get_logger
from playback_tracker import PlaybackTracker
from schemas import BundleConfig, MediaFile
from secure_storage import SecureStorage

logger = get_logger(__name__)


def _extract_archive(archive_path: str, target_dir: str) -> None:
    with tarfile.open(archive_path, "r:*") as tar:
        tar.extractall(target_dir, filter="data")


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read()


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


class BundleManager:
    def __init__(
        self,
        device_binding: DeviceBinding,
        storage: KeyValueStore,
        secure_storage: Optional[SecureStorage] = None,
        tracker: Optional[PlaybackTracker] = None,
        shared_key: Optional[str] = None,
        work_dir: Optional[str] = None,
    ) -> None:
        self.device_binding = device_binding
        self.storage = storage
        self.tracker = tracker or PlaybackTracker(storage)
        self.secure_storage = secure_storage or SecureStorage(key_provider=self.content_key)
        self._shared_key = shared_key
        self._work_dir = work_dir or os.path.join(config.STATE_DIR, "bundles")
        self.current_bundle: Optional[BundleConfig] = None
        self._content_key: Optional[str] = None

    # ── Loading ──────────────────────────────────────────────────────────────

    async def _resolve_bundle_dir(self, bundle_path: str) -> str:
        if os.path.isdir(bundle_path):
            return bundle_path
        name = os.path.basename(bundle_path)
        if name.endswith(config.BUNDLE_EXTENSION):
            name = name[: -len(config.BUNDLE_EXTENSION)]
        target = os.path.join(self._work_dir, name)
        try:
            await asyncio.to_thread(_extract_archive, bundle_path, target)
        except (tarfile.TarError, OSError) as exc:
            logger.error("bundle_unreadable", extra={"path": bundle_path, "error": str(exc)})
            raise IntegrityError(f"Bundle archive could not be read: {name}") from exc
        return target

    async def _read_config(self, bundle_dir: str) -> dict:
        envelope = os.path.join(bundle_dir, config.CONFIG_FILENAME)
        plain = os.path.join(bundle_dir, config.PLAIN_CONFIG_FILENAME)
        try:
            if os.path.isfile(envelope):
                token = await asyncio.to_thread(_read_text, envelope)
                text = crypto_service.decrypt_text(token, self._shared_key or config.CONFIG_SHARED_KEY)
            else:
                text = await asyncio.to_thread(_read_text, plain)
            data = json.loads(text)
        except DecryptionError:
            logger.error("bundle_envelope_invalid", extra={"bundle_dir": bundle_dir})
            raise
        except (OSError, ValueError) as exc:
            logger.error("bundle_unreadable", extra={"bundle_dir": bundle_dir, "error": str(exc)})
            raise IntegrityError("Bundle configuration could not be read") from exc
        if not isinstance(data, dict):
            raise BundleValidationError(["Bundle configuration must be an object"])
        return data

    async def _unwrap_content_key(self, wire: dict) -> str:
        device_key = await self.device_binding.get_device_key()
        rules = rules_for(wire.get("version"))
        if rules is None or not rules.requires_wrapped_keys:
            # 2.0 and older: payloads are encrypted with the device key directly
            return device_key
        device_id = await self.device_binding.get_device_id()
        wrapped = wire["bundleKeyEncryptedForDevices"][device_id]
        return crypto_service.unwrap_bundle_key(wrapped, device_key)

    async def load_config(self, wire: dict) -> BundleConfig:
        """Steps 3–7 of the pipeline for an already-parsed manifest."""
        validation = validate_bundle_config(wire)
        if not validation.is_valid:
            logger.warning("bundle_invalid", extra={"bundle_id": wire.get("bundleId"), "errors": validation.errors})
            raise BundleValidationError(validation.errors)

        rules = rules_for(wire["version"])
        if rules.requires_integrity and not verify_bundle_integrity(wire):
            logger.warning("bundle_integrity_failed", extra={"bundle_id": wire["bundleId"]})
            raise IntegrityError("Bundle integrity check failed")

        if not await self.device_binding.is_device_allowed(wire["allowedDeviceIds"]):
            device_id = await self.device_binding.get_device_id()
            logger.warning("device_not_authorized", extra={"bundle_id": wire["bundleId"], "device_id": device_id})
            raise DeviceNotAuthorizedError(device_id)

        try:
            bundle = BundleConfig.model_validate(wire)
        except ValidationError as exc:
            raise BundleValidationError([str(e["msg"]) for e in exc.errors()]) from exc

        content_key = await self._unwrap_content_key(wire)

        await self.storage.set_item(config.CURRENT_BUNDLE_KEY, json.dumps(wire))
        self.current_bundle = bundle
        self._content_key = content_key
        logger.info("bundle_loaded", extra={"bundle_id": bundle.bundle_id, "media_files": len(bundle.media_files)})
        return bundle

    async def load_bundle(self, bundle_path: str) -> BundleConfig:
        bundle_dir = await self._resolve_bundle_dir(bundle_path)
        wire = await self._read_config(bundle_dir)
        return await self.load_config(wire)

    # ── Media import ─────────────────────────────────────────────────────────

    async def import_media_files(self, bundle_dir: str, skip_existing: bool = True) -> int:
        """Copy every ciphertext referenced by the current bundle into secure storage."""
        bundle = await self.get_current_bundle()
        if bundle is None:
            raise BundleGuardError("No bundle loaded")
        if not os.path.isdir(bundle_dir):
            bundle_dir = await self._resolve_bundle_dir(bundle_dir)

        root = os.path.realpath(bundle_dir)
        imported = 0
        for media in bundle.media_files:
            source = os.path.realpath(os.path.join(root, media.encrypted_path))
            if os.path.commonpath([root, source]) != root:
                logger.warning("media_path_outside_bundle", extra={"media_id": media.id, "path": media.encrypted_path})
                raise IntegrityError(f"Media path for {media.id} points outside the bundle")
            if not os.path.isfile(source):
                logger.warning("media_missing_in_bundle", extra={"media_id": media.id, "path": media.encrypted_path})
                continue
            if skip_existing and await self.secure_storage.media_file_exists(media.id):
                continue
            payload = await asyncio.to_thread(_read_bytes, source)
            await self.secure_storage.store_media_file(media.id, payload)
            imported += 1
        logger.info("media_imported", extra={"bundle_id": bundle.bundle_id, "count": imported})
        return imported

    # ── Accessors ────────────────────────────────────────────────────────────

    async def get_current_bundle(self) -> Optional[BundleConfig]:
        if self.current_bundle is not None:
            return self.current_bundle
        raw = await self.storage.get_item(config.CURRENT_BUNDLE_KEY)
        if not raw:
            return None
        # Re-run the full pipeline: the stored copy is no more trusted than a fresh file.
        return await self.load_config(json.loads(raw))

    async def get_media_files(self) -> list[MediaFile]:
        bundle = await self.get_current_bundle()
        return list(bundle.media_files) if bundle else []

    async def get_media_file(self, media_id: str) -> Optional[MediaFile]:
        bundle = await self.get_current_bundle()
        return bundle.media_file(media_id) if bundle else None

    async def content_key(self) -> str:
        if self._content_key is None:
            if await self.get_current_bundle() is None:
                raise BundleGuardError("No bundle loaded")
        return self._content_key

    # ── Teardown ─────────────────────────────────────────────────────────────

    async def clear_bundle(self) -> None:
        """Delete media, playback/playlist histories and the stored manifest."""
        bundle = await self.get_current_bundle()
        if bundle is not None:
            for media in bundle.media_files:
                await self.secure_storage.delete_media_file(media.id)
                await self.tracker.clear_history(media.id)
            await self.tracker.clear_playlist_history(bundle.bundle_id)
        await self.storage.remove_item(config.CURRENT_BUNDLE_KEY)
        self.current_bundle = None
        self._content_key = None
        logger.info("bundle_cleared", extra={"bundle_id": bundle.bundle_id if bundle else None})
