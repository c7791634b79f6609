"""
Bundle manifest construction, structural validation and integrity hashing.

Schema versions
───────────────
  1.0        legacy — no integrity hash, no wrapped keys
  2.0        integrity hash required; payloads encrypted with the device key
  2.1, 2.2   integrity hash + one wrapped bundle key per allowed device

Every version tag maps to one _VersionRules entry; the validator and the
integrity check dispatch on that table instead of branching on strings.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import ValidationError

from config import (
    BUNDLE_SCHEMA_VERSION,
    MIN_RESET_INTERVAL_MS,
    SUPPORTED_PROTECTION_SCHEMES,
)
from errors import BundleValidationError
from logging_config import get_logger
from schemas import (
    BundleConfig,
    BundleLimits,
    MediaFile,
    PlaybackLimit,
    PlaylistLimit,
    ValidationResult,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class _VersionRules:
    requires_integrity: bool
    requires_wrapped_keys: bool


SCHEMA_VERSIONS: dict[str, _VersionRules] = {
    "1.0": _VersionRules(requires_integrity=False, requires_wrapped_keys=False),
    "2.0": _VersionRules(requires_integrity=True,  requires_wrapped_keys=False),
    "2.1": _VersionRules(requires_integrity=True,  requires_wrapped_keys=True),
    "2.2": _VersionRules(requires_integrity=True,  requires_wrapped_keys=True),
}

# Fields bound by the integrity hash.  createdAt, expirationDate and the
# wrapped keys are deliberately outside it.
_INTEGRITY_FIELDS = ("bundleId", "allowedDeviceIds", "mediaFiles", "playbackLimits", "playlistLimits")


def rules_for(version: Optional[str]) -> Optional[_VersionRules]:
    return SCHEMA_VERSIONS.get(version) if isinstance(version, str) else None


def playback_limit_from_hours(limits: dict) -> dict:
    """Convert a legacy `resetIntervalHours` limit dict to the milliseconds contract."""
    converted = dict(limits)
    hours = converted.pop("resetIntervalHours", None)
    if hours is not None and "resetIntervalMs" not in converted:
        converted["resetIntervalMs"] = int(hours * 60 * 60 * 1000)
    return converted


# ── Integrity ─────────────────────────────────────────────────────────────────

def compute_integrity(wire: dict) -> str:
    """sha256 hex over the canonical, sorted-key JSON of the bound fields."""
    subset = {name: wire.get(name) for name in _INTEGRITY_FIELDS}
    if isinstance(subset["allowedDeviceIds"], list):
        subset["allowedDeviceIds"] = sorted(subset["allowedDeviceIds"])
    canonical = json.dumps(subset, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def verify_bundle_integrity(config: Union[BundleConfig, dict]) -> bool:
    """Recompute the integrity hash and compare.  Never raises."""
    wire = config.to_wire() if isinstance(config, BundleConfig) else config
    if not isinstance(wire, dict):
        return False
    rules = rules_for(wire.get("version"))
    if rules is None or not rules.requires_integrity:
        return False
    stored = wire.get("integrity")
    if not stored or not isinstance(stored, str):
        return False
    try:
        expected = compute_integrity(wire)
    except (TypeError, ValueError):
        return False
    # compare_digest rejects non-ASCII str; compare the encoded bytes instead
    return hmac.compare_digest(expected.encode("ascii"), stored.encode("utf-8", "surrogatepass"))


# ── Construction ──────────────────────────────────────────────────────────────

def _limit_overrides(raw: Optional[dict], where: str) -> dict:
    """Return only the explicitly supplied PlaybackLimit fields (snake_case)."""
    if not raw:
        return {}
    try:
        model = PlaybackLimit.model_validate(playback_limit_from_hours(raw))
    except ValidationError as exc:
        raise BundleValidationError([f"Invalid playback limit for {where}: {exc.errors()[0]['msg']}"]) from exc
    return model.model_dump(exclude_unset=True)


def create_bundle_config(
    bundle_id: str,
    allowed_device_ids: list[str],
    media_files: list[dict],
    playback_limits: Optional[dict] = None,
    playlist_limits: Optional[dict] = None,
    bundle_key_encrypted_for_devices: Optional[dict[str, str]] = None,
    expiration_date: Optional[datetime] = None,
    version: str = BUNDLE_SCHEMA_VERSION,
) -> BundleConfig:
    """
    Build a manifest.  Limit precedence: per-file override > bundle default >
    hard-coded default (maxPlays=3, resetIntervalMs=24h, freePreviewSeconds=5).

    Raises BundleValidationError when a merged limit is out of range, e.g. a
    reset interval below one minute.
    """
    bundle_default = _limit_overrides((playback_limits or {}).get("default"), "bundle default")
    default_limit = PlaybackLimit(**bundle_default)

    errors: list[str] = []
    if default_limit.reset_interval_ms < MIN_RESET_INTERVAL_MS:
        errors.append(f"Default resetIntervalMs must be at least {MIN_RESET_INTERVAL_MS} ms")

    files: list[MediaFile] = []
    for index, raw in enumerate(media_files):
        raw = dict(raw)
        camel, snake = raw.pop("playbackLimit", None), raw.pop("playback_limit", None)
        file_override = _limit_overrides(camel or snake, f"media at index {index}")
        limit = PlaybackLimit(**{**bundle_default, **file_override})
        if limit.reset_interval_ms < MIN_RESET_INTERVAL_MS:
            errors.append(f"resetIntervalMs for media at index {index} must be at least {MIN_RESET_INTERVAL_MS} ms")
        try:
            files.append(MediaFile.model_validate({**raw, "playbackLimit": limit}))
        except ValidationError as exc:
            errors.append(f"Media file at index {index} is invalid: {exc.errors()[0]['msg']}")

    try:
        playlist = PlaylistLimit.model_validate(playlist_limits or {})
    except ValidationError as exc:
        errors.append(f"Invalid playlist limits: {exc.errors()[0]['msg']}")
        playlist = PlaylistLimit()

    if errors:
        raise BundleValidationError(errors)

    config = BundleConfig(
        version=version,
        bundle_id=bundle_id,
        created_at=datetime.now(timezone.utc),
        expiration_date=expiration_date,
        allowed_device_ids=list(allowed_device_ids),
        media_files=files,
        playback_limits=BundleLimits(default=default_limit),
        playlist_limits=playlist,
        bundle_key_encrypted_for_devices=bundle_key_encrypted_for_devices,
    )
    rules = rules_for(version)
    if rules is not None and rules.requires_integrity:
        config.integrity = compute_integrity(config.to_wire())
    return config


# ── Validation ────────────────────────────────────────────────────────────────

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _validate_limit(limit: Any, label: str, errors: list[str]) -> None:
    if not isinstance(limit, dict):
        errors.append(f"Invalid playback limit for {label}")
        return
    max_plays = limit.get("maxPlays")
    if max_plays is not None and (not _is_number(max_plays) or max_plays < 1):
        errors.append(f"Invalid maxPlays for {label}")
    reset = limit.get("resetIntervalMs")
    if reset is not None and (not _is_number(reset) or reset < MIN_RESET_INTERVAL_MS):
        errors.append(f"resetIntervalMs for {label} must be at least {MIN_RESET_INTERVAL_MS} ms")
    fps = limit.get("freePreviewSeconds")
    if fps is not None and (not _is_number(fps) or fps < 0):
        errors.append(f"Invalid freePreviewSeconds for {label}")


def _is_relative_path(path: Any) -> bool:
    """True for a plain relative locator such as media/<id>.mp3.enc."""
    if not isinstance(path, str) or "\\" in path:
        return False
    parts = path.split("/")
    return not path.startswith("/") and ".." not in parts and ":" not in parts[0]


def _validate_media(files: list, errors: list[str]) -> None:
    seen: set = set()
    for index, file in enumerate(files):
        if not isinstance(file, dict):
            errors.append(f"Media file at index {index} is not an object")
            continue
        media_id = file.get("id")
        if media_id and isinstance(media_id, str):
            if media_id in seen:
                errors.append(f"Duplicate media id '{media_id}' at index {index}")
            seen.add(media_id)
        for field in ("id", "fileName", "encryptedPath"):
            if not file.get(field):
                errors.append(f"Media file at index {index} is missing {field}")
        path = file.get("encryptedPath")
        if path and not _is_relative_path(path):
            errors.append(f"Invalid encryptedPath for media at index {index}")
        protection = file.get("protection")
        if protection:
            if not isinstance(protection, dict) or not isinstance(protection.get("scheme"), str):
                errors.append(f"Invalid protection descriptor for media at index {index}")
            elif protection["scheme"] not in SUPPORTED_PROTECTION_SCHEMES:
                errors.append(f"Unsupported protection scheme '{protection['scheme']}' at index {index}")
        if file.get("playbackLimit") is not None:
            _validate_limit(file["playbackLimit"], f"media at index {index}", errors)


def validate_bundle_config(config: Union[BundleConfig, dict]) -> ValidationResult:
    """
    Structural validation.  Collects every violation instead of stopping at
    the first one and never raises — callers decide whether failure is fatal.
    """
    wire = config.to_wire() if isinstance(config, BundleConfig) else config
    if not isinstance(wire, dict):
        return ValidationResult(is_valid=False, errors=["Bundle configuration must be an object"])

    errors: list[str] = []
    version = wire.get("version")
    rules = rules_for(version)
    if not version:
        errors.append("Bundle version is required")
    elif rules is None:
        errors.append(f"Unsupported bundle version '{version}'")

    if not wire.get("bundleId"):
        errors.append("Bundle ID is required")

    device_ids = wire.get("allowedDeviceIds")
    if not isinstance(device_ids, list) or not device_ids:
        errors.append("At least one allowed device ID is required")
        device_ids = []
    else:
        for index, device_id in enumerate(device_ids):
            if not isinstance(device_id, str) or not device_id:
                errors.append(f"Invalid device ID at index {index}")
        device_ids = [d for d in device_ids if isinstance(d, str) and d]

    files = wire.get("mediaFiles")
    if not isinstance(files, list) or not files:
        errors.append("At least one media file is required")
    else:
        _validate_media(files, errors)

    limits = wire.get("playbackLimits")
    if isinstance(limits, dict) and limits.get("default") is not None:
        _validate_limit(limits["default"], "bundle default", errors)

    if rules is not None:
        if rules.requires_integrity and not wire.get("integrity"):
            errors.append(f"Integrity hash is required for version {version}")
        if rules.requires_wrapped_keys:
            wrapped = wire.get("bundleKeyEncryptedForDevices")
            if not isinstance(wrapped, dict):
                errors.append(f"bundleKeyEncryptedForDevices is required for version {version}")
            else:
                for device_id in device_ids:
                    if not wrapped.get(device_id):
                        errors.append(f"Missing wrapped bundle key for device {device_id}")

    if errors:
        logger.debug("bundle_validation_failed", extra={"bundle_id": wire.get("bundleId"), "errors": errors})
    return ValidationResult(is_valid=not errors, errors=errors)
