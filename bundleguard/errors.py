"""
Exception taxonomy for bundleguard.

Policy denials (quota exhausted, cooldown, tamper lock) are NOT exceptions —
PlaybackTracker returns a PlayDecision for those.  Everything here is a
failure the caller has to handle: a bundle that cannot be trusted, a device
that is not authorised, or storage that is broken.
"""
from __future__ import annotations

from typing import Any, Optional


class BundleGuardError(Exception):
    """Base class; carries a human-readable message and optional details."""

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class BundleValidationError(BundleGuardError):
    """The bundle manifest is structurally malformed."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Invalid bundle: {', '.join(errors)}", details=list(errors))
        self.errors = list(errors)


class DeviceNotAuthorizedError(BundleGuardError):
    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device {device_id} is not authorized for this bundle")
        self.device_id = device_id


class IntegrityError(BundleGuardError):
    """Hash mismatch, checksum mismatch or undecryptable payload: bundle unusable."""


class DecryptionError(IntegrityError):
    """Wrong key or corrupted ciphertext."""


class DeviceUnavailableError(BundleGuardError):
    """The platform device identifier could not be read."""


class MediaNotFoundError(BundleGuardError):
    def __init__(self, media_id: str) -> None:
        super().__init__(f"Media file not found: {media_id}")
        self.media_id = media_id


class StorageError(BundleGuardError):
    """Key-value or filesystem I/O failed.  Never retried internally."""
