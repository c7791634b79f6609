"""
Pydantic schemas for bundleguard manifests and tracker state.

The bundle manifest is exchanged as camelCase JSON (packager ↔ player), so
every wire model uses a camelCase alias generator while Python code keeps
snake_case attribute names.  Dump with ``by_alias=True`` when writing JSON.

Using explicit schemas gives us:
  - One definition of the manifest shape for both actors
  - Type coercion of persisted history payloads (including older formats)
  - Clear errors when a packaging request is out of range
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from config import (
    DEFAULT_FREE_PREVIEW_SECONDS,
    DEFAULT_MAX_PLAYS,
    DEFAULT_RESET_INTERVAL_MS,
)


def to_millis(value) -> Optional[int]:
    """Normalise an epoch-ms int, datetime or ISO-8601 string to epoch ms."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    raise TypeError(f"unsupported timestamp type: {type(value).__name__}")


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Limits ────────────────────────────────────────────────────────────────────

class PlaybackLimit(_WireModel):
    max_plays: int = Field(default=DEFAULT_MAX_PLAYS, ge=1, description="Plays allowed per reset window")
    reset_interval_ms: int = Field(default=DEFAULT_RESET_INTERVAL_MS, gt=0)
    min_interval_between_plays_ms: Optional[int] = Field(default=None, ge=0, description="0 / None = no cooldown")
    max_plays_total: Optional[int] = Field(default=None, ge=1, description="Lifetime cap, None = unlimited")
    free_preview_seconds: float = Field(default=DEFAULT_FREE_PREVIEW_SECONDS, ge=0)


class PlaylistLimit(_WireModel):
    max_items_per_session: Optional[int] = Field(default=None, ge=1)
    session_reset_interval_ms: Optional[int] = Field(default=None, ge=0)
    min_interval_between_items_ms: Optional[int] = Field(default=None, ge=0)
    max_total_items_played: Optional[int] = Field(default=None, ge=1)
    expiration_date: Optional[datetime] = None


class BundleLimits(_WireModel):
    default: PlaybackLimit = Field(default_factory=PlaybackLimit)


# ── Bundle manifest ───────────────────────────────────────────────────────────

class ProtectionDescriptor(_WireModel):
    scheme: str
    salt: str


class MediaFile(_WireModel):
    id: str
    file_name: str
    title: Optional[str] = None
    type: Literal["audio", "video"] = "audio"
    encrypted_path: str
    protection: Optional[ProtectionDescriptor] = None
    checksum: Optional[str] = Field(default=None, description="sha256 hex of the original plaintext")
    playback_limit: PlaybackLimit = Field(default_factory=PlaybackLimit)

    @model_validator(mode="after")
    def _default_title(self) -> "MediaFile":
        if not self.title:
            self.title = self.file_name
        return self


class BundleConfig(_WireModel):
    version: str
    bundle_id: str
    created_at: datetime
    expiration_date: Optional[datetime] = None
    allowed_device_ids: list[str]
    media_files: list[MediaFile]
    playback_limits: BundleLimits = Field(default_factory=BundleLimits)
    playlist_limits: PlaylistLimit = Field(default_factory=PlaylistLimit)
    bundle_key_encrypted_for_devices: Optional[dict[str, str]] = None
    integrity: Optional[str] = None

    def to_wire(self) -> dict:
        """JSON-ready camelCase dict, the exact form that is hashed and shipped."""
        return self.model_dump(mode="json", by_alias=True)

    def media_file(self, media_id: str) -> Optional[MediaFile]:
        return next((m for m in self.media_files if m.id == media_id), None)


class ValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


# ── Tracker state ─────────────────────────────────────────────────────────────

class PlaybackHistory(_WireModel):
    plays: list[int] = Field(default_factory=list)
    count: int = 0
    total_plays: int = 0
    last_play_time: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy(cls, data):
        # Older clients stored ISO strings and no lifetime counter.
        if isinstance(data, dict):
            data = dict(data)
            plays = sorted(to_millis(p) for p in data.get("plays") or [])
            data["plays"] = plays
            data["count"] = len(plays)
            total = data.get("totalPlays", data.get("total_plays"))
            data["totalPlays"] = max(int(total or 0), len(plays))
            data.pop("total_plays", None)
            last = data.get("lastPlayTime", data.get("last_play_time"))
            data.pop("last_play_time", None)
            data["lastPlayTime"] = to_millis(last) if last is not None else (plays[-1] if plays else None)
        return data


class PlaylistEntry(_WireModel):
    media_id: str
    played_at: int

    @field_validator("played_at", mode="before")
    @classmethod
    def _coerce_time(cls, value):
        return to_millis(value)


class PlaylistHistory(_WireModel):
    entries: list[PlaylistEntry] = Field(default_factory=list)
    played_items: list[str] = Field(default_factory=list, description="Distinct items ever played, never pruned")
    last_item_id: Optional[str] = None
    last_item_time: Optional[int] = None


class PlayDecision(BaseModel):
    can_play: bool
    remaining_plays: Optional[int] = None
    remaining_total_plays: Optional[int] = None
    next_reset_time: Optional[int] = Field(default=None, description="Epoch ms when the next play frees up")
    reason: Optional[str] = None
    permanently_locked: bool = False


# ── Device ────────────────────────────────────────────────────────────────────

class DeviceInfo(BaseModel):
    device_id: str
    device_key: str = Field(repr=False)
    brand: Optional[str] = None
    model: Optional[str] = None
    system_version: Optional[str] = None
