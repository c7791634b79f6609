"""
Playback limit enforcement — the offline quota state machine.

Storage key schema (via any KeyValueStore)
──────────────────────────────────────────
  playback_{media_id}    JSON PlaybackHistory
  playlist_{bundle_id}   JSON PlaylistHistory
  last_known_time        epoch ms watermark shared by every media id / playlist

can_play() decision order (first failing check wins)
────────────────────────────────────────────────────
  1. clock tamper   now < watermark            → permanently locked, watermark untouched
                    otherwise advance watermark to now
  2. expiration     now >= bundle expiration   → permanently locked
  3. lifetime cap   totalPlays >= maxPlaysTotal → permanently locked
  4. cooldown       now - lastPlayTime < minIntervalBetweenPlaysMs
  5. window         plays in (now - resetIntervalMs, now] >= maxPlays

The window is sliding and recomputed on every call; the oldest play inside
it is the one that has to age out before a new play is allowed.

Concurrency
───────────
  can_play() + record_playback() is a check-then-act pair with no lock in
  between.  Callers that may issue concurrent plays use play_if_allowed() /
  playlist_lock(), which hold a per-media (or per-bundle) asyncio.Lock across
  both steps.  Watermark read-modify-write is serialised tracker-wide.
"""
from __future__ import annotations

import asyncio
import bisect
import json
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from pydantic import ValidationError

from config import LAST_KNOWN_TIME_KEY, PLAYBACK_KEY_PREFIX, PLAYLIST_KEY_PREFIX
from errors import StorageError
from kv_store import KeyValueStore
from logging_config import get_logger
from schemas import (
    PlayDecision,
    PlaybackHistory,
    PlaybackLimit,
    PlaylistEntry,
    PlaylistHistory,
    PlaylistLimit,
    to_millis,
)

logger = get_logger(__name__)

REASON_TAMPER = "time tampering detected"
REASON_EXPIRED = "bundle expired"
REASON_PLAYLIST_EXPIRED = "playlist expired"
REASON_LIFETIME = "maximum lifetime plays reached"
REASON_LIFETIME_ITEMS = "maximum lifetime items reached"


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


def _format_time(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def _format_wait(ms: int) -> str:
    minutes = max(1, -(-ms // 60_000))
    return f"{minutes} minute" + ("" if minutes == 1 else "s")


class PlaybackTracker:
    def __init__(self, storage: KeyValueStore, clock: Optional[Callable[[], int]] = None) -> None:
        self.storage = storage
        self._clock = clock or wall_clock_ms
        self._watermark_lock = asyncio.Lock()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ── Locks ────────────────────────────────────────────────────────────────

    def media_lock(self, media_id: str) -> asyncio.Lock:
        return self._locks[f"media:{media_id}"]

    def playlist_lock(self, bundle_id: str) -> asyncio.Lock:
        return self._locks[f"bundle:{bundle_id}"]

    # ── Persistence ──────────────────────────────────────────────────────────

    async def _load(self, key: str, model):
        raw = await self.storage.get_item(key)
        if not raw:
            return model()
        try:
            return model.model_validate(json.loads(raw))
        except (ValueError, TypeError, ValidationError) as exc:
            # A corrupt record must not be mistaken for an empty history.
            logger.error("history_corrupt", extra={"key": key, "error": str(exc)})
            raise StorageError(f"Stored record '{key}' is corrupt") from exc

    async def _save(self, key: str, record) -> None:
        await self.storage.set_item(key, record.model_dump_json(by_alias=True))

    async def get_playback_history(self, media_id: str) -> PlaybackHistory:
        return await self._load(PLAYBACK_KEY_PREFIX + media_id, PlaybackHistory)

    async def get_playlist_history(self, bundle_id: str) -> PlaylistHistory:
        return await self._load(PLAYLIST_KEY_PREFIX + bundle_id, PlaylistHistory)

    async def clear_history(self, media_id: str) -> None:
        await self.storage.remove_item(PLAYBACK_KEY_PREFIX + media_id)

    async def clear_playlist_history(self, bundle_id: str) -> None:
        await self.storage.remove_item(PLAYLIST_KEY_PREFIX + bundle_id)

    async def get_last_known_time(self) -> Optional[int]:
        raw = await self.storage.get_item(LAST_KNOWN_TIME_KEY)
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError as exc:
            logger.error("watermark_corrupt", extra={"value": raw})
            raise StorageError("Stored last-known time is corrupt") from exc

    # ── Shared checks ────────────────────────────────────────────────────────

    async def _check_clock(self, now: int) -> Optional[PlayDecision]:
        """Tamper check + watermark advance, sequenced under one lock."""
        async with self._watermark_lock:
            last_known = await self.get_last_known_time()
            if last_known is not None and now < last_known:
                logger.warning("tamper_detected", extra={"now": now, "last_known_time": last_known})
                return PlayDecision(can_play=False, permanently_locked=True, reason=REASON_TAMPER)
            await self.storage.set_item(LAST_KNOWN_TIME_KEY, str(now))
        return None

    @staticmethod
    def _check_expiration(now: int, expires_at, reason: str) -> Optional[PlayDecision]:
        expires_ms = to_millis(expires_at)
        if expires_ms is not None and now >= expires_ms:
            return PlayDecision(can_play=False, permanently_locked=True, reason=reason)
        return None

    # ── Per-file limits ──────────────────────────────────────────────────────

    async def can_play(
        self,
        media_id: str,
        limits: Union[PlaybackLimit, dict],
        bundle_expiration_date=None,
    ) -> PlayDecision:
        if not isinstance(limits, PlaybackLimit):
            limits = PlaybackLimit.model_validate(limits)
        now = self._clock()

        denied = await self._check_clock(now)
        if denied is None:
            denied = self._check_expiration(now, bundle_expiration_date, REASON_EXPIRED)
        if denied is not None:
            logger.info("playback_denied", extra={"media_id": media_id, "reason": denied.reason})
            return denied

        history = await self.get_playback_history(media_id)

        cap = limits.max_plays_total
        if cap is not None and history.total_plays >= cap:
            logger.info("playback_denied", extra={"media_id": media_id, "reason": REASON_LIFETIME})
            return PlayDecision(
                can_play=False,
                remaining_plays=0,
                remaining_total_plays=0,
                reason=REASON_LIFETIME,
                permanently_locked=True,
            )
        remaining_total = cap - history.total_plays if cap is not None else None

        window_start = now - limits.reset_interval_ms
        recent = [t for t in history.plays if t > window_start]
        remaining = max(0, limits.max_plays - len(recent))
        next_reset = recent[0] + limits.reset_interval_ms if recent else None

        cooldown = limits.min_interval_between_plays_ms
        if cooldown and history.last_play_time is not None and now - history.last_play_time < cooldown:
            available_at = history.last_play_time + cooldown
            reason = f"Please wait {_format_wait(available_at - now)} before playing again"
            logger.info("playback_denied", extra={"media_id": media_id, "reason": "cooldown"})
            # remaining_plays stays informational: what the window alone would allow
            return PlayDecision(
                can_play=False,
                remaining_plays=remaining,
                remaining_total_plays=remaining_total,
                next_reset_time=available_at,
                reason=reason,
            )

        if len(recent) >= limits.max_plays:
            logger.info("playback_denied", extra={"media_id": media_id, "reason": "window"})
            return PlayDecision(
                can_play=False,
                remaining_plays=0,
                remaining_total_plays=remaining_total,
                next_reset_time=next_reset,
                reason=(
                    f"Maximum plays ({limits.max_plays}) reached. "
                    f"Next play available at {_format_time(next_reset)}"
                ),
            )

        return PlayDecision(
            can_play=True,
            remaining_plays=remaining,
            remaining_total_plays=remaining_total,
            next_reset_time=next_reset,
        )

    async def record_playback(self, media_id: str) -> PlaybackHistory:
        """Append a play.  No limit check here: call can_play() first."""
        now = self._clock()
        history = await self.get_playback_history(media_id)
        bisect.insort(history.plays, now)
        history.count = len(history.plays)
        history.total_plays += 1
        history.last_play_time = now
        await self._save(PLAYBACK_KEY_PREFIX + media_id, history)
        logger.info("playback_recorded", extra={"media_id": media_id, "total_plays": history.total_plays})
        return history

    async def cleanup_old_records(self, media_id: str, reset_interval_ms: int) -> PlaybackHistory:
        """Drop plays outside the current window.  totalPlays is left untouched."""
        cutoff = self._clock() - reset_interval_ms
        history = await self.get_playback_history(media_id)
        history.plays = [t for t in history.plays if t > cutoff]
        history.count = len(history.plays)
        await self._save(PLAYBACK_KEY_PREFIX + media_id, history)
        return history

    async def play_if_allowed(
        self,
        media_id: str,
        limits: Union[PlaybackLimit, dict],
        bundle_expiration_date=None,
    ) -> tuple[PlayDecision, Optional[PlaybackHistory]]:
        """Atomic check-then-record for one media id within this process."""
        async with self.media_lock(media_id):
            decision = await self.can_play(media_id, limits, bundle_expiration_date)
            if not decision.can_play:
                return decision, None
            return decision, await self.record_playback(media_id)

    # ── Playlist limits ──────────────────────────────────────────────────────

    async def can_play_item(
        self,
        bundle_id: str,
        media_id: str,
        limits: Union[PlaylistLimit, dict, None],
        bundle_expiration_date=None,
    ) -> PlayDecision:
        """
        Same pattern as can_play(), scoped to distinct media ids across the
        bundle: lifetime distinct-item cap, cooldown between different items,
        and a sliding session window counting distinct items.  Replaying an
        item that is already counted never consumes another slot.
        """
        if limits is None:
            limits = PlaylistLimit()
        elif not isinstance(limits, PlaylistLimit):
            limits = PlaylistLimit.model_validate(limits)
        now = self._clock()

        denied = await self._check_clock(now)
        if denied is None:
            denied = self._check_expiration(now, bundle_expiration_date, REASON_EXPIRED)
        if denied is None:
            denied = self._check_expiration(now, limits.expiration_date, REASON_PLAYLIST_EXPIRED)
        if denied is not None:
            logger.info("playlist_denied", extra={"bundle_id": bundle_id, "reason": denied.reason})
            return denied

        history = await self.get_playlist_history(bundle_id)
        already_counted = media_id in history.played_items

        cap = limits.max_total_items_played
        if cap is not None and not already_counted and len(history.played_items) >= cap:
            logger.info("playlist_denied", extra={"bundle_id": bundle_id, "reason": REASON_LIFETIME_ITEMS})
            return PlayDecision(
                can_play=False,
                remaining_plays=0,
                remaining_total_plays=0,
                reason=REASON_LIFETIME_ITEMS,
                permanently_locked=True,
            )
        remaining_total = max(0, cap - len(history.played_items)) if cap is not None else None

        window = limits.session_reset_interval_ms
        entries = history.entries
        if window:
            entries = [e for e in entries if e.played_at > now - window]
        latest: dict[str, int] = {}
        for entry in entries:
            latest[entry.media_id] = max(entry.played_at, latest.get(entry.media_id, entry.played_at))
        per_session = limits.max_items_per_session
        remaining = max(0, per_session - len(latest)) if per_session is not None else None
        # A slot frees up once the item with the oldest last play leaves the window.
        next_reset = min(latest.values()) + window if window and latest else None

        gap = limits.min_interval_between_items_ms
        if (
            gap
            and history.last_item_id is not None
            and history.last_item_id != media_id
            and now - history.last_item_time < gap
        ):
            available_at = history.last_item_time + gap
            logger.info("playlist_denied", extra={"bundle_id": bundle_id, "reason": "item_cooldown"})
            return PlayDecision(
                can_play=False,
                remaining_plays=remaining,
                remaining_total_plays=remaining_total,
                next_reset_time=available_at,
                reason=f"Please wait {_format_wait(available_at - now)} before playing another item",
            )

        if per_session is not None and media_id not in latest and len(latest) >= per_session:
            logger.info("playlist_denied", extra={"bundle_id": bundle_id, "reason": "session"})
            reason = f"Maximum items per session ({per_session}) reached."
            if next_reset is not None:
                reason += f" Next item available at {_format_time(next_reset)}"
            return PlayDecision(
                can_play=False,
                remaining_plays=0,
                remaining_total_plays=remaining_total,
                next_reset_time=next_reset,
                reason=reason,
            )

        return PlayDecision(
            can_play=True,
            remaining_plays=remaining,
            remaining_total_plays=remaining_total,
            next_reset_time=next_reset,
        )

    async def record_playlist_item(self, bundle_id: str, media_id: str) -> PlaylistHistory:
        now = self._clock()
        history = await self.get_playlist_history(bundle_id)
        history.entries.append(PlaylistEntry(media_id=media_id, played_at=now))
        if media_id not in history.played_items:
            history.played_items.append(media_id)
        history.last_item_id = media_id
        history.last_item_time = now
        await self._save(PLAYLIST_KEY_PREFIX + bundle_id, history)
        return history

    async def cleanup_playlist_records(self, bundle_id: str, session_reset_interval_ms: int) -> PlaylistHistory:
        """Drop session entries outside the window; played_items is never pruned."""
        cutoff = self._clock() - session_reset_interval_ms
        history = await self.get_playlist_history(bundle_id)
        history.entries = [e for e in history.entries if e.played_at > cutoff]
        await self._save(PLAYLIST_KEY_PREFIX + bundle_id, history)
        return history
