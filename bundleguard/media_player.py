"""
Player glue: consults the tracker before unwrapping content.

prepare_media()   file-level + playlist-level decision, then decrypt to scratch
start_playback()  charge immediately when the file has no free preview
charge_playback() charge once the listener passes freePreviewSeconds

A play is charged at most once per prepared session.  Both the per-file and
the playlist check-then-record pairs run under the tracker's locks.
"""
from __future__ import annotations

from typing import Optional

from bundle_manager import BundleManager
from errors import BundleGuardError, MediaNotFoundError
from logging_config import get_logger
from playback_tracker import PlaybackTracker

logger = get_logger(__name__)


class MediaPlayer:
    def __init__(self, bundle_manager: BundleManager, tracker: Optional[PlaybackTracker] = None) -> None:
        self.bundles = bundle_manager
        self.tracker = tracker or bundle_manager.tracker
        self.secure_storage = bundle_manager.secure_storage
        self.current_media_id: Optional[str] = None
        self.current_media_path: Optional[str] = None
        self._charged = False

    async def _require_media(self, media_id: str):
        media = await self.bundles.get_media_file(media_id)
        if media is None:
            raise MediaNotFoundError(media_id)
        return media

    async def prepare_media(self, media_id: str) -> dict:
        bundle = await self.bundles.get_current_bundle()
        if bundle is None:
            raise BundleGuardError("No bundle loaded")
        media = await self._require_media(media_id)

        decision = await self.tracker.can_play(media_id, media.playback_limit, bundle.expiration_date)
        if decision.can_play:
            playlist_decision = await self.tracker.can_play_item(
                bundle.bundle_id, media_id, bundle.playlist_limits, bundle.expiration_date
            )
            if not playlist_decision.can_play:
                decision = playlist_decision
        if not decision.can_play:
            return {
                "can_play": False,
                "reason": decision.reason,
                "next_reset_time": decision.next_reset_time,
                "permanently_locked": decision.permanently_locked,
            }

        media_path = await self.secure_storage.retrieve_media_file(
            media_id, protection=media.protection, checksum=media.checksum
        )
        self.current_media_id = media_id
        self.current_media_path = media_path
        self._charged = False
        return {
            "can_play": True,
            "media_path": media_path,
            "media_file": media,
            "remaining_plays": decision.remaining_plays,
            "remaining_total_plays": decision.remaining_total_plays,
            "next_reset_time": decision.next_reset_time,
            "free_preview_seconds": media.playback_limit.free_preview_seconds,
        }

    async def _charge(self, media_id: str) -> bool:
        """Re-check and record under the locks; False if the quota vanished meanwhile."""
        bundle = await self.bundles.get_current_bundle()
        media = await self._require_media(media_id)
        async with self.tracker.playlist_lock(bundle.bundle_id):
            async with self.tracker.media_lock(media_id):
                decision = await self.tracker.can_play(media_id, media.playback_limit, bundle.expiration_date)
                if decision.can_play:
                    decision = await self.tracker.can_play_item(
                        bundle.bundle_id, media_id, bundle.playlist_limits, bundle.expiration_date
                    )
                if not decision.can_play:
                    logger.info("charge_rejected", extra={"media_id": media_id, "reason": decision.reason})
                    return False
                await self.tracker.record_playback(media_id)
                await self.tracker.record_playlist_item(bundle.bundle_id, media_id)
        self._charged = True
        logger.info("playback_charged", extra={"media_id": media_id})
        return True

    async def start_playback(self, media_id: str) -> bool:
        """Returns True when the play was charged now (no free preview configured)."""
        media = await self._require_media(media_id)
        if media.playback_limit.free_preview_seconds > 0:
            return False
        if self._charged and self.current_media_id == media_id:
            return False
        return await self._charge(media_id)

    async def charge_playback(self, media_id: str, elapsed_seconds: float) -> bool:
        """Call periodically with the playback position; charges once past the preview."""
        if self._charged and self.current_media_id == media_id:
            return False
        media = await self._require_media(media_id)
        if elapsed_seconds < media.playback_limit.free_preview_seconds:
            return False
        return await self._charge(media_id)

    async def cleanup_playback(self) -> None:
        if self.current_media_path:
            await self.secure_storage.clear_temp_files()
        self.current_media_path = None
        self.current_media_id = None
        self._charged = False

    async def get_playback_stats(self, media_id: str) -> dict:
        bundle = await self.bundles.get_current_bundle()
        media = await self._require_media(media_id)
        history = await self.tracker.get_playback_history(media_id)
        decision = await self.tracker.can_play(media_id, media.playback_limit, bundle.expiration_date)
        return {
            "total_plays": history.total_plays,
            "plays": list(history.plays),
            "can_play": decision.can_play,
            "remaining_plays": decision.remaining_plays,
            "remaining_total_plays": decision.remaining_total_plays,
            "next_reset_time": decision.next_reset_time,
            "permanently_locked": decision.permanently_locked,
            "playback_limit": media.playback_limit,
        }

    async def get_all_playback_stats(self) -> dict:
        stats = {}
        for media in await self.bundles.get_media_files():
            stats[media.id] = await self.get_playback_stats(media.id)
        return stats
