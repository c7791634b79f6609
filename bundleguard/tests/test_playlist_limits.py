"""
Playlist-level limits — the per-file pattern scoped to distinct media ids.
Covers: session window, replay of an already-counted item, cooldown between
        different items, lifetime distinct-item cap, playlist expiration.
"""
from datetime import datetime, timezone

import pytest

from playback_tracker import REASON_LIFETIME_ITEMS, REASON_PLAYLIST_EXPIRED, REASON_TAMPER
from schemas import PlaylistLimit

MINUTE = 60_000
HOUR = 60 * MINUTE
BUNDLE = "bundle-1"


async def _play(tracker, clock, t, media_id):
    clock.set(t)
    await tracker.record_playlist_item(BUNDLE, media_id)


@pytest.mark.asyncio
async def test_no_playlist_limits_always_allows(tracker, clock):
    await _play(tracker, clock, 0, "a")
    decision = await tracker.can_play_item(BUNDLE, "b", None)
    assert decision.can_play is True
    assert decision.remaining_plays is None


@pytest.mark.asyncio
async def test_session_distinct_item_cap(tracker, clock):
    limits = PlaylistLimit(max_items_per_session=2, session_reset_interval_ms=HOUR)
    await _play(tracker, clock, 0, "a")
    await _play(tracker, clock, 10 * MINUTE, "b")

    clock.set(20 * MINUTE)
    denied = await tracker.can_play_item(BUNDLE, "c", limits)
    assert denied.can_play is False
    assert denied.permanently_locked is False
    assert denied.next_reset_time == HOUR

    # Items already in the session remain playable
    replay = await tracker.can_play_item(BUNDLE, "a", limits)
    assert replay.can_play is True
    assert replay.remaining_plays == 0

    clock.set(HOUR)
    assert (await tracker.can_play_item(BUNDLE, "c", limits)).can_play is True


@pytest.mark.asyncio
async def test_session_slot_uses_latest_play_of_each_item(tracker, clock):
    limits = PlaylistLimit(max_items_per_session=2, session_reset_interval_ms=HOUR)
    await _play(tracker, clock, 0, "a")
    await _play(tracker, clock, 10 * MINUTE, "b")
    await _play(tracker, clock, 30 * MINUTE, "a")

    clock.set(40 * MINUTE)
    denied = await tracker.can_play_item(BUNDLE, "c", limits)
    # "b" (last played at 10 min) is the first item to leave the session
    assert denied.next_reset_time == 10 * MINUTE + HOUR


@pytest.mark.asyncio
async def test_cooldown_between_different_items(tracker, clock):
    limits = PlaylistLimit(min_interval_between_items_ms=5 * MINUTE)
    await _play(tracker, clock, 0, "a")

    clock.set(MINUTE)
    denied = await tracker.can_play_item(BUNDLE, "b", limits)
    assert denied.can_play is False
    assert denied.next_reset_time == 5 * MINUTE
    assert "4 minutes" in denied.reason

    # Same item is not subject to the between-items gap
    assert (await tracker.can_play_item(BUNDLE, "a", limits)).can_play is True

    clock.set(5 * MINUTE)
    assert (await tracker.can_play_item(BUNDLE, "b", limits)).can_play is True


@pytest.mark.asyncio
async def test_lifetime_distinct_item_cap(tracker, clock):
    limits = PlaylistLimit(max_total_items_played=2)
    await _play(tracker, clock, 0, "a")
    await _play(tracker, clock, HOUR, "b")

    clock.set(500 * HOUR)
    locked = await tracker.can_play_item(BUNDLE, "c", limits)
    assert locked.can_play is False
    assert locked.permanently_locked is True
    assert locked.reason == REASON_LIFETIME_ITEMS

    again = await tracker.can_play_item(BUNDLE, "b", limits)
    assert again.can_play is True
    assert again.remaining_total_plays == 0


@pytest.mark.asyncio
async def test_cleanup_keeps_lifetime_items(tracker, clock):
    await _play(tracker, clock, 0, "a")
    await _play(tracker, clock, 2 * HOUR, "b")
    history = await tracker.cleanup_playlist_records(BUNDLE, HOUR)
    assert [e.media_id for e in history.entries] == ["b"]
    assert history.played_items == ["a", "b"]


@pytest.mark.asyncio
async def test_playlist_expiration(tracker, clock):
    expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
    limits = PlaylistLimit(expiration_date=expires)
    clock.set(int(expires.timestamp() * 1000))
    decision = await tracker.can_play_item(BUNDLE, "a", limits)
    assert decision.permanently_locked is True
    assert decision.reason == REASON_PLAYLIST_EXPIRED


@pytest.mark.asyncio
async def test_playlist_shares_the_tamper_watermark(tracker, clock):
    clock.set(HOUR)
    await tracker.can_play("m-1", {"maxPlays": 1, "resetIntervalMs": HOUR})
    clock.set(HOUR - 1)
    decision = await tracker.can_play_item(BUNDLE, "a", PlaylistLimit())
    assert decision.reason == REASON_TAMPER
