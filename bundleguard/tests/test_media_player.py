"""
Media player — decision before decrypt, charging after the free preview.
"""
import os

import pytest

from bundle_builder import build_bundle
from errors import BundleGuardError, MediaNotFoundError
from media_player import MediaPlayer

HOUR = 3_600_000


async def _load(manager, tmp_path, default_limit, playlist_limits=None):
    sources = []
    for name in ("01.mp3", "02.mp3"):
        p = tmp_path / "src" / name
        p.parent.mkdir(exist_ok=True)
        p.write_bytes(b"frames-" + name.encode())
        sources.append(str(p))
    result = build_bundle(
        name="Player",
        device_ids=["dev-A"],
        media=[{"path": p} for p in sources],
        output_dir=str(tmp_path / "dist"),
        playback_limits={"default": default_limit},
        playlist_limits=playlist_limits,
    )
    bundle = await manager.load_bundle(result["archive_path"])
    await manager.import_media_files(os.path.join(str(tmp_path / "work"), result["bundle_id"]))
    return bundle, MediaPlayer(manager)


@pytest.mark.asyncio
async def test_prepare_decrypts_and_charges_after_preview(manager, tmp_path, tracker):
    bundle, player = await _load(manager, tmp_path, {"maxPlays": 1, "resetIntervalMs": HOUR, "freePreviewSeconds": 5})
    media_id = bundle.media_files[0].id

    prepared = await player.prepare_media(media_id)
    assert prepared["can_play"] is True
    assert prepared["remaining_plays"] == 1
    assert prepared["free_preview_seconds"] == 5
    with open(prepared["media_path"], "rb") as fh:
        assert fh.read() == b"frames-01.mp3"

    # Preview is free; nothing is recorded yet
    assert await player.start_playback(media_id) is False
    assert await player.charge_playback(media_id, 4.9) is False
    assert (await tracker.get_playback_history(media_id)).total_plays == 0

    assert await player.charge_playback(media_id, 5) is True
    assert await player.charge_playback(media_id, 30) is False
    assert (await tracker.get_playback_history(media_id)).total_plays == 1

    await player.cleanup_playback()
    assert not os.path.exists(prepared["media_path"])

    denied = await player.prepare_media(media_id)
    assert denied["can_play"] is False
    assert "Maximum plays (1) reached" in denied["reason"]
    assert "media_path" not in denied


@pytest.mark.asyncio
async def test_no_preview_charges_on_start(manager, tmp_path, tracker):
    bundle, player = await _load(manager, tmp_path, {"maxPlays": 2, "resetIntervalMs": HOUR, "freePreviewSeconds": 0})
    media_id = bundle.media_files[0].id

    await player.prepare_media(media_id)
    assert await player.start_playback(media_id) is True
    assert await player.start_playback(media_id) is False
    assert (await tracker.get_playback_history(media_id)).total_plays == 1


@pytest.mark.asyncio
async def test_playlist_limit_blocks_second_item(manager, tmp_path, clock):
    bundle, player = await _load(
        manager, tmp_path,
        {"maxPlays": 5, "resetIntervalMs": HOUR, "freePreviewSeconds": 0},
        playlist_limits={"maxItemsPerSession": 1, "sessionResetIntervalMs": HOUR},
    )
    first, second = (m.id for m in bundle.media_files)

    await player.prepare_media(first)
    assert await player.start_playback(first) is True
    await player.cleanup_playback()

    clock.set(10 * 60_000)
    denied = await player.prepare_media(second)
    assert denied["can_play"] is False
    assert denied["next_reset_time"] == HOUR
    assert denied["permanently_locked"] is False

    # Replaying the counted item is still within the session
    assert (await player.prepare_media(first))["can_play"] is True


@pytest.mark.asyncio
async def test_stats(manager, tmp_path):
    bundle, player = await _load(manager, tmp_path, {"maxPlays": 3, "resetIntervalMs": HOUR, "freePreviewSeconds": 0})
    media_id = bundle.media_files[0].id
    await player.prepare_media(media_id)
    await player.start_playback(media_id)

    stats = await player.get_all_playback_stats()
    assert set(stats) == {m.id for m in bundle.media_files}
    assert stats[media_id]["total_plays"] == 1
    assert stats[media_id]["remaining_plays"] == 2
    assert stats[bundle.media_files[1].id]["total_plays"] == 0


@pytest.mark.asyncio
async def test_unknown_media_and_missing_bundle(manager, tmp_path):
    player = MediaPlayer(manager)
    with pytest.raises(BundleGuardError):
        await player.prepare_media("anything")

    bundle, player = await _load(manager, tmp_path, {"maxPlays": 1, "resetIntervalMs": HOUR})
    with pytest.raises(MediaNotFoundError):
        await player.prepare_media("absent")
