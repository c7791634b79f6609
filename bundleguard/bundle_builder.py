#!/usr/bin/env python3
"""
bundleguard • Build Media Bundle
================================

Encrypt a set of media files for a list of authorised devices and pack them
into a single `<bundleId>.smbundle` archive (tar.gz):

    bundle.smb          encrypted BundleConfig JSON (CONFIG_SHARED_KEY envelope)
    manifest.json       version, bundleId, created, files, devices, checksum
    README.txt          human-readable summary
    media/<id><ext>.enc AES-256-GCM payloads under the bundle key

Example
-------
    CONFIG_SHARED_KEY=... python bundle_builder.py --name "Gospel of Mark" \
        --device dev-A --device dev-B --max-plays 3 --reset-hours 24 \
        --out ./dist ./01.mp3 ./02.mp3
"""
from __future__ import annotations

import argparse
import json
import os
import re
import sys
import tarfile
import tempfile
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

import config
import crypto_service
from bundle_schema import create_bundle_config
from errors import BundleGuardError
from logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def _media_type(ext: str) -> str:
    if ext in config.VIDEO_EXTENSIONS:
        return "video"
    if ext in config.AUDIO_EXTENSIONS:
        return "audio"
    supported = ", ".join(sorted(config.AUDIO_EXTENSIONS | config.VIDEO_EXTENSIONS))
    raise ValueError(f"Unsupported media type: {ext or '(none)'}. Supported: {supported}")


def _readme(bundle_id: str, device_count: int, file_count: int, default_limit: dict) -> str:
    reset_hours = default_limit["resetIntervalMs"] / 3_600_000
    return f"""Media Bundle
============

Bundle ID: {bundle_id}
Created: {datetime.now(timezone.utc).isoformat()}

Authorized Devices: {device_count}
Media Files: {file_count}

Playback Limits:
- Max plays per file: {default_limit["maxPlays"]}
- Reset interval: {reset_hours:g} hours

To use this bundle:
1. Transfer the entire .smbundle file to the device
2. Import the bundle in the player
3. The player verifies device authorization before allowing access

Only the authorized devices can decrypt this content.
Modifying any file in the bundle makes it unusable.
"""


def build_bundle(
    name: str,
    device_ids: list[str],
    media: list[dict],
    output_dir: str,
    playback_limits: Optional[dict] = None,
    playlist_limits: Optional[dict] = None,
    expiration_date: Optional[datetime] = None,
    protect: bool = False,
    salt: Optional[str] = None,
    shared_key: Optional[str] = None,
) -> dict:
    """
    `media` items: {"path": ..., "title"?: ..., "type"?: ..., "playbackLimit"?: {...}}.
    Returns {"bundle_id", "archive_path", "archive_name", "files_processed"}.
    """
    if not device_ids:
        raise ValueError("At least one device ID is required")
    if not media:
        raise ValueError("At least one media file is required")
    salt = salt if salt is not None else config.DEVICE_KEY_SALT
    shared_key = shared_key or config.CONFIG_SHARED_KEY

    bundle_id = f"bundle_{re.sub(r'[^A-Za-z0-9_-]+', '_', name.strip())}_{int(time.time() * 1000)}"
    bundle_key = crypto_service.generate_bundle_key()

    with tempfile.TemporaryDirectory(prefix=f"{bundle_id}_") as work_dir:
        media_dir = os.path.join(work_dir, config.MEDIA_DIRNAME)
        os.makedirs(media_dir)

        entries = []
        for item in media:
            source = item["path"]
            ext = os.path.splitext(source)[1].lower()
            kind = item.get("type") or _media_type(ext)
            media_id = str(uuid.uuid4())
            encrypted_name = f"{media_id}{ext}.{config.CIPHERTEXT_SUFFIX}"

            with open(source, "rb") as fh:
                data = fh.read()
            protection = crypto_service.new_protection() if protect else None
            payload = crypto_service.apply_protection(crypto_service.encrypt(data, bundle_key), protection)
            with open(os.path.join(media_dir, encrypted_name), "wb") as fh:
                fh.write(payload)

            entry = {
                "id": media_id,
                "fileName": os.path.basename(source),
                "title": item.get("title") or os.path.splitext(os.path.basename(source))[0],
                "type": kind,
                "encryptedPath": f"{config.MEDIA_DIRNAME}/{encrypted_name}",
                "checksum": crypto_service.sha256_hex(data),
            }
            if protection is not None:
                entry["protection"] = protection.model_dump()
            if item.get("playbackLimit"):
                entry["playbackLimit"] = item["playbackLimit"]
            entries.append(entry)
            logger.info("media_encrypted", extra={"bundle_id": bundle_id, "media_id": media_id, "bytes": len(data)})

        bundle = create_bundle_config(
            bundle_id=bundle_id,
            allowed_device_ids=device_ids,
            media_files=entries,
            playback_limits=playback_limits,
            playlist_limits=playlist_limits,
            bundle_key_encrypted_for_devices=crypto_service.wrap_for_devices(bundle_key, device_ids, salt),
            expiration_date=expiration_date,
        )
        wire = bundle.to_wire()
        config_json = json.dumps(wire, indent=2)

        with open(os.path.join(work_dir, config.CONFIG_FILENAME), "w", encoding="utf-8") as fh:
            fh.write(crypto_service.encrypt_text(config_json, shared_key))
        with open(os.path.join(work_dir, config.README_FILENAME), "w", encoding="utf-8") as fh:
            fh.write(_readme(bundle_id, len(device_ids), len(entries), wire["playbackLimits"]["default"]))
        manifest = {
            "version": bundle.version,
            "bundleId": bundle_id,
            "created": wire["createdAt"],
            "files": len(entries),
            "devices": len(device_ids),
            "checksum": crypto_service.sha256_hex(config_json.encode("utf-8")),
        }
        with open(os.path.join(work_dir, config.MANIFEST_FILENAME), "w", encoding="utf-8") as fh:
            json.dump(manifest, fh, indent=2)

        os.makedirs(output_dir, exist_ok=True)
        archive_name = f"{bundle_id}{config.BUNDLE_EXTENSION}"
        archive_path = os.path.join(output_dir, archive_name)
        with tarfile.open(archive_path, "w:gz") as tar:
            for entry_name in sorted(os.listdir(work_dir)):
                tar.add(os.path.join(work_dir, entry_name), arcname=entry_name)

    logger.info("bundle_built", extra={"bundle_id": bundle_id, "files": len(entries), "devices": len(device_ids)})
    return {
        "bundle_id": bundle_id,
        "archive_path": archive_path,
        "archive_name": archive_name,
        "files_processed": len(entries),
    }


def main(argv: Optional[list[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Build an encrypted, device-bound media bundle")
    ap.add_argument("--name", required=True, help="Bundle display name")
    ap.add_argument("--device", action="append", required=True, dest="devices", help="Authorised device ID (repeatable)")
    ap.add_argument("--out", required=True, help="Output directory")
    ap.add_argument("--max-plays", type=int, default=config.DEFAULT_MAX_PLAYS)
    ap.add_argument("--reset-hours", type=float, default=config.DEFAULT_RESET_INTERVAL_MS / 3_600_000)
    ap.add_argument("--min-interval-minutes", type=float, default=0)
    ap.add_argument("--max-plays-total", type=int, default=None)
    ap.add_argument("--free-preview-seconds", type=float, default=config.DEFAULT_FREE_PREVIEW_SECONDS)
    ap.add_argument("--max-items-per-session", type=int, default=None)
    ap.add_argument("--expires", default=None, help="ISO-8601 expiration timestamp")
    ap.add_argument("--protect", action="store_true", help="Apply xor-v1 payload protection")
    ap.add_argument("files", nargs="+", help="Media files to include")
    args = ap.parse_args(argv)

    setup_logging(config.LOG_LEVEL)
    config.validate_config()

    for f in args.files:
        if not os.path.isfile(f):
            print(f"Not a file: {f}", file=sys.stderr)
            sys.exit(2)

    default_limit = {
        "maxPlays": args.max_plays,
        "resetIntervalMs": int(args.reset_hours * 3_600_000),
        "freePreviewSeconds": args.free_preview_seconds,
    }
    if args.min_interval_minutes:
        default_limit["minIntervalBetweenPlaysMs"] = int(args.min_interval_minutes * 60_000)
    if args.max_plays_total:
        default_limit["maxPlaysTotal"] = args.max_plays_total
    playlist = {"maxItemsPerSession": args.max_items_per_session} if args.max_items_per_session else None
    expires = datetime.fromisoformat(args.expires) if args.expires else None

    try:
        result = build_bundle(
            name=args.name,
            device_ids=args.devices,
            media=[{"path": f} for f in args.files],
            output_dir=args.out,
            playback_limits={"default": default_limit},
            playlist_limits=playlist,
            expiration_date=expires,
            protect=args.protect,
        )
    except (BundleGuardError, ValueError) as exc:
        print(f"Bundle build failed: {exc}", file=sys.stderr)
        sys.exit(1)
    print(result["archive_path"])


if __name__ == "__main__":
    main()
