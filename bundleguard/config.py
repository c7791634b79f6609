"""
Central configuration — all env-vars and tunable constants live here.
Import from this module instead of calling os.getenv() scattered across the codebase.

REQUIRED secrets (bundle building/loading refuses to run without them — see validate_config()):
  CONFIG_SHARED_KEY  — envelope key shared by the packager and the player for bundle.smb
  DEVICE_KEY_SALT    — salt mixed into every device-key derivation (must match on both sides)
"""
import os

# ── Shared secrets ────────────────────────────────────────────────────────────
# Both sides of the exchange (packager and player) must be configured with the
# same values, otherwise every bundle fails to open with an IntegrityError.
CONFIG_SHARED_KEY = os.getenv("CONFIG_SHARED_KEY", "")
DEVICE_KEY_SALT   = os.getenv("DEVICE_KEY_SALT", "bundleguard-device-v1")


def validate_config() -> None:
    """Fail fast if any required secret is missing or too short.

    Call this from an entry point before touching bundles so the process exits
    with a clear message instead of producing undecryptable output later.
    """
    errors: list[str] = []
    _required = {
        "CONFIG_SHARED_KEY": (CONFIG_SHARED_KEY, 16),
        "DEVICE_KEY_SALT":   (DEVICE_KEY_SALT,   8),
    }
    for name, (value, min_len) in _required.items():
        if not value:
            errors.append(f"  {name} is not set")
        elif len(value) < min_len:
            errors.append(f"  {name} is too short ({len(value)} chars, minimum {min_len})")
    if errors:
        raise RuntimeError(
            "bundleguard aborted — insecure configuration:\n"
            + "\n".join(errors)
            + "\n\nSet the missing environment variables and restart."
        )

# ── Device identity ───────────────────────────────────────────────────────────
# Platform identifier that survives reinstalls. /etc/machine-id on systemd hosts.
DEVICE_ID_PATH = os.getenv("DEVICE_ID_PATH", "/etc/machine-id")

# ── Local state ───────────────────────────────────────────────────────────────
STORAGE_DIR = os.getenv("STORAGE_DIR", os.path.expanduser("~/.bundleguard/secure_media"))
SCRATCH_DIR = os.getenv("SCRATCH_DIR", os.path.expanduser("~/.bundleguard/cache"))
STATE_DIR   = os.getenv("STATE_DIR",   os.path.expanduser("~/.bundleguard/state"))
REDIS_URL   = os.getenv("REDIS_URL",   "redis://localhost:6379/0")
LOG_LEVEL   = os.getenv("LOG_LEVEL",   "INFO")

# ── Bundle schema ─────────────────────────────────────────────────────────────
BUNDLE_SCHEMA_VERSION = "2.2"
BUNDLE_EXTENSION      = ".smbundle"
CONFIG_FILENAME       = "bundle.smb"    # encrypted envelope
PLAIN_CONFIG_FILENAME = "bundle.json"   # unencrypted (embedded / legacy) form
MANIFEST_FILENAME     = "manifest.json"
README_FILENAME       = "README.txt"
MEDIA_DIRNAME         = "media"
CIPHERTEXT_SUFFIX     = "enc"

SUPPORTED_PROTECTION_SCHEMES: frozenset = frozenset({"xor-v1"})

AUDIO_EXTENSIONS: frozenset = frozenset({".mp3", ".m4a", ".wav"})
VIDEO_EXTENSIONS: frozenset = frozenset({".mp4"})

# ── Playback limit defaults ───────────────────────────────────────────────────
DEFAULT_MAX_PLAYS            = 3
DEFAULT_RESET_INTERVAL_MS    = 24 * 60 * 60 * 1000   # 24 h
DEFAULT_FREE_PREVIEW_SECONDS = 5
MIN_RESET_INTERVAL_MS        = 60_000                # shorter windows are rejected at packaging time

# ── Tracker storage keys ──────────────────────────────────────────────────────
LAST_KNOWN_TIME_KEY  = "last_known_time"
PLAYBACK_KEY_PREFIX  = "playback_"
PLAYLIST_KEY_PREFIX  = "playlist_"
CURRENT_BUNDLE_KEY   = "current_bundle"
