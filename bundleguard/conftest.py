import os
import pytest
import pytest_asyncio

# Must be set BEFORE config.py is imported; secrets are read at module level
os.environ.setdefault("CONFIG_SHARED_KEY", "test-config-shared-key-v1")
os.environ.setdefault("DEVICE_KEY_SALT", "test-device-salt")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import fakeredis

from bundle_manager import BundleManager
from device_binding import DeviceBinding
from kv_store import MemoryStore, RedisStore
from playback_tracker import PlaybackTracker
from secure_storage import SecureStorage

DEVICE_ID = "dev-A"


class FakeClock:
    """Settable epoch-ms clock.  Starts at 0 so scenario times read literally."""

    def __init__(self, now: int = 0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def set(self, now: int) -> None:
        self.now = now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tracker(store, clock):
    return PlaybackTracker(store, clock=clock)


@pytest_asyncio.fixture
async def fake_redis():
    """In-memory FakeAsyncRedis, closed after the test."""
    r = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield r
    await r.aclose()


@pytest_asyncio.fixture
async def redis_store(fake_redis):
    yield RedisStore(client=fake_redis)


@pytest.fixture
def device_binding():
    return DeviceBinding(identity_provider=lambda: DEVICE_ID)


@pytest.fixture
def manager(device_binding, store, tracker, tmp_path):
    """BundleManager wired to in-memory state and per-test directories."""
    mgr = BundleManager(
        device_binding=device_binding,
        storage=store,
        tracker=tracker,
        work_dir=str(tmp_path / "work"),
    )
    mgr.secure_storage = SecureStorage(
        key_provider=mgr.content_key,
        base_path=str(tmp_path / "secure_media"),
        scratch_path=str(tmp_path / "cache"),
    )
    return mgr
