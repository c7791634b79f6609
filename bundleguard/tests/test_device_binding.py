"""
Device binding — identity resolution, caching, allow-list membership.
"""
import pytest

import config
from crypto_service import derive_device_key
from device_binding import DeviceBinding
from errors import DeviceUnavailableError


class _CountingProvider:
    def __init__(self, value="dev-A"):
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.value


@pytest.mark.asyncio
async def test_initialize_derives_key_and_caches():
    provider = _CountingProvider()
    binding = DeviceBinding(identity_provider=provider, salt="salt-1")

    info = await binding.initialize()
    again = await binding.initialize()

    assert info is again
    assert provider.calls == 1
    assert info.device_id == "dev-A"
    assert info.device_key == derive_device_key("dev-A", "salt-1")
    assert "device_key" not in repr(info)


@pytest.mark.asyncio
async def test_is_device_allowed_initialises_lazily():
    provider = _CountingProvider()
    binding = DeviceBinding(identity_provider=provider)
    assert await binding.is_device_allowed(["dev-B", "dev-A"]) is True
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_device_not_in_allow_list():
    binding = DeviceBinding(identity_provider=lambda: "dev-A")
    assert await binding.is_device_allowed(["dev-B"]) is False
    assert await binding.is_device_allowed([]) is False


@pytest.mark.asyncio
async def test_membership_is_exact():
    binding = DeviceBinding(identity_provider=lambda: "dev-A")
    assert await binding.is_device_allowed(["DEV-A", "dev-A "]) is False


@pytest.mark.asyncio
async def test_unreadable_identifier_raises():
    def _broken():
        raise OSError("no machine id")

    binding = DeviceBinding(identity_provider=_broken)
    with pytest.raises(DeviceUnavailableError):
        await binding.initialize()


@pytest.mark.asyncio
async def test_empty_identifier_is_not_replaced_by_a_fallback():
    binding = DeviceBinding(identity_provider=lambda: "")
    with pytest.raises(DeviceUnavailableError):
        await binding.is_device_allowed(["dev-A"])


@pytest.mark.asyncio
async def test_default_provider_reads_machine_id(tmp_path, monkeypatch):
    machine_id = tmp_path / "machine-id"
    machine_id.write_text("abc123\n")
    monkeypatch.setattr(config, "DEVICE_ID_PATH", str(machine_id))

    binding = DeviceBinding()
    assert await binding.get_device_id() == "abc123"
    assert await binding.get_device_key() == derive_device_key("abc123", config.DEVICE_KEY_SALT)


@pytest.mark.asyncio
async def test_default_provider_missing_file(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DEVICE_ID_PATH", str(tmp_path / "absent"))
    with pytest.raises(DeviceUnavailableError):
        await DeviceBinding().initialize()
