import pytest

from peerswap.version import (
    VERSION,
    ActiveSwapsError,
    VersionDoesNotExistError,
    VersionService,
    VersionStore,
)


class MockActiveSwaps:
    def __init__(self, active):
        self.active = active
        self.asked = 0

    def has_active_swaps(self):
        self.asked += 1
        return self.active


def test_version_store(tmp_path):
    store = VersionStore(tmp_path / "swaps")
    with pytest.raises(VersionDoesNotExistError):
        store.get_version()

    store.set_version("v0.2.0-beta")
    assert store.get_version() == "v0.2.0-beta"


def test_version_store_persists_and_overwrites(tmp_path):
    path = tmp_path / "swaps"
    VersionStore(path).set_version("v0.1")
    store = VersionStore(path)
    assert store.get_version() == "v0.1"
    store.set_version("v0.2.0-beta")
    assert VersionStore(path).get_version() == "v0.2.0-beta"


def test_version_service(tmp_path):
    service = VersionService(tmp_path / "swaps")

    with pytest.raises(ActiveSwapsError):
        service.safe_upgrade(MockActiveSwaps(True))

    service.safe_upgrade(MockActiveSwaps(False))
    assert service.version_store.get_version() == "v0.2"
    assert VERSION == "v0.2"


def test_same_version_skips_active_swap_check(tmp_path):
    service = VersionService(tmp_path / "swaps")
    service.safe_upgrade(MockActiveSwaps(False))

    swaps = MockActiveSwaps(True)
    service.safe_upgrade(swaps)
    assert swaps.asked == 0


def test_active_swaps_error_names_old_version(tmp_path):
    service = VersionService(tmp_path / "swaps")
    service.version_store.set_version("v0.1")
    with pytest.raises(ActiveSwapsError) as info:
        service.safe_upgrade(MockActiveSwaps(True))
    assert info.value.version == "v0.1"
    assert "Please downgrade peerswap to version v0.1" in str(info.value)
    assert service.version_store.get_version() == "v0.1"