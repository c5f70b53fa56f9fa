"""Pytest configuration and shared fixtures."""

import shutil
import subprocess
import tempfile
from pathlib import Path

import pytest

from lorehub._config import ConfigManager
from lorehub.storage import LoreStore

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def make_config(base_path: Path) -> ConfigManager:
    """Create a config tuned for tests: no network retries, short lock wait."""
    config = ConfigManager(base_path)
    config.set("network_retries", 0)
    config.set("network_timeout", 30.0)
    config.set("lock_timeout", 2.0)
    return config


@pytest.fixture
def base_dir():
    """Create a temporary lorehub base directory."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def config(base_dir):
    return make_config(base_dir)


@pytest.fixture
def store(config):
    """Create a fresh LoreStore for each test."""
    store = LoreStore(config=config)
    yield store
    store.tracker.cleanup()
    store.close()


@pytest.fixture
def realm(store):
    """A realm in the store, created without recording changes."""
    with store.tracker.suppressed():
        return store.create_realm("atlas", "/code/atlas")


@pytest.fixture
def remote_repo():
    """Create a bare git repository to act as the shared remote."""
    temp_dir = tempfile.mkdtemp()
    remote = Path(temp_dir) / "remote.git"
    subprocess.run(
        ["git", "init", "--bare", str(remote)],
        capture_output=True,
        check=True,
    )
    yield remote
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def device_factory():
    """Create independent devices, each with its own base directory and store.

    Returns a function taking a device label and returning a LoreStore.
    """
    temp_dirs = []
    stores = []

    def make_device(label: str) -> LoreStore:
        temp_dir = Path(tempfile.mkdtemp(prefix=f"lorehub-{label}-"))
        temp_dirs.append(temp_dir)
        device_store = LoreStore(config=make_config(temp_dir))
        stores.append(device_store)
        return device_store

    yield make_device

    for device_store in stores:
        device_store.tracker.cleanup()
        device_store.close()
    for temp_dir in temp_dirs:
        shutil.rmtree(temp_dir, ignore_errors=True)
