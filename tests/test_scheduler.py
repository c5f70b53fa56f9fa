"""Tests for scheduled sync."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from lorehub.exceptions import DeviceIdentityError, GitCommandError
from lorehub.models import SyncResult, Workspace
from lorehub.scheduler import due_workspaces, is_due, run_due_syncs
from lorehub.utils import to_iso

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_workspace(**overrides):
    fields = {
        "id": "ws-1",
        "name": "team",
        "sync_enabled": True,
        "sync_repo": "git@example.com:team/lore.git",
        "auto_sync": True,
        "sync_interval": 300,
    }
    fields.update(overrides)
    return Workspace(**fields)


class TestIsDue:
    """Tests for is_due."""

    def test_never_synced(self):
        """Test that a workspace that never synced is due."""
        assert is_due(make_workspace(), None, NOW)

    def test_interval(self):
        """Test the interval boundary."""
        workspace = make_workspace()
        assert not is_due(workspace, to_iso(NOW - timedelta(seconds=299)), NOW)
        assert is_due(workspace, to_iso(NOW - timedelta(seconds=300)), NOW)

    def test_not_eligible(self):
        """Test that disabled, manual or remote-less workspaces are never due."""
        assert not is_due(make_workspace(sync_enabled=False), None, NOW)
        assert not is_due(make_workspace(auto_sync=False), None, NOW)
        assert not is_due(make_workspace(sync_repo=None), None, NOW)

    def test_unparseable_last_sync(self):
        """Test that a corrupt timestamp counts as never synced."""
        assert is_due(make_workspace(), "garbage", NOW)


class TestRunDueSyncs:
    """Tests for running scheduled syncs."""

    @pytest.fixture
    def due(self, store):
        workspace = store.create_workspace(
            "team", sync_enabled=True, sync_repo="git@example.com:team/lore.git"
        )
        store.create_workspace(
            "recent", sync_enabled=True, sync_repo="git@example.com:team/other.git"
        )
        recent = store.find_workspace_by_name("recent")
        store.config.set_local_sync_state(recent.id, last_sync_at=to_iso(NOW))
        return workspace

    def test_due_workspaces(self, store, due):
        """Test that only workspaces past their interval are returned."""
        assert [w.name for w in due_workspaces(store, NOW)] == ["team"]

    def test_results_by_name(self, store, due):
        """Test that each due workspace is synced."""
        adapter = MagicMock()
        adapter.sync.return_value = SyncResult(pulled=2, pushed=1)
        with patch.object(store.tracker, "get_adapter", return_value=adapter):
            results = run_due_syncs(store, NOW)
        assert list(results) == ["team"]
        assert results["team"].pushed == 1

    def test_failure_reported(self, store, due):
        """Test that an adapter failure becomes an error result."""
        with patch.object(
            store.tracker,
            "get_adapter",
            side_effect=GitCommandError(["init"], 1, "broken"),
        ):
            results = run_due_syncs(store, NOW)
        assert not results["team"].ok
        assert "broken" in results["team"].errors[0]

    def test_device_identity_error_raised(self, store, due):
        """Test that a missing device identity stops the run."""
        with patch.object(
            store.tracker, "get_adapter", side_effect=DeviceIdentityError("no id")
        ):
            with pytest.raises(DeviceIdentityError):
                run_due_syncs(store, NOW)
