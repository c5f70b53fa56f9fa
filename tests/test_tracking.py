"""Tests for change tracking."""

import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from conftest import requires_git


@pytest.fixture
def mock_adapter(store):
    """Replace the tracker's sync adapters with a mock."""
    adapter = MagicMock()
    with patch.object(store.tracker, "get_adapter", return_value=adapter):
        yield adapter


@pytest.fixture
def sync_workspace(store):
    return store.create_workspace("main", sync_enabled=True)


class TestRecording:
    """Tests for turning mutations into events."""

    def test_lore_create_recorded(self, store, realm, sync_workspace, mock_adapter):
        """Test that creating a lore logs one event for the workspace."""
        lore = store.create_lore(realm["id"], "Use WAL mode", "decree")
        mock_adapter.record_change.assert_called_once()
        event = mock_adapter.record_change.call_args[0][0]
        assert event.operation == "create"
        assert event.entity == "lore"
        assert event.entity_id == lore["id"]
        assert event.device_id == store.tracker.device_id
        assert event.metadata == {"realmId": realm["id"], "workspaceId": sync_workspace.id}
        assert event.data["content"] == "Use WAL mode"
        assert store.count_outbox() == 0

    def test_one_event_per_linked_workspace(self, store, realm, mock_adapter):
        """Test that a realm in two workspaces produces two events."""
        first = store.create_workspace("main", sync_enabled=True)
        second = store.create_workspace("work", sync_enabled=True)
        store.link_realm_to_workspace(realm["id"], first.id)
        store.link_realm_to_workspace(realm["id"], second.id)
        events = store.tracker.record_lore_change("update", "lore-1", realm["id"], {})
        assert {event.workspace_id for event in events} == {first.id, second.id}
        assert len({event.id for event in events}) == 2

    def test_disabled_workspace_gets_nothing(self, store, realm, mock_adapter):
        """Test that sync-disabled workspaces are not tracked."""
        store.create_workspace("main", sync_enabled=False)
        store.create_lore(realm["id"], "Quiet", "wisdom")
        mock_adapter.record_change.assert_not_called()
        assert store.count_outbox() == 0

    def test_archive_and_delete_payloads(self, store, realm, sync_workspace, mock_adapter):
        """Test the payloads of archive and delete events."""
        lore = store.create_lore(realm["id"], "Short-lived", "wisdom")
        store.soft_delete_lore(lore["id"])
        store.delete_lore(lore["id"])
        events = [call[0][0] for call in mock_adapter.record_change.call_args_list]
        assert [event.operation for event in events] == ["create", "archive", "delete"]
        assert events[1].data == {"id": lore["id"], "status": "archived"}
        assert events[2].data == {"id": lore["id"]}

    def test_relation_events(self, store, realm, sync_workspace, mock_adapter):
        """Test relation event identity and payload."""
        a = store.create_lore(realm["id"], "A", "wisdom")
        b = store.create_lore(realm["id"], "B", "wisdom")
        store.create_relation(a["id"], b["id"], "supports")
        store.delete_relation(a["id"], b["id"], "supports")
        events = [call[0][0] for call in mock_adapter.record_change.call_args_list][2:]
        assert [event.operation for event in events] == ["create", "delete"]
        assert events[0].entity_id == f"{a['id']}-{b['id']}-supports"
        assert events[1].data == {
            "from_lore_id": a["id"],
            "to_lore_id": b["id"],
            "type": "supports",
        }

    def test_cross_realm_relation_rejected(self, store, realm, sync_workspace, mock_adapter):
        """Test that recording a relation across realms raises."""
        other = store.create_realm("other", "/code/other")
        a = store.create_lore(realm["id"], "A", "wisdom")
        b = store.create_lore(other["id"], "B", "wisdom")
        with pytest.raises(ValueError, match="cross realms"):
            store.tracker.record_relation_change(
                "create", a["id"], b["id"], "supports", realm["id"]
            )

    def test_realm_create_linked_in_same_transaction(self, store, mock_adapter):
        """Test that a realm created for a workspace is linked and routed there."""
        store.create_workspace("personal")
        team = store.create_workspace("team", sync_enabled=True)
        realm = store.create_realm("beacon", "/code/beacon", workspace_id=team.id)

        assert [w.id for w in store.get_realm_workspaces(realm["id"])] == [team.id]
        mock_adapter.record_change.assert_called_once()
        event = mock_adapter.record_change.call_args[0][0]
        assert event.entity == "realm"
        assert event.workspace_id == team.id

    def test_realm_create_rolls_back_with_event(self, store, mock_adapter):
        """Test that a failure while queueing the event leaves no realm or link."""
        team = store.create_workspace("team", sync_enabled=True)
        failure = sqlite3.OperationalError("locked")
        with patch.object(store, "add_outbox_event", side_effect=failure):
            with pytest.raises(sqlite3.OperationalError):
                store.create_realm("beacon", "/code/beacon", workspace_id=team.id)
        assert store.find_realm_by_name("beacon") is None
        assert store.get_workspace_realms(team.id) == []
        mock_adapter.record_change.assert_not_called()

    def test_realm_create_unknown_workspace(self, store):
        """Test that linking to a missing workspace is rejected up front."""
        with pytest.raises(ValueError, match="not found"):
            store.create_realm("beacon", "/code/beacon", workspace_id="missing")
        assert store.list_realms() == []

    def test_explicit_workspace_for_unlinked_realm(self, store, realm, mock_adapter):
        """Test that an unlinked realm's change goes to the given workspace."""
        store.create_workspace("personal")
        team = store.create_workspace("team", sync_enabled=True)
        events = store.tracker.record_realm_change(
            "create", realm["id"], realm, workspace_id=team.id
        )
        assert [event.workspace_id for event in events] == [team.id]


class TestSuppression:
    """Tests for suppressing change recording."""

    def test_suppressed_records_nothing(self, store, realm, sync_workspace, mock_adapter):
        """Test that nothing is recorded inside suppressed()."""
        with store.tracker.suppressed():
            store.create_lore(realm["id"], "Replayed", "wisdom")
        mock_adapter.record_change.assert_not_called()
        assert store.count_outbox() == 0

    def test_nested_suppression(self, store):
        """Test that suppression is counted."""
        tracker = store.tracker
        tracker.disable()
        tracker.disable()
        tracker.enable()
        assert not tracker.is_enabled
        tracker.enable()
        assert tracker.is_enabled

    def test_extra_enable_ignored(self, store):
        """Test that enable() never drives the count below zero."""
        tracker = store.tracker
        tracker.enable()
        tracker.disable()
        assert not tracker.is_enabled
        tracker.enable()
        assert tracker.is_enabled

    def test_suppression_released_on_error(self, store):
        """Test that an exception inside suppressed() re-enables tracking."""
        with pytest.raises(RuntimeError):
            with store.tracker.suppressed():
                raise RuntimeError("boom")
        assert store.tracker.is_enabled


class TestOutbox:
    """Tests for outbox delivery."""

    def test_failed_write_stays_queued(self, store, realm, sync_workspace, mock_adapter):
        """Test that an event that cannot be logged is retried on the next flush."""
        mock_adapter.record_change.side_effect = OSError("disk full")
        lore = store.create_lore(realm["id"], "Queued", "wisdom")
        assert store.find_lore(lore["id"]) is not None
        assert store.count_outbox(sync_workspace.id) == 1

        mock_adapter.record_change.side_effect = None
        assert store.tracker.flush() == 1
        assert store.count_outbox() == 0

    def test_order_kept_behind_failure(self, store, realm, sync_workspace, mock_adapter):
        """Test that later events wait behind a failed one."""
        mock_adapter.record_change.side_effect = OSError("disk full")
        store.create_lore(realm["id"], "First", "wisdom")
        store.create_lore(realm["id"], "Second", "wisdom")
        assert store.count_outbox() == 2

        mock_adapter.record_change.side_effect = None
        mock_adapter.record_change.reset_mock()
        store.tracker.flush()
        contents = [call[0][0].data["content"] for call in mock_adapter.record_change.call_args_list]
        assert contents == ["First", "Second"]

    def test_flush_while_suppressed(self, store, realm, sync_workspace, mock_adapter):
        """Test that nothing is delivered while suppressed."""
        mock_adapter.record_change.side_effect = OSError("disk full")
        store.create_lore(realm["id"], "Queued", "wisdom")
        mock_adapter.record_change.side_effect = None
        with store.tracker.suppressed():
            assert store.tracker.flush() == 0
        assert store.count_outbox() == 1

    def test_deleted_workspace_rows_dropped(self, store, realm, sync_workspace, mock_adapter):
        """Test that events for a deleted workspace are discarded."""
        mock_adapter.record_change.side_effect = OSError("disk full")
        store.create_lore(realm["id"], "Orphan", "wisdom")
        store.delete_workspace(sync_workspace.id)
        assert store.tracker.flush() == 0
        assert store.count_outbox() == 0


@requires_git
class TestChangeLogDelivery:
    """Tests delivering events to a real sync directory."""

    def test_event_file_written(self, store, realm, sync_workspace):
        """Test that a tracked change lands in the workspace's change log."""
        store.create_lore(realm["id"], "On disk", "wisdom")
        adapter = store.tracker.get_adapter(sync_workspace)
        assert adapter.changelog.count() == 1
        assert store.count_outbox() == 0
