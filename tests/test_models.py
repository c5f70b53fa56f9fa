"""Tests for change events, manifests and sync results."""

from datetime import datetime, timedelta, timezone

import pytest

from lorehub.models import ChangeEvent, SyncManifest, SyncResult

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_event(**overrides):
    fields = {
        "id": "evt-1",
        "timestamp": T0,
        "device_id": "device-a",
        "operation": "create",
        "entity": "lore",
        "entity_id": "lore-1",
        "data": {"content": "Use WAL mode"},
        "metadata": {"realmId": "realm-1", "workspaceId": "ws-1"},
    }
    fields.update(overrides)
    return ChangeEvent(**fields)


class TestChangeEvent:
    """Tests for ChangeEvent."""

    def test_serializes_with_camel_case_keys(self):
        """Test the on-disk field names."""
        data = make_event().to_dict()
        assert data["deviceId"] == "device-a"
        assert data["entityId"] == "lore-1"
        assert data["timestamp"] == "2024-05-01T12:00:00.000Z"
        assert data["metadata"] == {"realmId": "realm-1", "workspaceId": "ws-1"}

    def test_from_dict(self):
        """Test parsing a serialized event."""
        event = ChangeEvent.from_dict(make_event().to_dict())
        assert event == make_event()
        assert event.realm_id == "realm-1"
        assert event.workspace_id == "ws-1"

    def test_data_omitted_when_none(self):
        """Test that an event without payload has no data key."""
        assert "data" not in make_event(data=None).to_dict()

    def test_invalid_operation(self):
        """Test that unknown operations are rejected."""
        with pytest.raises(ValueError, match="operation"):
            make_event(operation="upsert")

    def test_invalid_entity(self):
        """Test that unknown entities are rejected."""
        with pytest.raises(ValueError, match="entity"):
            make_event(entity="workspace")

    def test_from_dict_missing_field(self):
        """Test that a missing required field raises KeyError."""
        data = make_event().to_dict()
        del data["deviceId"]
        with pytest.raises(KeyError):
            ChangeEvent.from_dict(data)

    def test_sort_key_breaks_ties_by_id(self):
        """Test ordering by timestamp, then id."""
        later = make_event(id="a", timestamp=T0 + timedelta(seconds=1))
        tie_b = make_event(id="b")
        tie_a = make_event(id="a")
        ordered = sorted([later, tie_b, tie_a], key=lambda e: e.sort_key)
        assert [(e.id, e.timestamp) for e in ordered] == [
            ("a", T0),
            ("b", T0),
            ("a", T0 + timedelta(seconds=1)),
        ]


class TestSyncManifest:
    """Tests for SyncManifest."""

    def make_manifest(self):
        return SyncManifest(
            workspace_id="ws-1",
            workspace_name="main",
            device_id="device-a",
            created=T0,
            last_sync=T0,
        )

    def test_touch_never_moves_backwards(self):
        """Test that lastSync is monotonic."""
        manifest = self.make_manifest()
        manifest.touch(T0 + timedelta(minutes=5))
        manifest.touch(T0 + timedelta(minutes=1))
        assert manifest.last_sync == T0 + timedelta(minutes=5)

    def test_round_trip(self):
        """Test serialization keeps protocol and version."""
        data = self.make_manifest().to_dict()
        assert data["version"] == "1.0.0"
        assert data["syncProtocol"] == "git-v1"
        assert SyncManifest.from_dict(data) == self.make_manifest()


class TestSyncResult:
    """Tests for SyncResult."""

    def test_ok(self):
        """Test that conflicts or errors make a result not ok."""
        assert SyncResult(pulled=2, pushed=1).ok
        assert not SyncResult(conflicts=1).ok
        assert not SyncResult(errors=["boom"]).ok

    def test_to_dict_copies_errors(self):
        """Test the dictionary form."""
        result = SyncResult(errors=["boom"])
        data = result.to_dict()
        data["errors"].append("other")
        assert result.errors == ["boom"]
