"""Tests for chunked workspace export."""

import json
import logging
from unittest.mock import MagicMock, patch

import pytest

from conftest import requires_git
from lorehub._export import SNAPSHOT_FILE, BulkExporter


@pytest.fixture
def workspace(store, realm):
    """A workspace (sync disabled, so nothing is tracked) holding the realm."""
    workspace = store.create_workspace("main")
    store.link_realm_to_workspace(realm["id"], workspace.id)
    return workspace


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state"


class TestBulkExporter:
    """Tests for BulkExporter."""

    def test_chunks_and_combines(self, store, realm, workspace, state_path):
        """Test that a large realm is exported in batches into one snapshot."""
        for i in range(250):
            store.create_lore(realm["id"], f"Lore {i}", "wisdom")

        summary = BulkExporter(store, workspace, state_path, batch_size=100).export()
        assert summary["lores"] == 250
        assert summary["lore_chunks"] == 3
        assert summary["realms"] == 1

        snapshot = json.loads((state_path / SNAPSHOT_FILE).read_text())
        assert len(snapshot["lores"]) == 250
        assert len({lore["id"] for lore in snapshot["lores"]}) == 250
        assert snapshot["workspace"]["id"] == workspace.id
        assert [r["id"] for r in snapshot["realms"]] == [realm["id"]]
        assert "timestamp" in snapshot

    def test_no_leftover_files(self, store, realm, workspace, state_path):
        """Test that chunks and metadata are removed after combining."""
        store.create_lore(realm["id"], "Only", "wisdom")
        state_path.mkdir()
        (state_path / "lores-chunk-7.json").write_text("[]")
        BulkExporter(store, workspace, state_path, batch_size=1).export()
        assert sorted(p.name for p in state_path.iterdir()) == [SNAPSHOT_FILE]

    def test_relations_deduplicated_and_filtered(self, store, realm, workspace, state_path):
        """Test that relations appear once and only within the export."""
        a = store.create_lore(realm["id"], "A", "wisdom")
        b = store.create_lore(realm["id"], "B", "wisdom")
        c = store.create_lore(realm["id"], "C", "wisdom")
        store.create_relation(a["id"], b["id"], "supports")
        store.create_relation(b["id"], c["id"], "depends_on")

        outside = store.create_realm("outside", "/code/outside")
        x = store.create_lore(outside["id"], "X", "wisdom")
        y = store.create_lore(outside["id"], "Y", "wisdom")
        store.create_relation(x["id"], y["id"], "supports")

        summary = BulkExporter(store, workspace, state_path, batch_size=1).export()
        assert summary["relations"] == 2
        assert summary["lores"] == 3
        snapshot = json.loads((state_path / SNAPSHOT_FILE).read_text())
        keys = sorted((r["from_lore_id"], r["to_lore_id"]) for r in snapshot["relations"])
        assert keys == sorted([(a["id"], b["id"]), (b["id"], c["id"])])

    def test_empty_workspace(self, store, state_path):
        """Test exporting a workspace without realms."""
        workspace = store.create_workspace("empty")
        summary = BulkExporter(store, workspace, state_path).export()
        assert summary["lores"] == 0
        snapshot = json.loads((state_path / SNAPSHOT_FILE).read_text())
        assert snapshot["lores"] == []
        assert snapshot["relations"] == []

    def test_memory_warning(self, store, realm, workspace, state_path, caplog):
        """Test that growth over the threshold logs a warning and collects garbage."""
        store.create_lore(realm["id"], "Heavy", "wisdom")
        readings = iter([0])
        process = MagicMock()
        process.memory_info.side_effect = lambda: MagicMock(rss=next(readings, 64 * 1024 * 1024))

        with patch("lorehub._export.psutil.Process", return_value=process):
            with patch("lorehub._export.gc.collect") as mock_collect:
                exporter = BulkExporter(
                    store, workspace, state_path, batch_size=1, memory_threshold_mb=1
                )
                with caplog.at_level(logging.WARNING, logger="lorehub._export"):
                    exporter.export()

        assert "Memory usage high" in caplog.text
        mock_collect.assert_called()

    def test_memory_checked_after_each_lore_chunk(self, store, realm, workspace, state_path):
        """Test that a single large realm is checked after every lore chunk."""
        for i in range(5):
            store.create_lore(realm["id"], f"Lore {i}", "wisdom")

        exporter = BulkExporter(store, workspace, state_path, batch_size=2)
        with patch.object(exporter, "_check_memory") as mock_check:
            exporter.export()

        lore_checks = [c for c in mock_check.call_args_list if c.args == ("lores",)]
        assert len(lore_checks) == 2

    def test_invalid_batch_size(self, store, workspace, state_path):
        """Test that batch_size must be positive."""
        with pytest.raises(ValueError):
            BulkExporter(store, workspace, state_path, batch_size=0)


@requires_git
class TestAdapterExport:
    """Tests exporting through the sync adapter."""

    def test_export_workspace_data(self, store, realm):
        """Test that the snapshot lands in the sync directory's state folder."""
        workspace = store.create_workspace("main", sync_enabled=True)
        store.link_realm_to_workspace(realm["id"], workspace.id)
        store.create_lore(realm["id"], "Exported", "wisdom")

        adapter = store.tracker.get_adapter(workspace)
        summary = adapter.export_workspace_data()
        assert summary["lores"] == 1
        assert (adapter.sync_path / "state" / SNAPSHOT_FILE).exists()
