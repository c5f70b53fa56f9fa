"""Chunked full-workspace snapshot export."""

from __future__ import annotations

import gc
import json
import logging
import os
import re
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

import psutil

from lorehub.utils import read_json, relation_key, to_iso, utc_now, write_json

if TYPE_CHECKING:
    from lorehub.models import Workspace
    from lorehub.storage import LoreStore

logger = logging.getLogger(__name__)

METADATA_FILE = "export-metadata.json"
SNAPSHOT_FILE = "current-export.json"
CHUNK_PATTERN = re.compile(r"^(lores|relations)-chunk-(\d+)\.json$")


class BulkExporter:
    """Writes a workspace snapshot to state/current-export.json.

    Lores and relations are buffered at most ``batch_size`` at a time and
    flushed to numbered chunk files, which are then streamed into the final
    snapshot and deleted. Peak memory therefore does not grow with the size
    of the workspace.
    """

    def __init__(
        self,
        store: LoreStore,
        workspace: Workspace,
        state_path: Path,
        batch_size: int = 100,
        memory_threshold_mb: int = 500,
    ) -> None:
        """Initialize the exporter.

        Args:
            store: Store to read realms, lores and relations from.
            workspace: Workspace to export.
            state_path: The sync directory's state/ folder.
            batch_size: Maximum records held before a chunk is flushed.
            memory_threshold_mb: Growth over the starting RSS that triggers
                a warning and a garbage collection.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.workspace = workspace
        self.state_path = state_path
        self.batch_size = batch_size
        self.memory_threshold = memory_threshold_mb * 1024 * 1024
        self._process = psutil.Process()
        self._start_rss = 0

    def export(self) -> dict[str, Any]:
        """Export the workspace.

        Returns:
            Summary with realm, lore, relation and chunk counts and the
            snapshot path.

        Raises:
            OSError: If a file cannot be written.
        """
        self.state_path.mkdir(parents=True, exist_ok=True)
        self._remove_chunks()
        self._start_rss = self._rss()

        realms = self.store.get_workspace_realms(self.workspace.id)
        write_json(
            self.state_path / METADATA_FILE,
            {
                "timestamp": to_iso(utc_now()),
                "workspace": self.workspace.to_dict(),
                "realms": realms,
            },
        )

        lore_ids: set[str] = set()
        buffer: list[dict[str, Any]] = []
        lore_chunks = 0
        for realm in realms:
            for lore in self.store.iter_lores_by_realm(realm["id"]):
                if lore["id"] in lore_ids:
                    continue
                lore_ids.add(lore["id"])
                buffer.append(lore)
                if len(buffer) >= self.batch_size:
                    self._write_chunk("lores", lore_chunks, buffer)
                    lore_chunks += 1
                    self._check_memory("lores")
        if buffer:
            self._write_chunk("lores", lore_chunks, buffer)
            lore_chunks += 1

        seen_relations: set[str] = set()
        relation_chunks = 0
        for lore_id in sorted(lore_ids):
            for relation in self.store.list_relations_by_lore(lore_id):
                if (
                    relation["from_lore_id"] not in lore_ids
                    or relation["to_lore_id"] not in lore_ids
                ):
                    continue
                key = relation_key(
                    relation["from_lore_id"], relation["to_lore_id"], relation["type"]
                )
                if key in seen_relations:
                    continue
                seen_relations.add(key)
                buffer.append(relation)
                if len(buffer) >= self.batch_size:
                    self._write_chunk("relations", relation_chunks, buffer)
                    relation_chunks += 1
                    self._check_memory("relations")
        if buffer:
            self._write_chunk("relations", relation_chunks, buffer)
            relation_chunks += 1

        snapshot_path = self._combine_chunks()
        growth_mb = (self._rss() - self._start_rss) / 1024 / 1024
        logger.info(
            "Exported workspace %s: %d lores, %d relations (memory growth %.1fMB)",
            self.workspace.name,
            len(lore_ids),
            len(seen_relations),
            growth_mb,
        )
        return {
            "realms": len(realms),
            "lores": len(lore_ids),
            "relations": len(seen_relations),
            "lore_chunks": lore_chunks,
            "relation_chunks": relation_chunks,
            "path": str(snapshot_path),
        }

    def _rss(self) -> int:
        return self._process.memory_info().rss

    def _check_memory(self, phase: str) -> None:
        growth = self._rss() - self._start_rss
        if growth > self.memory_threshold:
            logger.warning(
                "Memory usage high during %s export: %dMB above start",
                phase,
                growth // (1024 * 1024),
            )
            gc.collect()

    def _write_chunk(self, kind: str, number: int, buffer: list[dict[str, Any]]) -> None:
        """Flush the buffer to a numbered chunk file and clear it."""
        write_json(self.state_path / f"{kind}-chunk-{number}.json", buffer)
        buffer.clear()

    def _chunk_files(self, kind: str) -> list[Path]:
        """Chunk files of one kind in numeric order."""
        chunks = []
        for path in self.state_path.iterdir():
            match = CHUNK_PATTERN.match(path.name)
            if match and match.group(1) == kind:
                chunks.append((int(match.group(2)), path))
        return [path for _, path in sorted(chunks)]

    def _remove_chunks(self) -> None:
        for path in self.state_path.iterdir():
            if CHUNK_PATTERN.match(path.name):
                path.unlink()

    def _stream_chunks(self, out: IO[str], chunks: list[Path]) -> int:
        """Append chunk records to an open JSON array, one chunk in memory at a time."""
        count = 0
        for path in chunks:
            for record in read_json(path):
                out.write(",\n    " if count else "\n    ")
                out.write(json.dumps(record))
                count += 1
        if count:
            out.write("\n  ")
        return count

    def _combine_chunks(self) -> Path:
        """Gather chunks into the snapshot, then delete chunks and metadata."""
        metadata_path = self.state_path / METADATA_FILE
        metadata = read_json(metadata_path)
        snapshot_path = self.state_path / SNAPSHOT_FILE
        tmp_path = snapshot_path.with_suffix(".json.tmp")

        with open(tmp_path, "w", encoding="utf-8") as out:
            out.write("{\n")
            for key, value in metadata.items():
                out.write(f"  {json.dumps(key)}: {json.dumps(value)},\n")
            out.write('  "lores": [')
            self._stream_chunks(out, self._chunk_files("lores"))
            out.write('],\n  "relations": [')
            self._stream_chunks(out, self._chunk_files("relations"))
            out.write("]\n}\n")
        os.replace(tmp_path, snapshot_path)

        self._remove_chunks()
        metadata_path.unlink()
        return snapshot_path
