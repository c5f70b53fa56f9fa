"""SQLite-backed store for realms, lores, relations and workspaces."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from lorehub._config import ConfigManager
from lorehub._tracking import ChangeTracker
from lorehub.exceptions import DuplicateRelationError
from lorehub.models import (
    LORE_STATUSES,
    LORE_TYPES,
    RELATION_TYPES,
    ChangeEvent,
    Workspace,
)
from lorehub.utils import (
    generate_id,
    json_to_list,
    list_to_json,
    parse_timestamp,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


def _iso(value: Any) -> str:
    """Normalize a timestamp argument (datetime, ISO string or None) to ISO."""
    if value is None:
        return to_iso(utc_now())
    return to_iso(parse_timestamp(value))


class LoreStore:
    """Stores lores, realms, relations and workspaces in SQLite.

    Every mutation of a lore, realm or relation is reported to the bound
    ChangeTracker inside the same transaction, so the mutation and its
    change events are committed together.
    """

    DEFAULT_CONFIDENCE = 80
    DEFAULT_ORIGIN = {"type": "manual", "reference": "lorehub"}

    # Lore fields that update_lore accepts
    UPDATABLE_LORE_FIELDS = frozenset(
        {
            "content",
            "why",
            "type",
            "provinces",
            "sigils",
            "confidence",
            "origin",
            "status",
            "updated_at",
        }
    )

    UPDATABLE_WORKSPACE_FIELDS = frozenset(
        {
            "name",
            "sync_enabled",
            "sync_repo",
            "sync_branch",
            "auto_sync",
            "sync_interval",
            "filters",
            "is_default",
        }
    )

    def __init__(
        self,
        base_path: str | Path | None = None,
        config: ConfigManager | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            base_path: Base directory for lorehub data (ignored if config given).
            config: Configuration manager to use.
        """
        self.config = config or ConfigManager(base_path)
        self.db_path = self.config.db_path
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()

        self.tracker = ChangeTracker(self.config)
        self.tracker.initialize(self)

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS realms (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                path TEXT NOT NULL,
                git_remote TEXT,
                is_monorepo INTEGER DEFAULT 0,
                provinces TEXT DEFAULT '[]',
                last_seen TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS lores (
                id TEXT PRIMARY KEY,
                realm_id TEXT NOT NULL REFERENCES realms(id) ON DELETE CASCADE,
                content TEXT NOT NULL,
                why TEXT,
                type TEXT NOT NULL,
                provinces TEXT DEFAULT '[]',
                sigils TEXT DEFAULT '[]',
                confidence INTEGER DEFAULT 80,
                origin TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'living',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_lores_realm ON lores(realm_id)
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS lore_relations (
                from_lore_id TEXT NOT NULL REFERENCES lores(id) ON DELETE CASCADE,
                to_lore_id TEXT NOT NULL REFERENCES lores(id) ON DELETE CASCADE,
                type TEXT NOT NULL,
                strength REAL DEFAULT 1.0,
                metadata TEXT,
                created_at TEXT NOT NULL,
                PRIMARY KEY (from_lore_id, to_lore_id, type)
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_lore_relations_to ON lore_relations(to_lore_id)
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS workspaces (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                sync_enabled INTEGER DEFAULT 0,
                sync_repo TEXT,
                sync_branch TEXT DEFAULT 'main',
                auto_sync INTEGER DEFAULT 1,
                sync_interval INTEGER DEFAULT 300,
                filters TEXT,
                is_default INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS realm_workspaces (
                realm_id TEXT NOT NULL REFERENCES realms(id) ON DELETE CASCADE,
                workspace_id TEXT NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
                created_at TEXT NOT NULL,
                PRIMARY KEY (realm_id, workspace_id)
            )
        """)
        # Change events waiting to be written to their workspace's change log
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS change_outbox (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                workspace_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        self.conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run statements in one transaction, rolling back on error.

        Yields:
            Cursor bound to the transaction.
        """
        cursor = self.conn.cursor()
        try:
            yield cursor
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    # Row conversion helpers

    def _row_to_realm(self, row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": row["id"],
            "name": row["name"],
            "path": row["path"],
            "git_remote": row["git_remote"],
            "is_monorepo": bool(row["is_monorepo"]),
            "provinces": json_to_list(row["provinces"]),
            "last_seen": row["last_seen"],
            "created_at": row["created_at"],
        }

    def _row_to_lore(self, row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": row["id"],
            "realm_id": row["realm_id"],
            "content": row["content"],
            "why": row["why"],
            "type": row["type"],
            "provinces": json_to_list(row["provinces"]),
            "sigils": json_to_list(row["sigils"]),
            "confidence": row["confidence"],
            "origin": json.loads(row["origin"]) if row["origin"] else None,
            "status": row["status"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def _row_to_relation(self, row: sqlite3.Row) -> dict[str, Any]:
        return {
            "from_lore_id": row["from_lore_id"],
            "to_lore_id": row["to_lore_id"],
            "type": row["type"],
            "strength": row["strength"],
            "metadata": json.loads(row["metadata"]) if row["metadata"] else None,
            "created_at": row["created_at"],
        }

    def _row_to_workspace(self, row: sqlite3.Row) -> Workspace:
        filters = json.loads(row["filters"]) if row["filters"] else None
        return Workspace.from_row(row, filters=filters)

    # Validation

    def _validate_lore_fields(self, fields: dict[str, Any]) -> None:
        """Validate lore field values.

        Raises:
            ValueError: If any value is invalid.
        """
        if "content" in fields and not (fields["content"] or "").strip():
            raise ValueError("Lore content cannot be empty")
        if "type" in fields and fields["type"] not in LORE_TYPES:
            raise ValueError(
                f"Invalid lore type '{fields['type']}'. "
                f"Must be one of: {', '.join(LORE_TYPES)}"
            )
        if "status" in fields and fields["status"] not in LORE_STATUSES:
            raise ValueError(
                f"Invalid lore status '{fields['status']}'. "
                f"Must be one of: {', '.join(LORE_STATUSES)}"
            )
        if "confidence" in fields and fields["confidence"] is not None:
            if not 0 <= fields["confidence"] <= 100:
                raise ValueError("Confidence must be between 0 and 100")

    # Realm methods

    def create_realm(
        self,
        name: str,
        path: str,
        git_remote: str | None = None,
        is_monorepo: bool = False,
        provinces: list[str] | None = None,
        realm_id: str | None = None,
        created_at: Any = None,
        last_seen: Any = None,
        workspace_id: str | None = None,
    ) -> dict[str, Any]:
        """Register a codebase as a realm.

        Args:
            name: Display name.
            path: Filesystem path of the codebase.
            git_remote: Optional remote URL of the codebase.
            is_monorepo: Whether the realm contains several provinces.
            provinces: Module or service names within the realm.
            realm_id: Explicit ID (used when replaying or importing).
            created_at: Creation time (defaults to now).
            last_seen: Last time the realm was visited (defaults to now).
            workspace_id: Workspace to link the realm to. The link is written
                before the create change is recorded, so the change is routed
                to this workspace.

        Returns:
            The created realm.

        Raises:
            ValueError: If name or path is empty, or the workspace does not exist.
        """
        if not name or not path:
            raise ValueError("Realm name and path are required")
        if workspace_id and not self.find_workspace(workspace_id):
            raise ValueError(f"Workspace {workspace_id} not found")

        realm_id = realm_id or generate_id()
        created = _iso(created_at)
        with self.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO realms
                (id, name, path, git_remote, is_monorepo, provinces, last_seen, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    realm_id,
                    name,
                    path,
                    git_remote,
                    int(is_monorepo),
                    list_to_json(provinces),
                    _iso(last_seen) if last_seen else created,
                    created,
                ),
            )
            if workspace_id:
                cursor.execute(
                    """
                    INSERT OR IGNORE INTO realm_workspaces (realm_id, workspace_id, created_at)
                    VALUES (?, ?, ?)
                    """,
                    (realm_id, workspace_id, created),
                )
            realm = self.find_realm(realm_id)
            self.tracker.record_realm_change(
                "create", realm_id, realm, cursor=cursor, workspace_id=workspace_id
            )
        self.tracker.flush()
        return realm

    def find_realm(self, realm_id: str) -> dict[str, Any] | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM realms WHERE id = ?", (realm_id,))
        row = cursor.fetchone()
        return self._row_to_realm(row) if row else None

    def find_realm_by_name(self, name: str) -> dict[str, Any] | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM realms WHERE name = ?", (name,))
        row = cursor.fetchone()
        return self._row_to_realm(row) if row else None

    def find_realm_by_path(self, path: str) -> dict[str, Any] | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM realms WHERE path = ?", (path,))
        row = cursor.fetchone()
        return self._row_to_realm(row) if row else None

    def list_realms(self) -> list[dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM realms ORDER BY last_seen DESC")
        return [self._row_to_realm(row) for row in cursor.fetchall()]

    # Lore methods

    def create_lore(
        self,
        realm_id: str,
        content: str,
        lore_type: str,
        why: str | None = None,
        provinces: list[str] | None = None,
        sigils: list[str] | None = None,
        confidence: int | None = None,
        origin: dict[str, Any] | None = None,
        status: str = "living",
        lore_id: str | None = None,
        created_at: Any = None,
        updated_at: Any = None,
    ) -> dict[str, Any]:
        """Record a new lore in a realm.

        Args:
            realm_id: Realm the lore belongs to.
            content: The knowledge itself.
            lore_type: One of LORE_TYPES.
            why: Optional rationale.
            provinces: Provinces of the realm the lore applies to.
            sigils: Free-form tags.
            confidence: 0-100, defaults to 80.
            origin: Where the lore came from ({type, reference, context?}).
            status: One of LORE_STATUSES.
            lore_id: Explicit ID (used when replaying or importing).
            created_at: Creation time (defaults to now).
            updated_at: Last update time (defaults to created_at).

        Returns:
            The created lore.

        Raises:
            ValueError: If a field is invalid or the realm does not exist.
        """
        if confidence is None:
            confidence = self.DEFAULT_CONFIDENCE
        self._validate_lore_fields(
            {"content": content, "type": lore_type, "status": status, "confidence": confidence}
        )
        if not self.find_realm(realm_id):
            raise ValueError(f"Realm {realm_id} not found")

        lore_id = lore_id or generate_id()
        created = _iso(created_at)
        with self.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO lores (
                    id, realm_id, content, why, type, provinces, sigils,
                    confidence, origin, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    lore_id,
                    realm_id,
                    content,
                    why,
                    lore_type,
                    list_to_json(provinces),
                    list_to_json(sigils),
                    confidence,
                    json.dumps(origin or self.DEFAULT_ORIGIN),
                    status,
                    created,
                    _iso(updated_at) if updated_at else created,
                ),
            )
            lore = self.find_lore(lore_id)
            self.tracker.record_lore_change("create", lore_id, realm_id, lore, cursor=cursor)
        self.tracker.flush()
        return lore

    def find_lore(self, lore_id: str) -> dict[str, Any] | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM lores WHERE id = ?", (lore_id,))
        row = cursor.fetchone()
        return self._row_to_lore(row) if row else None

    def update_lore(self, lore_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        """Apply a partial update to a lore.

        Keys outside UPDATABLE_LORE_FIELDS (id, realm_id, created_at) are
        ignored, so a full lore record is an acceptable patch.

        Args:
            lore_id: ID of the lore to update.
            patch: Fields to change.

        Returns:
            The updated lore, or None if it does not exist.

        Raises:
            ValueError: If a field value is invalid.
        """
        existing = self.find_lore(lore_id)
        if not existing:
            return None

        fields = {k: v for k, v in patch.items() if k in self.UPDATABLE_LORE_FIELDS}
        self._validate_lore_fields(fields)

        updates: dict[str, Any] = {"updated_at": _iso(fields.pop("updated_at", None))}
        for key, value in fields.items():
            if key in ("provinces", "sigils"):
                updates[key] = list_to_json(value)
            elif key == "origin":
                updates[key] = json.dumps(value or self.DEFAULT_ORIGIN)
            else:
                updates[key] = value

        assignments = ", ".join(f"{key} = ?" for key in updates)
        with self.transaction() as cursor:
            cursor.execute(
                f"UPDATE lores SET {assignments} WHERE id = ?",
                (*updates.values(), lore_id),
            )
            lore = self.find_lore(lore_id)
            self.tracker.record_lore_change(
                "update", lore_id, existing["realm_id"], lore, cursor=cursor
            )
        self.tracker.flush()
        return lore

    def delete_lore(self, lore_id: str) -> bool:
        """Delete a lore and its relations.

        Returns:
            True if the lore existed.
        """
        existing = self.find_lore(lore_id)
        if not existing:
            return False

        with self.transaction() as cursor:
            cursor.execute("DELETE FROM lores WHERE id = ?", (lore_id,))
            self.tracker.record_lore_change(
                "delete", lore_id, existing["realm_id"], {"id": lore_id}, cursor=cursor
            )
        self.tracker.flush()
        return True

    def soft_delete_lore(self, lore_id: str) -> bool:
        """Archive a lore, keeping its record.

        Returns:
            True if the lore existed.
        """
        existing = self.find_lore(lore_id)
        if not existing:
            return False

        with self.transaction() as cursor:
            cursor.execute(
                "UPDATE lores SET status = 'archived', updated_at = ? WHERE id = ?",
                (to_iso(utc_now()), lore_id),
            )
            self.tracker.record_lore_change(
                "archive",
                lore_id,
                existing["realm_id"],
                {"id": lore_id, "status": "archived"},
                cursor=cursor,
            )
        self.tracker.flush()
        return True

    def list_lores_by_realm(
        self, realm_id: str, include_archived: bool = True
    ) -> list[dict[str, Any]]:
        return list(self.iter_lores_by_realm(realm_id, include_archived=include_archived))

    def iter_lores_by_realm(
        self, realm_id: str, include_archived: bool = True
    ) -> Iterator[dict[str, Any]]:
        """Yield a realm's lores one row at a time, newest first."""
        cursor = self.conn.cursor()
        if include_archived:
            cursor.execute(
                "SELECT * FROM lores WHERE realm_id = ? ORDER BY created_at DESC",
                (realm_id,),
            )
        else:
            cursor.execute(
                """
                SELECT * FROM lores WHERE realm_id = ? AND status != 'archived'
                ORDER BY created_at DESC
                """,
                (realm_id,),
            )
        for row in cursor:
            yield self._row_to_lore(row)

    # Relation methods

    def create_relation(
        self,
        from_lore_id: str,
        to_lore_id: str,
        relation_type: str,
        strength: float = 1.0,
        metadata: dict[str, Any] | None = None,
        created_at: Any = None,
    ) -> dict[str, Any]:
        """Relate two lores of the same realm.

        Returns:
            The created relation.

        Raises:
            ValueError: If the type is invalid, a lore is missing, the lores
                are the same, or they belong to different realms.
            DuplicateRelationError: If the relation already exists.
        """
        if relation_type not in RELATION_TYPES:
            raise ValueError(
                f"Invalid relation type '{relation_type}'. "
                f"Must be one of: {', '.join(RELATION_TYPES)}"
            )
        if from_lore_id == to_lore_id:
            raise ValueError("A lore cannot have a relation to itself")
        if not 0.0 <= strength <= 1.0:
            raise ValueError("Strength must be between 0.0 and 1.0")

        from_lore = self.find_lore(from_lore_id)
        to_lore = self.find_lore(to_lore_id)
        if not from_lore or not to_lore:
            missing = from_lore_id if not from_lore else to_lore_id
            raise ValueError(f"Lore {missing} not found")
        if from_lore["realm_id"] != to_lore["realm_id"]:
            raise ValueError("Related lores must belong to the same realm")

        relation = {
            "from_lore_id": from_lore_id,
            "to_lore_id": to_lore_id,
            "type": relation_type,
            "strength": strength,
            "metadata": metadata,
            "created_at": _iso(created_at),
        }
        try:
            with self.transaction() as cursor:
                cursor.execute(
                    """
                    INSERT INTO lore_relations
                    (from_lore_id, to_lore_id, type, strength, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        from_lore_id,
                        to_lore_id,
                        relation_type,
                        strength,
                        json.dumps(metadata) if metadata else None,
                        relation["created_at"],
                    ),
                )
                self.tracker.record_relation_change(
                    "create",
                    from_lore_id,
                    to_lore_id,
                    relation_type,
                    from_lore["realm_id"],
                    relation,
                    cursor=cursor,
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRelationError(
                f"Relation {from_lore_id} -[{relation_type}]-> {to_lore_id} already exists"
            ) from e
        self.tracker.flush()
        return relation

    def delete_relation(self, from_lore_id: str, to_lore_id: str, relation_type: str) -> bool:
        """Delete a relation by its composite key.

        Returns:
            True if a relation was deleted.
        """
        from_lore = self.find_lore(from_lore_id)
        with self.transaction() as cursor:
            cursor.execute(
                """
                DELETE FROM lore_relations
                WHERE from_lore_id = ? AND to_lore_id = ? AND type = ?
                """,
                (from_lore_id, to_lore_id, relation_type),
            )
            deleted = cursor.rowcount > 0
            if deleted and from_lore:
                self.tracker.record_relation_change(
                    "delete",
                    from_lore_id,
                    to_lore_id,
                    relation_type,
                    from_lore["realm_id"],
                    cursor=cursor,
                )
        self.tracker.flush()
        return deleted

    def list_relations_by_lore(self, lore_id: str) -> list[dict[str, Any]]:
        """List relations where the lore is either endpoint."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM lore_relations
            WHERE from_lore_id = ? OR to_lore_id = ?
            ORDER BY created_at
            """,
            (lore_id, lore_id),
        )
        return [self._row_to_relation(row) for row in cursor.fetchall()]

    def find_relation(
        self, from_lore_id: str, to_lore_id: str, relation_type: str
    ) -> dict[str, Any] | None:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM lore_relations
            WHERE from_lore_id = ? AND to_lore_id = ? AND type = ?
            """,
            (from_lore_id, to_lore_id, relation_type),
        )
        row = cursor.fetchone()
        return self._row_to_relation(row) if row else None

    # Workspace methods

    def create_workspace(
        self,
        name: str,
        sync_enabled: bool = False,
        sync_repo: str | None = None,
        sync_branch: str = "main",
        auto_sync: bool = True,
        sync_interval: int = 300,
        filters: dict[str, Any] | None = None,
        is_default: bool = False,
        workspace_id: str | None = None,
    ) -> Workspace:
        """Create a workspace.

        The first workspace ever created becomes the default, as does one
        created with is_default=True (clearing the previous default).

        Raises:
            ValueError: If the name is empty or already taken.
        """
        if not name:
            raise ValueError("Workspace name is required")
        if self.find_workspace_by_name(name):
            raise ValueError(f"Workspace with name '{name}' already exists")

        cursor = self.conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM workspaces")
        should_be_default = is_default or cursor.fetchone()[0] == 0

        workspace_id = workspace_id or generate_id()
        now = to_iso(utc_now())
        with self.transaction() as cursor:
            if should_be_default:
                cursor.execute("UPDATE workspaces SET is_default = 0 WHERE is_default = 1")
            cursor.execute(
                """
                INSERT INTO workspaces (
                    id, name, sync_enabled, sync_repo, sync_branch, auto_sync,
                    sync_interval, filters, is_default, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    workspace_id,
                    name,
                    int(sync_enabled),
                    sync_repo,
                    sync_branch or "main",
                    int(auto_sync),
                    sync_interval,
                    json.dumps(filters) if filters else None,
                    int(should_be_default),
                    now,
                    now,
                ),
            )
        return self.find_workspace(workspace_id)

    def find_workspace(self, workspace_id: str) -> Workspace | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,))
        row = cursor.fetchone()
        return self._row_to_workspace(row) if row else None

    def find_workspace_by_name(self, name: str) -> Workspace | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM workspaces WHERE name = ?", (name,))
        row = cursor.fetchone()
        return self._row_to_workspace(row) if row else None

    def get_default_workspace(self) -> Workspace | None:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM workspaces WHERE is_default = 1 LIMIT 1")
        row = cursor.fetchone()
        return self._row_to_workspace(row) if row else None

    def list_workspaces(self) -> list[Workspace]:
        """List workspaces, default first, then by name."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM workspaces ORDER BY is_default DESC, name")
        return [self._row_to_workspace(row) for row in cursor.fetchall()]

    def update_workspace(self, workspace_id: str, **fields: Any) -> Workspace | None:
        """Update workspace settings.

        Args:
            workspace_id: Workspace to update.
            **fields: Any of UPDATABLE_WORKSPACE_FIELDS.

        Returns:
            The updated workspace, or None if it does not exist.

        Raises:
            ValueError: If an unknown field is given or the new name is taken.
        """
        unknown = set(fields) - self.UPDATABLE_WORKSPACE_FIELDS
        if unknown:
            raise ValueError(f"Unknown workspace fields: {', '.join(sorted(unknown))}")
        if not self.find_workspace(workspace_id):
            return None
        if "name" in fields:
            other = self.find_workspace_by_name(fields["name"])
            if other and other.id != workspace_id:
                raise ValueError(f"Workspace with name '{fields['name']}' already exists")

        updates: dict[str, Any] = {}
        for key, value in fields.items():
            if key in ("sync_enabled", "auto_sync", "is_default"):
                updates[key] = int(bool(value))
            elif key == "filters":
                updates[key] = json.dumps(value) if value else None
            else:
                updates[key] = value
        updates["updated_at"] = to_iso(utc_now())

        assignments = ", ".join(f"{key} = ?" for key in updates)
        with self.transaction() as cursor:
            if fields.get("is_default"):
                cursor.execute(
                    "UPDATE workspaces SET is_default = 0 WHERE is_default = 1 AND id != ?",
                    (workspace_id,),
                )
            cursor.execute(
                f"UPDATE workspaces SET {assignments} WHERE id = ?",
                (*updates.values(), workspace_id),
            )
        return self.find_workspace(workspace_id)

    def delete_workspace(self, workspace_id: str) -> None:
        """Delete a workspace, promoting another one if it was the default.

        Raises:
            ValueError: If the workspace does not exist.
        """
        workspace = self.find_workspace(workspace_id)
        if not workspace:
            raise ValueError(f"Workspace {workspace_id} not found")

        with self.transaction() as cursor:
            cursor.execute("DELETE FROM workspaces WHERE id = ?", (workspace_id,))
            if workspace.is_default:
                cursor.execute("SELECT id FROM workspaces ORDER BY name LIMIT 1")
                row = cursor.fetchone()
                if row:
                    cursor.execute(
                        "UPDATE workspaces SET is_default = 1 WHERE id = ?", (row["id"],)
                    )

    def ensure_default_workspace(self) -> Workspace:
        """Get the default workspace, creating 'main' if there is none."""
        workspace = self.get_default_workspace()
        if workspace is None:
            workspace = self.create_workspace("main", is_default=True)
        return workspace

    def link_realm_to_workspace(self, realm_id: str, workspace_id: str) -> None:
        """Add a realm to a workspace. Linking twice is a no-op.

        Raises:
            ValueError: If the realm or workspace does not exist.
        """
        if not self.find_realm(realm_id):
            raise ValueError(f"Realm {realm_id} not found")
        if not self.find_workspace(workspace_id):
            raise ValueError(f"Workspace {workspace_id} not found")

        with self.transaction() as cursor:
            cursor.execute(
                """
                INSERT OR IGNORE INTO realm_workspaces (realm_id, workspace_id, created_at)
                VALUES (?, ?, ?)
                """,
                (realm_id, workspace_id, to_iso(utc_now())),
            )

    def unlink_realm_from_workspace(self, realm_id: str, workspace_id: str) -> None:
        with self.transaction() as cursor:
            cursor.execute(
                "DELETE FROM realm_workspaces WHERE realm_id = ? AND workspace_id = ?",
                (realm_id, workspace_id),
            )

    def get_realm_workspaces(self, realm_id: str) -> list[Workspace]:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT w.* FROM workspaces w
            JOIN realm_workspaces rw ON rw.workspace_id = w.id
            WHERE rw.realm_id = ?
            ORDER BY w.name
            """,
            (realm_id,),
        )
        return [self._row_to_workspace(row) for row in cursor.fetchall()]

    def get_workspace_realms(self, workspace_id: str) -> list[dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT r.* FROM realms r
            JOIN realm_workspaces rw ON rw.realm_id = r.id
            WHERE rw.workspace_id = ?
            ORDER BY r.name
            """,
            (workspace_id,),
        )
        return [self._row_to_realm(row) for row in cursor.fetchall()]

    # Change outbox

    def add_outbox_event(
        self, cursor: sqlite3.Cursor, workspace_id: str, event: ChangeEvent
    ) -> None:
        """Queue an event inside the caller's transaction."""
        cursor.execute(
            """
            INSERT INTO change_outbox (event_id, workspace_id, payload, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (event.id, workspace_id, json.dumps(event.to_dict()), to_iso(utc_now())),
        )

    def pending_outbox(self) -> list[tuple[str, ChangeEvent]]:
        """Get queued events in the order they were recorded.

        Returns:
            List of (workspace_id, event) pairs.
        """
        cursor = self.conn.cursor()
        cursor.execute("SELECT workspace_id, payload FROM change_outbox ORDER BY seq")
        return [
            (row["workspace_id"], ChangeEvent.from_dict(json.loads(row["payload"])))
            for row in cursor.fetchall()
        ]

    def remove_outbox_event(self, event_id: str) -> None:
        with self.transaction() as cursor:
            cursor.execute("DELETE FROM change_outbox WHERE event_id = ?", (event_id,))

    def count_outbox(self, workspace_id: str | None = None) -> int:
        cursor = self.conn.cursor()
        if workspace_id:
            cursor.execute(
                "SELECT COUNT(*) FROM change_outbox WHERE workspace_id = ?", (workspace_id,)
            )
        else:
            cursor.execute("SELECT COUNT(*) FROM change_outbox")
        return cursor.fetchone()[0]

    # Export/Import

    def export_data(self, realm_id: str | None = None) -> dict[str, list[dict[str, Any]]]:
        """Export realms, lores and relations.

        Args:
            realm_id: Restrict the export to one realm.

        Returns:
            Dictionary with 'realms', 'lores' and 'relations' lists.

        Raises:
            ValueError: If realm_id is given but not found.
        """
        if realm_id:
            realm = self.find_realm(realm_id)
            if not realm:
                raise ValueError(f"Realm {realm_id} not found")
            realms = [realm]
        else:
            realms = self.list_realms()

        lores = []
        for realm in realms:
            lores.extend(self.iter_lores_by_realm(realm["id"]))
        lore_ids = {lore["id"] for lore in lores}

        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM lore_relations ORDER BY created_at")
        relations = [
            self._row_to_relation(row)
            for row in cursor.fetchall()
            if row["from_lore_id"] in lore_ids or row["to_lore_id"] in lore_ids
        ]
        return {"realms": realms, "lores": lores, "relations": relations}

    def import_data(self, data: dict[str, Any], mode: str = "replace") -> dict[str, int]:
        """Import realms, lores and relations without recording changes.

        Args:
            data: Dictionary with 'realms', 'lores' and 'relations' lists in
                the shape produced by export_data.
            mode: 'replace' clears existing data first; 'merge' skips
                records that already exist.

        Returns:
            Counts of imported realms, lores and relations.

        Raises:
            ValueError: If mode is not 'replace' or 'merge'.
        """
        if mode not in ("replace", "merge"):
            raise ValueError(f"Invalid import mode '{mode}'")

        counts = {"realms": 0, "lores": 0, "relations": 0}
        with self.tracker.suppressed():
            if mode == "replace":
                with self.transaction() as cursor:
                    cursor.execute("DELETE FROM lore_relations")
                    cursor.execute("DELETE FROM lores")
                    cursor.execute("DELETE FROM realms")

            for realm in data.get("realms", []):
                if mode == "merge" and realm.get("id") and self.find_realm(realm["id"]):
                    continue
                self.create_realm(**realm_create_kwargs(realm))
                counts["realms"] += 1

            for lore in data.get("lores", []):
                if mode == "merge" and lore.get("id") and self.find_lore(lore["id"]):
                    continue
                self.create_lore(**lore_create_kwargs(lore))
                counts["lores"] += 1

            for relation in data.get("relations", []):
                key = (relation["from_lore_id"], relation["to_lore_id"], relation["type"])
                if mode == "merge" and self.find_relation(*key):
                    continue
                self.create_relation(**relation_create_kwargs(relation))
                counts["relations"] += 1

        logger.info(
            "Imported %d realms, %d lores, %d relations (%s)",
            counts["realms"],
            counts["lores"],
            counts["relations"],
            mode,
        )
        return counts


def lore_create_kwargs(data: dict[str, Any]) -> dict[str, Any]:
    """Map a serialized lore record to create_lore keyword arguments.

    Raises:
        KeyError: If realm_id, content or type is missing.
    """
    return {
        "realm_id": data["realm_id"],
        "content": data["content"],
        "lore_type": data["type"],
        "why": data.get("why"),
        "provinces": data.get("provinces"),
        "sigils": data.get("sigils"),
        "confidence": data.get("confidence"),
        "origin": data.get("origin"),
        "status": data.get("status") or "living",
        "lore_id": data.get("id"),
        "created_at": data.get("created_at"),
        "updated_at": data.get("updated_at"),
    }


def relation_create_kwargs(data: dict[str, Any]) -> dict[str, Any]:
    """Map a serialized relation record to create_relation keyword arguments.

    Raises:
        KeyError: If an endpoint or the type is missing.
    """
    return {
        "from_lore_id": data["from_lore_id"],
        "to_lore_id": data["to_lore_id"],
        "relation_type": data["type"],
        "strength": 1.0 if data.get("strength") is None else data["strength"],
        "metadata": data.get("metadata"),
        "created_at": data.get("created_at"),
    }


def realm_create_kwargs(data: dict[str, Any]) -> dict[str, Any]:
    """Map a serialized realm record to create_realm keyword arguments.

    Raises:
        KeyError: If name or path is missing.
    """
    return {
        "name": data["name"],
        "path": data["path"],
        "git_remote": data.get("git_remote"),
        "is_monorepo": data.get("is_monorepo", False),
        "provinces": data.get("provinces"),
        "realm_id": data.get("id"),
        "created_at": data.get("created_at"),
        "last_seen": data.get("last_seen"),
    }
