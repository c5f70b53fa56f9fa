"""Data types exchanged by the change tracker and sync adapter."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from lorehub.utils import parse_timestamp, to_iso

OPERATIONS = ("create", "update", "delete", "archive")
ENTITIES = ("lore", "realm", "relation")

LORE_TYPES = (
    "decree",
    "wisdom",
    "belief",
    "constraint",
    "requirement",
    "risk",
    "quest",
    "saga",
    "story",
    "anomaly",
    "other",
)
LORE_STATUSES = ("living", "ancient", "whispered", "proclaimed", "archived")
RELATION_TYPES = ("succeeds", "challenges", "supports", "depends_on", "bound_to")

MANIFEST_VERSION = "1.0.0"
SYNC_PROTOCOL = "git-v1"


@dataclass
class Workspace:
    """A named grouping of realms sharing one sync configuration."""

    id: str
    name: str
    sync_enabled: bool = False
    sync_repo: str | None = None
    sync_branch: str = "main"
    auto_sync: bool = True
    sync_interval: int = 300
    filters: dict[str, Any] | None = None
    is_default: bool = False
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row, filters: dict[str, Any] | None = None) -> Workspace:
        return cls(
            id=row["id"],
            name=row["name"],
            sync_enabled=bool(row["sync_enabled"]),
            sync_repo=row["sync_repo"] or None,
            sync_branch=row["sync_branch"] or "main",
            auto_sync=bool(row["auto_sync"]),
            sync_interval=row["sync_interval"] or 300,
            filters=filters,
            is_default=bool(row["is_default"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "syncEnabled": self.sync_enabled,
            "syncRepo": self.sync_repo,
            "syncBranch": self.sync_branch,
            "autoSync": self.auto_sync,
            "syncInterval": self.sync_interval,
            "filters": self.filters,
            "isDefault": self.is_default,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class ChangeEvent:
    """An immutable record of one mutation, attributed to a device.

    Serialized with camelCase keys so the on-disk log is readable by other
    implementations of the same protocol. Replay order is ``(timestamp, id)``.
    """

    id: str
    timestamp: datetime
    device_id: str
    operation: str
    entity: str
    entity_id: str
    data: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.operation not in OPERATIONS:
            raise ValueError(f"Invalid operation '{self.operation}'")
        if self.entity not in ENTITIES:
            raise ValueError(f"Invalid entity '{self.entity}'")

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.timestamp, self.id)

    @property
    def realm_id(self) -> str | None:
        return self.metadata.get("realmId")

    @property
    def workspace_id(self) -> str | None:
        return self.metadata.get("workspaceId")

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "deviceId": self.device_id,
            "operation": self.operation,
            "entity": self.entity,
            "entityId": self.entity_id,
        }
        if self.data is not None:
            result["data"] = self.data
        if self.metadata:
            result["metadata"] = self.metadata
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeEvent:
        """Build an event from its serialized form.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a field has an invalid value.
        """
        return cls(
            id=data["id"],
            timestamp=parse_timestamp(data["timestamp"]),
            device_id=data["deviceId"],
            operation=data["operation"],
            entity=data["entity"],
            entity_id=data["entityId"],
            data=data.get("data"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class SyncManifest:
    """Versioned descriptor of one workspace sync directory."""

    workspace_id: str
    workspace_name: str
    device_id: str
    created: datetime
    last_sync: datetime
    version: str = MANIFEST_VERSION
    sync_protocol: str = SYNC_PROTOCOL

    def touch(self, when: datetime) -> None:
        """Advance last_sync, never moving it backwards."""
        if when > self.last_sync:
            self.last_sync = when

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "workspaceId": self.workspace_id,
            "workspaceName": self.workspace_name,
            "created": to_iso(self.created),
            "lastSync": to_iso(self.last_sync),
            "deviceId": self.device_id,
            "syncProtocol": self.sync_protocol,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncManifest:
        return cls(
            workspace_id=data["workspaceId"],
            workspace_name=data.get("workspaceName", ""),
            device_id=data.get("deviceId", ""),
            created=parse_timestamp(data["created"]),
            last_sync=parse_timestamp(data["lastSync"]),
            version=data.get("version", MANIFEST_VERSION),
            sync_protocol=data.get("syncProtocol", SYNC_PROTOCOL),
        )


@dataclass
class SyncResult:
    """Result of a push, pull or sync operation.

    A nonzero ``conflicts`` means no events were applied.
    """

    pulled: int = 0
    pushed: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.conflicts == 0 and not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "pulled": self.pulled,
            "pushed": self.pushed,
            "conflicts": self.conflicts,
            "errors": list(self.errors),
        }
