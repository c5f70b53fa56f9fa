"""Change tracking for lores, realms and relations."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from lorehub.exceptions import GitCommandError, LoreHubError
from lorehub.models import ChangeEvent, Workspace
from lorehub.utils import generate_id, get_or_create_device_id, relation_key, utc_now

if TYPE_CHECKING:
    from lorehub._config import ConfigManager
    from lorehub._sync import GitSyncAdapter
    from lorehub.storage import LoreStore

logger = logging.getLogger(__name__)


class ChangeTracker:
    """Turns store mutations into change events for sync-enabled workspaces.

    Events are first queued in the store's outbox inside the mutation's own
    transaction, then flushed to each workspace's change log. Tracking can be
    suppressed (during replay and import); suppression is counted, so nested
    suppressors each have to release before events are produced again.
    """

    def __init__(self, config: ConfigManager) -> None:
        """Initialize the change tracker.

        Args:
            config: Configuration manager (paths, device identity).
        """
        self._config = config
        self._store: LoreStore | None = None
        self._suppress_count = 0
        self._lock = threading.Lock()
        self._adapters: dict[str, GitSyncAdapter] = {}
        self._device_id: str | None = None

    def initialize(self, store: LoreStore) -> None:
        """Bind the tracker to a store. Binding the same store again is a no-op."""
        if self._store is store:
            return
        self._store = store
        self._adapters.clear()

    @property
    def device_id(self) -> str:
        """This machine's device identifier.

        Raises:
            DeviceIdentityError: If the identity cannot be established.
        """
        if self._device_id is None:
            self._device_id = get_or_create_device_id(self._config.device_id_path)
        return self._device_id

    # Suppression

    @property
    def is_enabled(self) -> bool:
        return self._store is not None and self._suppress_count == 0

    def disable(self) -> None:
        """Suppress change recording until a matching enable()."""
        with self._lock:
            self._suppress_count += 1

    def enable(self) -> None:
        """Release one suppression. Extra calls are ignored."""
        with self._lock:
            if self._suppress_count > 0:
                self._suppress_count -= 1

    @contextmanager
    def suppressed(self) -> Iterator[None]:
        """Suppress change recording for the duration of the block.

        Yields:
            None while recording is suppressed.
        """
        self.disable()
        try:
            yield
        finally:
            self.enable()

    # Recording

    def record_lore_change(
        self,
        operation: str,
        lore_id: str,
        realm_id: str,
        data: Any = None,
        cursor: sqlite3.Cursor | None = None,
    ) -> list[ChangeEvent]:
        """Record a lore mutation.

        Args:
            operation: create, update, delete or archive.
            lore_id: ID of the lore.
            realm_id: Realm the lore belongs to.
            data: Payload needed to replay the change.
            cursor: Transaction of the mutation. Without one the events are
                queued in their own transaction and flushed at once.

        Returns:
            The recorded events (empty when tracking is suppressed).
        """
        return self._record("lore", operation, lore_id, realm_id, data, cursor)

    def record_realm_change(
        self,
        operation: str,
        realm_id: str,
        data: Any = None,
        cursor: sqlite3.Cursor | None = None,
        workspace_id: str | None = None,
    ) -> list[ChangeEvent]:
        """Record a realm mutation.

        Args:
            workspace_id: Workspace to route to when the realm is linked to none.
        """
        return self._record(
            "realm", operation, realm_id, realm_id, data, cursor, workspace_id=workspace_id
        )

    def record_relation_change(
        self,
        operation: str,
        from_id: str,
        to_id: str,
        relation_type: str,
        realm_id: str,
        data: Any = None,
        cursor: sqlite3.Cursor | None = None,
    ) -> list[ChangeEvent]:
        """Record a relation mutation.

        Raises:
            ValueError: If a created relation's lores are not both in realm_id.
        """
        if not self.is_enabled:
            return []
        if operation == "create" and self._store is not None:
            for lore_id in (from_id, to_id):
                lore = self._store.find_lore(lore_id)
                if lore and lore["realm_id"] != realm_id:
                    raise ValueError(
                        f"Lore {lore_id} is not in realm {realm_id}; "
                        "relations cannot cross realms"
                    )
        payload = data or {
            "from_lore_id": from_id,
            "to_lore_id": to_id,
            "type": relation_type,
        }
        entity_id = relation_key(from_id, to_id, relation_type)
        return self._record("relation", operation, entity_id, realm_id, payload, cursor)

    def _record(
        self,
        entity: str,
        operation: str,
        entity_id: str,
        realm_id: str | None,
        data: Any,
        cursor: sqlite3.Cursor | None,
        workspace_id: str | None = None,
    ) -> list[ChangeEvent]:
        if not self.is_enabled:
            return []

        workspaces = self._target_workspaces(realm_id, workspace_id)
        if not workspaces:
            return []

        timestamp = utc_now()
        events = [
            ChangeEvent(
                id=generate_id(),
                timestamp=timestamp,
                device_id=self.device_id,
                operation=operation,
                entity=entity,
                entity_id=entity_id,
                data=data,
                metadata={"realmId": realm_id, "workspaceId": workspace.id},
            )
            for workspace in workspaces
        ]

        if cursor is not None:
            for event in events:
                self._store.add_outbox_event(cursor, event.workspace_id, event)
        else:
            with self._store.transaction() as own_cursor:
                for event in events:
                    self._store.add_outbox_event(own_cursor, event.workspace_id, event)
            self.flush()
        return events

    def _target_workspaces(
        self, realm_id: str | None, workspace_id: str | None = None
    ) -> list[Workspace]:
        """Sync-enabled workspaces a change in this realm belongs to.

        A realm linked to no workspace goes to workspace_id when given, else
        to the default workspace.
        """
        workspaces = self._store.get_realm_workspaces(realm_id) if realm_id else []
        if not workspaces and workspace_id:
            explicit = self._store.find_workspace(workspace_id)
            if explicit:
                workspaces = [explicit]
        if not workspaces:
            default = self._store.get_default_workspace()
            if default:
                workspaces = [default]
        return [w for w in workspaces if w.sync_enabled]

    # Outbox delivery

    def flush(self) -> int:
        """Write queued events to their workspaces' change logs.

        An event that cannot be written stays queued, and later events of
        the same workspace wait behind it so the log keeps recording order.
        Nothing is delivered while tracking is suppressed.

        Returns:
            Number of events written.
        """
        if not self.is_enabled:
            return 0

        written = 0
        blocked: set[str] = set()
        for workspace_id, event in self._store.pending_outbox():
            if workspace_id in blocked:
                continue
            workspace = self._store.find_workspace(workspace_id)
            if workspace is None:
                logger.warning(
                    "Dropping change %s for deleted workspace %s", event.id, workspace_id
                )
                self._store.remove_outbox_event(event.id)
                continue
            try:
                self.get_adapter(workspace).record_change(event)
            except (OSError, GitCommandError, LoreHubError) as e:
                logger.warning(
                    "Could not log change %s to workspace %s, will retry: %s",
                    event.id,
                    workspace.name,
                    e,
                )
                blocked.add(workspace_id)
                continue
            self._store.remove_outbox_event(event.id)
            written += 1
        return written

    def get_adapter(self, workspace: Workspace) -> GitSyncAdapter:
        """Get the cached sync adapter for a workspace, creating it on first use."""
        from lorehub._sync import GitSyncAdapter

        adapter = self._adapters.get(workspace.id)
        if adapter is None:
            adapter = GitSyncAdapter(
                workspace, self._store, self._config, device_id=self.device_id
            )
            adapter.initialize()
            self._adapters[workspace.id] = adapter
        else:
            adapter.workspace = workspace
        return adapter

    def cleanup(self) -> None:
        """Forget cached sync adapters."""
        self._adapters.clear()
