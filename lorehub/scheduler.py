"""Periodic sync of workspaces that have auto-sync enabled."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from lorehub.exceptions import DeviceIdentityError, GitCommandError, LoreHubError
from lorehub.models import SyncResult, Workspace
from lorehub.utils import parse_timestamp, utc_now

if TYPE_CHECKING:
    from lorehub.storage import LoreStore

logger = logging.getLogger(__name__)


def is_due(workspace: Workspace, last_sync_at: str | None, now: datetime) -> bool:
    """Check whether a workspace should be synced now.

    Args:
        workspace: Workspace to check.
        last_sync_at: ISO time of this device's last successful sync, if any.
        now: Current time.

    Returns:
        True if auto-sync applies and the interval has elapsed.
    """
    if not (workspace.sync_enabled and workspace.auto_sync and workspace.sync_repo):
        return False
    if not last_sync_at:
        return True
    try:
        last = parse_timestamp(last_sync_at)
    except ValueError:
        return True
    return now - last >= timedelta(seconds=workspace.sync_interval)


def due_workspaces(store: LoreStore, now: datetime | None = None) -> list[Workspace]:
    """List workspaces whose auto-sync interval has elapsed."""
    now = now or utc_now()
    return [
        workspace
        for workspace in store.list_workspaces()
        if is_due(
            workspace,
            store.config.get_local_sync_state(workspace.id).get("last_sync_at"),
            now,
        )
    ]


def run_due_syncs(store: LoreStore, now: datetime | None = None) -> dict[str, SyncResult]:
    """Sync every due workspace, one after another.

    A workspace that fails is reported in its result and does not stop
    the others.

    Returns:
        Mapping of workspace name to its SyncResult.
    """
    results: dict[str, SyncResult] = {}
    for workspace in due_workspaces(store, now):
        try:
            adapter = store.tracker.get_adapter(workspace)
            results[workspace.name] = adapter.sync()
        except DeviceIdentityError:
            raise
        except (GitCommandError, LoreHubError, OSError) as e:
            logger.warning("Scheduled sync of %s failed: %s", workspace.name, e)
            results[workspace.name] = SyncResult(errors=[str(e)])
            continue
        result = results[workspace.name]
        if result.conflicts:
            logger.warning(
                "Scheduled sync of %s stopped on %d conflict(s)",
                workspace.name,
                result.conflicts,
            )
    return results
