"""Git-backed sync of a workspace's change log across devices."""

from __future__ import annotations

import json
import logging
import sqlite3
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

# File locking - platform specific
if sys.platform != "win32":
    import fcntl

    HAS_FCNTL = True
else:
    HAS_FCNTL = False

from lorehub._changelog import CHANGES_DIR, ChangeLog
from lorehub._export import BulkExporter
from lorehub._git import GitRepository
from lorehub.exceptions import DuplicateRelationError, GitCommandError, SyncLockError
from lorehub.models import ChangeEvent, SyncManifest, SyncResult, Workspace
from lorehub.storage import lore_create_kwargs, realm_create_kwargs, relation_create_kwargs
from lorehub.utils import get_or_create_device_id, read_json, to_iso, utc_now, write_json

if TYPE_CHECKING:
    from lorehub._config import ConfigManager
    from lorehub.storage import LoreStore

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
STATE_DIR = "state"

# Each device keeps its own manifest when histories are merged
GITATTRIBUTES = "manifest.json merge=ours\n"


def count_change_files(paths: list[str]) -> int:
    """Number of change event files among repository paths."""
    return sum(
        1 for path in paths if path.startswith(f"{CHANGES_DIR}/") and path.endswith(".json")
    )


class GitSyncAdapter:
    """Replicates one workspace through a git repository.

    The workspace's sync directory holds a manifest, a day-partitioned log
    of change events and an optional exported snapshot. push() commits and
    publishes local events; pull() merges the remote and replays the events
    other devices recorded.
    """

    def __init__(
        self,
        workspace: Workspace,
        store: LoreStore,
        config: ConfigManager,
        device_id: str | None = None,
    ) -> None:
        """Initialize the sync adapter.

        Args:
            workspace: Workspace to replicate.
            store: Store that replayed changes are applied to.
            config: Configuration manager (paths, timeouts, local sync state).
            device_id: This device's identity. Read or created from the
                device-id file when omitted.

        Raises:
            DeviceIdentityError: If the device identity cannot be established.
        """
        self.workspace = workspace
        self.store = store
        self._config = config
        self.device_id = device_id or get_or_create_device_id(config.device_id_path)

        self.sync_path = config.sync_root / workspace.id
        self.sync_path.mkdir(parents=True, exist_ok=True)
        self.git = GitRepository(
            self.sync_path,
            timeout=config.get("network_timeout"),
            retries=config.get("network_retries"),
        )
        self.changelog = ChangeLog(self.sync_path)

    @property
    def branch(self) -> str:
        return self.workspace.sync_branch or "main"

    @property
    def has_remote(self) -> bool:
        return bool(self.workspace.sync_repo)

    @contextmanager
    def _file_lock(
        self, lock_path: Path, timeout: float | None = None
    ) -> Iterator[None]:
        """Acquire an exclusive file lock for sync operations.

        Uses fcntl on Unix systems for proper file locking.
        Falls back to a simple lock file mechanism on Windows.

        Args:
            lock_path: Path to the lock file.
            timeout: Maximum seconds to wait for lock.
                Defaults to the lock_timeout setting.

        Yields:
            None when lock is acquired.

        Raises:
            SyncLockError: If lock cannot be acquired within timeout.
        """
        if timeout is None:
            timeout = self._config.get("lock_timeout")
        lock_file = lock_path.with_suffix(".lock")
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        start_time = time.time()

        if HAS_FCNTL:
            lock_fd = open(lock_file, "w")
            try:
                while True:
                    try:
                        fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except OSError:
                        if time.time() - start_time > timeout:
                            raise SyncLockError(
                                f"Could not acquire lock on {lock_file} "
                                f"within {timeout} seconds"
                            ) from None
                        time.sleep(0.1)
                try:
                    yield
                finally:
                    fcntl.flock(lock_fd.fileno(), fcntl.LOCK_UN)
            finally:
                lock_fd.close()
        else:
            while lock_file.exists():
                if time.time() - start_time > timeout:
                    raise SyncLockError(
                        f"Could not acquire lock on {lock_file} "
                        f"within {timeout} seconds"
                    )
                time.sleep(0.1)
            try:
                lock_file.write_text(str(datetime.now().isoformat()))
                yield
            finally:
                try:
                    lock_file.unlink()
                except OSError:
                    pass  # Lock file may already be removed

    def _workspace_lock(self) -> Any:
        return self._file_lock(self._config.lock_root / self.workspace.id)

    # Manifest

    def _load_manifest(self) -> SyncManifest:
        """Load the manifest, or a fresh one if it is missing or unreadable."""
        manifest_path = self.sync_path / MANIFEST_FILE
        if manifest_path.exists():
            try:
                return SyncManifest.from_dict(read_json(manifest_path))
            except (OSError, json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                logger.warning("Unreadable manifest %s, recreating: %s", manifest_path, e)
        now = utc_now()
        return SyncManifest(
            workspace_id=self.workspace.id,
            workspace_name=self.workspace.name,
            device_id=self.device_id,
            created=now,
            last_sync=now,
        )

    def _save_manifest(self, manifest: SyncManifest) -> None:
        write_json(self.sync_path / MANIFEST_FILE, manifest.to_dict())

    def _touch_manifest(self) -> SyncManifest:
        """Advance the manifest's lastSync to now (never backwards)."""
        manifest = self._load_manifest()
        manifest.device_id = self.device_id
        manifest.touch(utc_now())
        self._save_manifest(manifest)
        return manifest

    # Initialization

    def initialize(self) -> None:
        """Prepare the sync directory as a git repository.

        A new directory gets a manifest, the changes/ and state/ folders and
        an initial commit. If a remote is configured and already carries the
        branch, its history is adopted instead. An existing repository only
        has its configuration refreshed and the branch checked out.

        Raises:
            GitCommandError: If a local git command fails.
            SyncLockError: If the workspace is locked by another sync.
        """
        with self._workspace_lock():
            self._initialize()

    def _initialize(self) -> None:
        self.sync_path.mkdir(parents=True, exist_ok=True)
        if not self.git.is_repo():
            self._create_repository()
        else:
            self._configure_repository()
            self._ensure_branch()

    def _create_repository(self) -> None:
        self.git.run("init")
        self.git.run("symbolic-ref", "HEAD", f"refs/heads/{self.branch}")
        self._configure_repository()

        if self.has_remote and self._fetch_remote_branch():
            # Join the history other devices already published
            self.git.run("reset", "--hard", f"origin/{self.branch}")
            self._ensure_layout()
            self._touch_manifest()
            self.git.run("add", "-A")
            if self.git.staged_files():
                self._commit(f"Join sync repository from {self.device_id}")
            logger.info(
                "Workspace %s joined existing sync history at %s",
                self.workspace.name,
                self.workspace.sync_repo,
            )
            return

        self._save_manifest(self._load_manifest())
        self._ensure_layout()
        self.git.run("add", "-A")
        self._commit("Initialize lorehub sync repository")
        logger.info("Initialized sync repository for workspace %s", self.workspace.name)

    def _ensure_layout(self) -> None:
        """Create the directory skeleton, tracked via .gitkeep files."""
        for name in (CHANGES_DIR, STATE_DIR):
            folder = self.sync_path / name
            folder.mkdir(exist_ok=True)
            keep = folder / ".gitkeep"
            if not keep.exists():
                keep.touch()
        attributes = self.sync_path / ".gitattributes"
        if not attributes.exists():
            attributes.write_text(GITATTRIBUTES)
        if not (self.sync_path / MANIFEST_FILE).exists():
            self._save_manifest(self._load_manifest())

    def _configure_repository(self) -> None:
        """Apply local git settings: merge driver, identity and remote URL."""
        self.git.run("config", "merge.ours.driver", "true")
        if not self.git.config_get("user.email"):
            self.git.run("config", "user.email", f"{self.device_id}@lorehub.local")
        if not self.git.config_get("user.name"):
            self.git.run("config", "user.name", f"lorehub {self.device_id[:8]}")

        if self.has_remote:
            current = self.git.remote_url()
            if current is None:
                self.git.run("remote", "add", "origin", self.workspace.sync_repo)
            elif current != self.workspace.sync_repo:
                self.git.run("remote", "set-url", "origin", self.workspace.sync_repo)

    def _ensure_branch(self) -> None:
        if self.git.current_branch() == self.branch:
            return
        if self.git.has_local_branch(self.branch):
            self.git.run("checkout", self.branch)
        else:
            self.git.run("checkout", "-b", self.branch)

    def _fetch_remote_branch(self) -> bool:
        """Fetch the remote and report whether it carries the sync branch.

        Fetch failures while initializing are logged; the directory can still
        be used offline and will pick up the remote on the next pull.
        """
        try:
            self.git.run_network("fetch", "--prune", "origin")
        except GitCommandError as e:
            logger.warning("Could not fetch %s: %s", self.workspace.sync_repo, e)
            return False
        return self.git.has_remote_branch(self.branch)

    def _commit(self, message: str) -> None:
        self.git.run("-c", "commit.gpgsign=false", "commit", "--no-verify", "-m", message)

    # Recording

    def record_change(self, event: ChangeEvent) -> Path:
        """Write an event to the change log and advance the manifest.

        Args:
            event: Event to persist.

        Returns:
            Path of the event file.

        Raises:
            OSError: If the event or manifest cannot be written.
        """
        path = self.changelog.append(event)
        self._touch_manifest()
        return path

    def _flush_outbox(self) -> int:
        """Write this workspace's queued events before committing."""
        written = 0
        for workspace_id, event in self.store.pending_outbox():
            if workspace_id != self.workspace.id:
                continue
            self.record_change(event)
            self.store.remove_outbox_event(event.id)
            written += 1
        return written

    # Push / pull / sync

    def push(self) -> SyncResult:
        """Commit local changes and publish them to the remote.

        Returns:
            SyncResult with the number of change files the remote did not
            have yet (without a remote, the number committed). Failures are
            reported in errors, never raised.
        """
        try:
            with self._workspace_lock():
                return self._push()
        except SyncLockError as e:
            return SyncResult(errors=[str(e)])

    def _commit_working_tree(self, message: str) -> list[str]:
        """Stage everything and commit it if anything changed.

        Returns:
            The staged paths (empty when there was nothing to commit).
        """
        self.git.run("add", "-A")
        staged = self.git.staged_files()
        if staged:
            self._commit(message)
        return staged

    def _unpublished_changes(self) -> int:
        """Count change files in HEAD that the remote branch does not have."""
        if self.git.has_remote_branch(self.branch):
            base = f"origin/{self.branch}"
        else:
            base = self.git.empty_tree()
        return count_change_files(self.git.changed_files(base, "HEAD", f"{CHANGES_DIR}/"))

    def _push(self) -> SyncResult:
        result = SyncResult()
        try:
            if not self.git.is_repo():
                self._initialize()
            self._flush_outbox()

            staged = self._commit_working_tree(
                f"Sync from {self.device_id} at {to_iso(utc_now())}"
            )
            if self.has_remote:
                unpublished = self._unpublished_changes()
                self.git.run_network("push", "origin", f"{self.branch}:{self.branch}")
                result.pushed = unpublished
            else:
                result.pushed = count_change_files(staged)
        except (GitCommandError, OSError) as e:
            logger.warning("Push failed for workspace %s: %s", self.workspace.name, e)
            result.errors.append(f"Push failed: {e}")
        return result

    def pull(self) -> SyncResult:
        """Merge the remote and apply changes recorded by other devices.

        Returns:
            SyncResult with the number of changes pulled. On merge conflicts
            nothing is applied and conflicts holds the number of conflicted
            files. Failures are reported in errors, never raised.
        """
        try:
            with self._workspace_lock():
                return self._pull()
        except SyncLockError as e:
            return SyncResult(errors=[str(e)])

    def _pull(self) -> SyncResult:
        result = SyncResult()
        try:
            if not self.git.is_repo():
                self._initialize()
            before = self.git.head()

            if self.has_remote:
                self.git.run_network("fetch", "--prune", "origin")
                if self.git.has_remote_branch(self.branch):
                    # Local edits must be committed so the merge can apply merge=ours
                    self._commit_working_tree(f"Local changes from {self.device_id}")
                    merge = self.git.run(
                        "-c",
                        "commit.gpgsign=false",
                        "merge",
                        "--no-edit",
                        "--allow-unrelated-histories",
                        f"origin/{self.branch}",
                        check=False,
                    )
                    if merge.returncode != 0:
                        conflicted = self.git.conflicted_files()
                        if conflicted:
                            result.conflicts = len(conflicted)
                            result.errors.append(
                                f"Merge conflicts detected in {len(conflicted)} file(s): "
                                f"{', '.join(conflicted)}. Manual resolution required "
                                f"in {self.sync_path}."
                            )
                            logger.warning(
                                "Merge conflicts in workspace %s: %s",
                                self.workspace.name,
                                conflicted,
                            )
                            return result
                        raise GitCommandError(
                            ["merge", f"origin/{self.branch}"],
                            merge.returncode,
                            merge.stderr or merge.stdout,
                        )

            head = self.git.head()
            if head != before:
                logger.debug("Workspace %s moved from %s to %s", self.workspace.name, before, head)

            since = self._last_applied_commit()
            if head and since != head:
                events = self._read_new_events(since, head)
                result.pulled = len(events)
                with self.store.tracker.suppressed():
                    for event in events:
                        self._apply_change(event)
                self._config.set_local_sync_state(
                    self.workspace.id, last_applied_commit=head
                )
        except (GitCommandError, OSError) as e:
            logger.warning("Pull failed for workspace %s: %s", self.workspace.name, e)
            result.errors.append(f"Pull failed: {e}")
        return result

    def sync(self) -> SyncResult:
        """Pull, then push if the pull was clean.

        Returns:
            Combined SyncResult. When the pull reports conflicts or errors,
            that result is returned and nothing is pushed.
        """
        try:
            with self._workspace_lock():
                pull_result = self._pull()
                if not pull_result.ok:
                    return pull_result
                self._touch_manifest()
                push_result = self._push()
        except SyncLockError as e:
            return SyncResult(errors=[str(e)])
        except OSError as e:
            return SyncResult(errors=[f"Sync failed: {e}"])

        if push_result.ok:
            self._config.set_local_sync_state(
                self.workspace.id, last_sync_at=to_iso(utc_now())
            )
        return SyncResult(
            pulled=pull_result.pulled,
            pushed=push_result.pushed,
            conflicts=0,
            errors=push_result.errors,
        )

    def _last_applied_commit(self) -> str:
        """The commit whose changes were last fully applied on this device.

        Falls back to the empty tree (replay everything) when there is no
        marker or it no longer exists in the repository.
        """
        marker = self._config.get_local_sync_state(self.workspace.id).get(
            "last_applied_commit"
        )
        if marker and self.git.has_commit(marker):
            return marker
        if marker:
            logger.warning(
                "Last applied commit %s is gone from workspace %s; replaying full history",
                marker,
                self.workspace.name,
            )
        return self.git.empty_tree()

    def _read_new_events(self, since: str, until: str) -> list[ChangeEvent]:
        """Events from other devices added between two commits, in replay order."""
        paths = self.git.changed_files(since, until, f"{CHANGES_DIR}/")
        events = self.changelog.read_many(paths)
        foreign = [event for event in events if event.device_id != self.device_id]
        if len(foreign) != len(events):
            logger.debug("Ignoring %d change(s) from this device", len(events) - len(foreign))
        foreign.sort(key=lambda event: event.sort_key)
        return foreign

    # Applying changes

    def _apply_change(self, event: ChangeEvent) -> None:
        """Apply one change. Bad or dangling changes are logged and skipped."""
        try:
            if event.entity == "lore":
                self._apply_lore_change(event)
            elif event.entity == "realm":
                self._apply_realm_change(event)
            elif event.entity == "relation":
                self._apply_relation_change(event)
        except (KeyError, TypeError, ValueError, sqlite3.Error) as e:
            logger.warning(
                "Skipping %s %s change %s: %s", event.operation, event.entity, event.id, e
            )

    def _apply_lore_change(self, event: ChangeEvent) -> None:
        exists = self.store.find_lore(event.entity_id) is not None

        if event.operation == "create":
            if exists or not event.data:
                return
            kwargs = lore_create_kwargs(event.data)
            kwargs["lore_id"] = event.entity_id
            if not self.store.find_realm(kwargs["realm_id"]):
                logger.warning(
                    "Skipping lore %s: realm %s does not exist locally",
                    event.entity_id,
                    kwargs["realm_id"],
                )
                return
            self.store.link_realm_to_workspace(kwargs["realm_id"], self.workspace.id)
            self.store.create_lore(**kwargs)
        elif not exists:
            logger.debug("Skipping %s of missing lore %s", event.operation, event.entity_id)
        elif event.operation == "update":
            if event.data:
                self.store.update_lore(event.entity_id, event.data)
        elif event.operation == "delete":
            self.store.delete_lore(event.entity_id)
        elif event.operation == "archive":
            self.store.soft_delete_lore(event.entity_id)

    def _apply_realm_change(self, event: ChangeEvent) -> None:
        if event.operation == "create":
            if event.data and not self.store.find_realm(event.entity_id):
                kwargs = realm_create_kwargs(event.data)
                kwargs["realm_id"] = event.entity_id
                self.store.create_realm(**kwargs)
            if self.store.find_realm(event.entity_id):
                self.store.link_realm_to_workspace(event.entity_id, self.workspace.id)
            return
        logger.warning(
            "Realm %s is not supported for replay; skipping change %s for realm %s",
            event.operation,
            event.id,
            event.entity_id,
        )

    def _apply_relation_change(self, event: ChangeEvent) -> None:
        if not event.data:
            return
        if event.operation == "create":
            try:
                self.store.create_relation(**relation_create_kwargs(event.data))
            except DuplicateRelationError:
                logger.debug("Relation %s already exists", event.entity_id)
        elif event.operation == "delete":
            self.store.delete_relation(
                event.data["from_lore_id"], event.data["to_lore_id"], event.data["type"]
            )
        else:
            logger.warning(
                "Relation %s is not supported for replay; skipping change %s",
                event.operation,
                event.id,
            )

    # Export and status

    def export_workspace_data(self) -> dict[str, Any]:
        """Write a full snapshot of the workspace to state/current-export.json.

        Returns:
            Export summary from BulkExporter.export().

        Raises:
            SyncLockError: If the workspace is locked by another sync.
            OSError: If the snapshot cannot be written.
        """
        with self._workspace_lock():
            exporter = BulkExporter(
                self.store,
                self.workspace,
                self.sync_path / STATE_DIR,
                batch_size=self._config.get("export_batch_size"),
                memory_threshold_mb=self._config.get("export_memory_threshold_mb"),
            )
            return exporter.export()

    def status(self) -> dict[str, Any]:
        """Describe the sync directory without changing it.

        Returns:
            Dictionary with branch, remote, head, last applied commit,
            manifest lastSync, uncommitted file count and queued outbox events.
        """
        initialized = self.git.is_repo()
        local_state = self._config.get_local_sync_state(self.workspace.id)
        manifest = self._load_manifest() if initialized else None
        return {
            "workspace": self.workspace.name,
            "path": str(self.sync_path),
            "initialized": initialized,
            "branch": self.git.current_branch() if initialized else None,
            "remote": self.workspace.sync_repo,
            "head": self.git.head() if initialized else None,
            "last_applied_commit": local_state.get("last_applied_commit"),
            "last_sync": to_iso(manifest.last_sync) if manifest else None,
            "uncommitted": len(self.git.uncommitted_files()) if initialized else 0,
            "logged_changes": self.changelog.count(),
            "pending_outbox": self.store.count_outbox(self.workspace.id),
        }
