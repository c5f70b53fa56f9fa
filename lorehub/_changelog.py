"""Append-only, day-partitioned change event log."""

import json
import logging
from pathlib import Path

from lorehub.models import ChangeEvent
from lorehub.utils import epoch_millis, read_json, write_json

logger = logging.getLogger(__name__)

CHANGES_DIR = "changes"


class ChangeLog:
    """Stores change events as one JSON file each under changes/<YYYY-MM-DD>/.

    File names are ``<epochMillis>-<deviceId>-<operation>.json`` so the
    creation order of a device's events can be read off the directory
    listing. Files are never rewritten once created.
    """

    # Upper bound on millisecond slots tried when two events share a name
    MAX_NAME_ATTEMPTS = 1000

    def __init__(self, sync_path: Path) -> None:
        """Initialize the change log.

        Args:
            sync_path: Root of the workspace sync directory.
        """
        self.sync_path = sync_path
        self.changes_path = sync_path / CHANGES_DIR

    def partition_for(self, event: ChangeEvent) -> Path:
        """Get the day directory an event belongs to."""
        return self.changes_path / event.timestamp.strftime("%Y-%m-%d")

    def file_name(self, millis: int, event: ChangeEvent) -> str:
        return f"{millis}-{event.device_id}-{event.operation}.json"

    def append(self, event: ChangeEvent) -> Path:
        """Write an event to its day partition.

        Writing the same event twice is a no-op. If another event already
        holds the file name (same millisecond, device and operation), the
        next free millisecond slot is used; the event's own timestamp is
        unchanged.

        Args:
            event: Event to persist.

        Returns:
            Path of the event file.

        Raises:
            OSError: If the file cannot be written.
        """
        partition = self.partition_for(event)
        millis = epoch_millis(event.timestamp)

        for offset in range(self.MAX_NAME_ATTEMPTS):
            path = partition / self.file_name(millis + offset, event)
            if not path.exists():
                write_json(path, event.to_dict())
                return path
            existing = self._peek_id(path)
            if existing == event.id:
                logger.debug("Change %s already logged at %s", event.id, path)
                return path

        raise OSError(f"No free file name for change {event.id} in {partition}")

    def _peek_id(self, path: Path) -> str | None:
        try:
            return read_json(path).get("id")
        except (OSError, json.JSONDecodeError, AttributeError):
            return None

    def read(self, path: Path) -> ChangeEvent:
        """Parse one event file.

        Raises:
            OSError: If the file cannot be read.
            json.JSONDecodeError: If the file is not valid JSON.
            KeyError, ValueError, TypeError: If the content is not a valid event.
        """
        data = read_json(path)
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object in {path}")
        return ChangeEvent.from_dict(data)

    def read_many(self, relative_paths: list[str]) -> list[ChangeEvent]:
        """Parse event files given relative to the sync directory.

        Malformed or unreadable files are logged and skipped.

        Args:
            relative_paths: Paths such as 'changes/2024-05-01/....json'.

        Returns:
            Parsed events in input order.
        """
        events = []
        for relative in relative_paths:
            if not relative.endswith(".json"):
                continue
            path = self.sync_path / relative
            try:
                events.append(self.read(path))
            except (OSError, json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                logger.warning("Skipping malformed change file %s: %s", relative, e)
        return events

    def count(self) -> int:
        """Count event files currently in the log."""
        if not self.changes_path.exists():
            return 0
        return sum(1 for _ in self.changes_path.glob("*/*.json"))
