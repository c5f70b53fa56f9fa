"""Utility functions shared across lorehub."""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from lorehub.exceptions import DeviceIdentityError


def generate_id() -> str:
    """Generate a unique identifier.

    Returns:
        A random UUID4 string.
    """
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get the current time as a timezone-aware UTC datetime.

    Millisecond precision matches the on-disk timestamp format.

    Returns:
        Current UTC time truncated to milliseconds.
    """
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def to_iso(value: datetime) -> str:
    """Format a datetime as an ISO 8601 UTC string with a trailing 'Z'.

    Args:
        value: Datetime to format. Naive values are treated as UTC.

    Returns:
        String like '2024-05-01T12:30:00.123Z'.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO 8601 timestamp into a timezone-aware UTC datetime.

    Args:
        value: ISO string (with 'Z' or an offset) or a datetime.

    Returns:
        Timezone-aware datetime in UTC.

    Raises:
        ValueError: If the string is not a valid ISO timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def epoch_millis(value: datetime) -> int:
    """Convert a datetime to milliseconds since the Unix epoch."""
    return int(parse_timestamp(value).timestamp() * 1000)


def list_to_json(values: list[str] | None) -> str:
    """Convert a list of strings to a JSON array for storage."""
    return json.dumps(list(values or []))


def json_to_list(json_str: str | None) -> list[str]:
    """Parse a stored JSON array back to a list.

    Args:
        json_str: JSON array string or None.

    Returns:
        List of values, empty if the input is missing or malformed.
    """
    if not json_str:
        return []
    try:
        return json.loads(json_str)
    except json.JSONDecodeError:
        return []


def relation_key(from_lore_id: str, to_lore_id: str, relation_type: str) -> str:
    """Build the composite key identifying a relation."""
    return f"{from_lore_id}-{to_lore_id}-{relation_type}"


def write_json(path: Path, data: Any) -> None:
    """Write data as indented JSON, creating parent directories.

    Args:
        path: Destination file.
        data: JSON-serializable data.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def read_json(path: Path) -> Any:
    """Read a JSON file.

    Raises:
        OSError: If the file cannot be read.
        json.JSONDecodeError: If the content is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def get_or_create_device_id(device_id_path: Path) -> str:
    """Get this machine's device identifier, creating it on first use.

    The identifier is a UUID persisted in a plain text file. It is stable for
    the lifetime of the file and is used both to stamp outgoing change events
    and to recognise this device's own events when they come back.

    Args:
        device_id_path: Location of the device-id file.

    Returns:
        The device identifier.

    Raises:
        DeviceIdentityError: If the file cannot be read or written.
    """
    try:
        if device_id_path.exists():
            device_id = device_id_path.read_text(encoding="utf-8").strip()
            if device_id:
                return device_id

        device_id = generate_id()
        device_id_path.parent.mkdir(parents=True, exist_ok=True)
        device_id_path.write_text(device_id, encoding="utf-8")
        return device_id
    except OSError as e:
        raise DeviceIdentityError(
            f"Could not establish device identity at {device_id_path}: {e}"
        ) from e
