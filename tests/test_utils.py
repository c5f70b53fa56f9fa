"""Tests for utility functions."""

from datetime import datetime, timedelta, timezone

import pytest

from lorehub.exceptions import DeviceIdentityError
from lorehub.utils import (
    epoch_millis,
    get_or_create_device_id,
    json_to_list,
    list_to_json,
    parse_timestamp,
    read_json,
    relation_key,
    to_iso,
    utc_now,
    write_json,
)


class TestTimestamps:
    """Tests for timestamp helpers."""

    def test_to_iso_uses_z_and_milliseconds(self):
        """Test that timestamps are formatted in UTC with millisecond precision."""
        value = datetime(2024, 5, 1, 12, 30, 0, 123456, tzinfo=timezone.utc)
        assert to_iso(value) == "2024-05-01T12:30:00.123Z"

    def test_to_iso_converts_offsets(self):
        """Test that non-UTC datetimes are converted to UTC."""
        value = datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert to_iso(value) == "2024-05-01T12:00:00.000Z"

    def test_parse_timestamp_accepts_z(self):
        """Test parsing an ISO string with a trailing Z."""
        parsed = parse_timestamp("2024-05-01T12:30:00.123Z")
        assert parsed.tzinfo is not None
        assert parsed == datetime(2024, 5, 1, 12, 30, 0, 123000, tzinfo=timezone.utc)

    def test_parse_timestamp_treats_naive_as_utc(self):
        """Test that naive timestamps are interpreted as UTC."""
        parsed = parse_timestamp("2024-05-01T12:30:00")
        assert parsed.utcoffset() == timedelta(0)

    def test_parse_timestamp_invalid(self):
        """Test that garbage raises ValueError."""
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")

    def test_utc_now_truncates_to_milliseconds(self):
        """Test that utc_now has no sub-millisecond component."""
        assert utc_now().microsecond % 1000 == 0

    def test_epoch_millis(self):
        """Test conversion to epoch milliseconds."""
        value = datetime(1970, 1, 1, 0, 0, 1, 500000, tzinfo=timezone.utc)
        assert epoch_millis(value) == 1500


class TestJsonHelpers:
    """Tests for JSON helpers."""

    def test_list_json_helpers(self):
        """Test list serialization and tolerant parsing."""
        assert json_to_list(list_to_json(["a", "b"])) == ["a", "b"]
        assert list_to_json(None) == "[]"
        assert json_to_list(None) == []
        assert json_to_list("not json") == []

    def test_write_json_creates_parents(self, tmp_path):
        """Test that write_json creates missing directories."""
        path = tmp_path / "a" / "b" / "data.json"
        write_json(path, {"key": "value"})
        assert read_json(path) == {"key": "value"}

    def test_relation_key(self):
        """Test the composite relation key format."""
        assert relation_key("a", "b", "supports") == "a-b-supports"


class TestDeviceId:
    """Tests for device identity."""

    def test_created_once_and_stable(self, tmp_path):
        """Test that the device id is persisted and reused."""
        path = tmp_path / "device-id"
        first = get_or_create_device_id(path)
        second = get_or_create_device_id(path)
        assert first == second
        assert path.read_text().strip() == first

    def test_empty_file_is_replaced(self, tmp_path):
        """Test that an empty device-id file gets a fresh id."""
        path = tmp_path / "device-id"
        path.write_text("")
        device_id = get_or_create_device_id(path)
        assert device_id
        assert path.read_text() == device_id

    def test_unreadable_path_raises(self, tmp_path):
        """Test that an unusable location raises DeviceIdentityError."""
        path = tmp_path / "device-id"
        path.mkdir()
        with pytest.raises(DeviceIdentityError):
            get_or_create_device_id(path)
