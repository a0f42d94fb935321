import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path

import pytest

from kibble.utils import collapse_whitespace, json_dumps, parse_iso, url_host, validate_url


class Status(Enum):
    DONE = "completed"


@dataclass
class Payload:
    value: str


def test_json_dumps_handles_supported_types():
    encoded = json_dumps(
        {
            "dataclass": Payload(value="ok"),
            "enum": Status.DONE,
            "datetime": datetime(2025, 1, 1, tzinfo=timezone.utc),
            "date": date(2025, 1, 2),
            "path": Path("/data/kibble"),
            "set": {"b", "a"},
        }
    )
    decoded = json.loads(encoded)

    assert decoded["dataclass"] == {"value": "ok"}
    assert decoded["enum"] == "completed"
    assert decoded["datetime"].startswith("2025-01-01T00:00:00")
    assert decoded["date"] == "2025-01-02"
    assert decoded["path"] == "/data/kibble"
    assert decoded["set"] == ["a", "b"]


def test_validate_url():
    assert validate_url("  https://example.com/feed ") == "https://example.com/feed"
    for bad in ("", "   ", "ftp://example.com", "example.com/feed", "https://"):
        with pytest.raises(ValueError):
            validate_url(bad)


def test_parse_iso_normalizes_to_utc():
    assert parse_iso("2025-01-01T00:00:00Z") == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert parse_iso("2025-01-01T02:00:00+02:00") == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert parse_iso("2025-01-01T00:00:00").tzinfo == timezone.utc


def test_text_helpers():
    assert collapse_whitespace("  a \n\t b  ") == "a b"
    assert url_host("https://News.Example.com:8443/x") == "news.example.com"
