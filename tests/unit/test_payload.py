import json
import re

import pytest

from keyops.errors import UsageError
from keyops.payload import check_pattern, key_for, random_string, seed_value


def test_key_for_replaces_every_placeholder():
    assert key_for("user:{num}", 7) == "user:7"
    assert key_for("{num}:a:{num}", 3) == "3:a:3"
    assert key_for("{tag}:{num}", 12) == "{tag}:12"


def test_pattern_without_placeholder_is_rejected():
    with pytest.raises(UsageError):
        check_pattern("user:1")
    assert check_pattern("user:{num}") == "user:{num}"


def test_random_string_is_alphanumeric():
    s = random_string()
    assert re.fullmatch(r"[A-Za-z0-9]{10}", s)
    assert len(random_string(32)) == 32


def test_seed_value_is_compact_json():
    raw = seed_value(5)
    assert " " not in raw
    doc = json.loads(raw)
    assert set(doc) == {"id", "timestamp", "data"}
    assert doc["id"] == 5
    assert doc["timestamp"] > 1_600_000_000
