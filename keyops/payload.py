from __future__ import annotations

import json
import random
import string
import time

from keyops.errors import UsageError

PLACEHOLDER = "{num}"


def random_string(n: int = 10) -> str:
    return "".join(random.choices(string.ascii_letters + string.digits, k=n))


def check_pattern(pattern: str) -> str:
    if PLACEHOLDER not in pattern:
        raise UsageError(f"key pattern {pattern!r} has no {PLACEHOLDER} placeholder")
    return pattern


def key_for(pattern: str, num: int) -> str:
    return pattern.replace(PLACEHOLDER, str(num))


def seed_value(num: int) -> str:
    return json.dumps(
        {"id": num, "timestamp": int(time.time()), "data": random_string()},
        separators=(",", ":"),
    )
