"""Shared helper: locate the redis-server binary.

Resolution order:
  1. ``<repo>/third_party/redis/src/redis-server`` (project-local build).
  2. System PATH (``shutil.which``).

Tests that need a live server call ``skip_if_no_redis_server()``, which
skips the test instead of failing it when no binary is found.
"""
from __future__ import annotations

import pathlib
import shutil

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[2]

_THIRD_PARTY_SERVER = ROOT / "third_party/redis/src/redis-server"


def redis_server_path() -> str | None:
    """Return absolute path to redis-server, or None."""
    if _THIRD_PARTY_SERVER.exists():
        return str(_THIRD_PARTY_SERVER)
    return shutil.which("redis-server")


def skip_if_no_redis_server() -> str:
    """Return the redis-server path or skip the calling test."""
    p = redis_server_path()
    if p is None:
        pytest.skip("redis-server not found (install redis-server or build third_party/redis)")
    return p
