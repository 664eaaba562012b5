"""Loading of populate sources.

The source is a YAML sequence of records::

    - key: service:payments
      values:
        timeout: 30
        enabled: true

Scalar values are rendered the way ``yq -r`` prints them.
"""
from __future__ import annotations

from dataclasses import dataclass
import pathlib
from typing import Any

import yaml

from keyops.errors import SourceError


@dataclass(frozen=True)
class FieldRecord:
    key: str
    fields: dict[str, str]


def _scalar(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        raise SourceError(f"{where}: nested values are not supported")
    return str(value)


def parse_records(data: Any, origin: str = "<source>") -> list[FieldRecord]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise SourceError(f"{origin}: expected a list of records, got {type(data).__name__}")

    records = []
    for i, item in enumerate(data):
        where = f"{origin}[{i}]"
        if not isinstance(item, dict):
            raise SourceError(f"{where}: record is not a mapping")
        key = item.get("key")
        if key is None or isinstance(key, (dict, list)) or str(key) == "":
            raise SourceError(f"{where}: missing 'key'")
        values = item.get("values")
        if values is None:
            values = {}
        elif not isinstance(values, dict):
            raise SourceError(f"{where}: 'values' is not a mapping")
        fields = {
            _scalar(name, f"{where}.values"): _scalar(v, f"{where}.values.{name}") for name, v in values.items()
        }
        records.append(FieldRecord(str(key), fields))
    return records


def load_records(path: str | pathlib.Path) -> list[FieldRecord]:
    path = pathlib.Path(path)
    if not path.is_file():
        raise SourceError(f"source file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, UnicodeDecodeError) as exc:
        raise SourceError(f"{path}: {exc}") from exc
    return parse_records(data, str(path))
