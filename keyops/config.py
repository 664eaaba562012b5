from __future__ import annotations

from dataclasses import dataclass, replace
import os
from typing import Mapping

from keyops.errors import UsageError

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 6379


@dataclass(frozen=True)
class Settings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    auth: str | None = None
    batch_size: int = 1000
    count: int = 10000
    scan_count: int = 1000
    timeout: float = 5.0
    progress_every: int = 1000
    workers: int | None = None
    retries: int = 0
    error_sample: int = 5

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Defaults overlaid with REDIS_HOST / REDIS_PORT / REDIS_AUTH."""
        env = os.environ if environ is None else environ
        host = env.get("REDIS_HOST") or DEFAULT_HOST
        raw_port = env.get("REDIS_PORT") or str(DEFAULT_PORT)
        try:
            port = int(raw_port)
        except ValueError:
            raise UsageError(f"REDIS_PORT is not a number: {raw_port!r}") from None
        return cls(host=host, port=port, auth=env.get("REDIS_AUTH") or None)

    def override(self, **values) -> "Settings":
        """Return a copy with every non-None value applied."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})

    def validate(self) -> "Settings":
        if not self.host:
            raise UsageError("host must not be empty")
        if not 0 < self.port < 65536:
            raise UsageError(f"port out of range: {self.port}")
        for name in ("batch_size", "count", "scan_count", "progress_every"):
            if getattr(self, name) <= 0:
                raise UsageError(f"{name.replace('_', '-')} must be positive")
        if self.timeout <= 0:
            raise UsageError("timeout must be positive")
        if self.workers is not None and self.workers <= 0:
            raise UsageError("workers must be positive")
        if self.retries < 0:
            raise UsageError("retries must not be negative")
        return self
