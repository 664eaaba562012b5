from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import logging

import redis
from redis.backoff import NoBackoff
from redis.retry import Retry

from keyops.errors import NodeConnectionError

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError, OSError)


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int
    credential: str | None = field(default=None, repr=False, compare=False)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    def with_credential(self, credential: str | None) -> "Endpoint":
        return Endpoint(self.host, self.port, credential)


@contextmanager
def transport_errors(endpoint: Endpoint):
    """Re-raise redis-py transport failures as NodeConnectionError."""
    try:
        yield
    except TRANSPORT_ERRORS as exc:
        raise NodeConnectionError(endpoint, exc) from exc


class NodeConnection:
    """One connection to one node, owned by exactly one worker."""

    def __init__(self, endpoint: Endpoint, client) -> None:
        self.endpoint = endpoint
        self.client = client

    @classmethod
    def open(cls, endpoint: Endpoint, timeout: float = 5.0, decode: bool = True) -> "NodeConnection":
        client = redis.Redis(
            host=endpoint.host,
            port=endpoint.port,
            password=endpoint.credential,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=decode,
            # a pipeline that lost its connection must not be re-sent
            retry=Retry(NoBackoff(), 0),
        )
        conn = cls(endpoint, client)
        try:
            conn.execute("PING")
        except NodeConnectionError:
            conn.close()
            raise
        logger.debug("connected to %s", endpoint)
        return conn

    def execute(self, *args):
        with transport_errors(self.endpoint):
            return self.client.execute_command(*args)

    def scan(self, cursor: int, match: str, count: int):
        with transport_errors(self.endpoint):
            return self.client.scan(cursor=cursor, match=match, count=count)

    def pipeline(self):
        return self.client.pipeline(transaction=False)

    def close(self) -> None:
        try:
            self.client.close()
        except TRANSPORT_ERRORS:
            logger.debug("error while closing %s", self.endpoint, exc_info=True)

    def __enter__(self) -> "NodeConnection":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
