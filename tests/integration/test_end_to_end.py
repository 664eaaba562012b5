"""End-to-end runs of the command-line tools against real redis-server processes."""
import json
import threading

import pytest

from _redis_path import skip_if_no_redis_server
from keyops import cli
from servers import free_port, start_cluster, start_redis


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.setattr(cli, "install_cancel", threading.Event)
    for name in ("REDIS_HOST", "REDIS_PORT", "REDIS_AUTH"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def node():
    server = start_redis(skip_if_no_redis_server(), free_port())
    yield server
    server.stop()


@pytest.fixture
def second_node():
    server = start_redis(skip_if_no_redis_server(), free_port())
    yield server
    server.stop()


@pytest.fixture(scope="module")
def redis_cluster():
    nodes = start_cluster(skip_if_no_redis_server(), 3)
    yield nodes
    for n in nodes:
        n.stop()


def target(server):
    return ["-h", server.host, "-p", str(server.port)]


def test_standalone_seed_delete_cycle(node, capsys):
    assert cli.seed_main([*target(node), "-n", "2500", "-b", "1000", "user:{num}"]) == 0
    client = node.client()
    assert client.dbsize() == 2500
    doc = json.loads(client.get("user:42"))
    assert doc["id"] == 42
    assert len(doc["data"]) == 10

    client.set("keep:me", "1")
    assert cli.delete_main([*target(node), "user:*"]) == 0
    assert client.keys("*") == ["keep:me"]
    out = capsys.readouterr().out
    assert "seed (standalone): processed 2500, succeeded 2500, failed 0" in out
    assert "delete (standalone): processed 2500, succeeded 2500, failed 0" in out


def test_delete_nothing_matches(node, capsys):
    assert cli.delete_main([*target(node), "nope:*"]) == 0
    assert "processed 0, succeeded 0, failed 0" in capsys.readouterr().out


def test_populate_merges_into_existing_hash(node, tmp_path):
    client = node.client()
    client.hset("svc:a", mapping={"a": "1"})
    source = tmp_path / "params.yaml"
    source.write_text("- key: svc:a\n  values:\n    b: 2\n    on_call: true\n")
    assert cli.populate_main([*target(node), "-f", str(source)]) == 0
    assert client.hgetall("svc:a") == {"a": "1", "b": "2", "on_call": "true"}


def test_replicate_between_standalone_nodes(node, second_node):
    src = node.client()
    src.set("s", "v", px=60000)
    src.hset("h", mapping={"f": "1"})
    src.rpush("l", "a", "b")
    src.sadd("st", "x")
    src.zadd("z", {"m": 1.5})
    src.xadd("x", {"f": "v"}, id="1-1")

    argv = [
        "--source-host", node.host, "--source-port", str(node.port),
        "--dest-host", second_node.host, "--dest-port", str(second_node.port),
    ]
    assert cli.replicate_main(argv) == 0
    dst = second_node.client()
    assert dst.get("s") == "v"
    assert 0 < dst.pttl("s") <= 60000
    assert dst.hgetall("h") == {"f": "1"}
    assert dst.lrange("l", 0, -1) == ["a", "b"]
    assert dst.smembers("st") == {"x"}
    assert dst.zrange("z", 0, -1, withscores=True) == [("m", 1.5)]
    assert dst.xrange("x") == [("1-1", {"f": "v"})]


def test_cluster_seed_lands_on_slot_owners(redis_cluster, capsys):
    seed = redis_cluster[1]
    assert cli.seed_main([*target(seed), "-n", "3000", "-b", "500", "item:{num}"]) == 0
    out = capsys.readouterr().out
    assert "seed (sharded): processed 3000, succeeded 3000, failed 0" in out
    assert "MOVED" not in out

    # a cluster node refuses keys outside its slots, so every key found was routed to its owner
    total = sum(len(list(n.client().scan_iter("item:*", count=1000))) for n in redis_cluster)
    assert total == 3000

    assert cli.delete_main([*target(seed), "item:*"]) == 0
    assert "delete (sharded): processed 3000, succeeded 3000, failed 0" in capsys.readouterr().out
    assert sum(n.client().dbsize() for n in redis_cluster) == 0
