"""Tests for SnapshotCache / ConfigPublisher per-kind replacement."""

import pytest

from sidecar_harness.errors import ConfigError
from sidecar_harness.ports import PortBlock
from sidecar_harness.snapshot import (
    CLIENT_CLUSTER,
    SERVER_CLUSTER,
    ConfigPublisher,
    ResourceKind,
    SnapshotCache,
    parse_resource,
)

LISTENER_A = """
name: listener_a
address:
  socket_address: {address: 127.0.0.1, port_value: 10001}
"""

LISTENER_B = """
name: listener_b
address:
  socket_address: {address: 127.0.0.1, port_value: 10002}
"""

CLUSTER_X = """
name: cluster_x
connect_timeout: 1s
type: STATIC
"""

PORTS = PortBlock(index=0, base=30000)


def test_push_replaces_same_kind_only():
    cache = SnapshotCache()
    pub = ConfigPublisher(cache)

    pub.push("node", "1", listeners=[LISTENER_A], clusters=[CLUSTER_X])
    pub.push("node", "2", listeners=[LISTENER_B])

    listeners = cache.get_resources("node", ResourceKind.LISTENER)
    clusters = cache.get_resources("node", ResourceKind.CLUSTER)
    assert listeners.version == "2"
    assert listeners.names == ["listener_b"], "V2 must fully replace V1 listeners"
    assert clusters.version == "1"
    assert clusters.names == ["cluster_x"], "clusters pushed earlier must survive a listener-only push"
    print("  OK: per-kind replacement")


def test_empty_push_clears_kind():
    cache = SnapshotCache()
    pub = ConfigPublisher(cache)
    pub.push("node", "1", listeners=[LISTENER_A], clusters=[CLUSTER_X])
    pub.push("node", "2", clusters=[])
    assert cache.get_resources("node", ResourceKind.CLUSTER).names == []
    assert cache.get_resources("node", ResourceKind.LISTENER).names == ["listener_a"]


def test_nodes_are_independent():
    cache = SnapshotCache()
    pub = ConfigPublisher(cache)
    pub.push("a", "1", listeners=[LISTENER_A])
    pub.push("b", "7", listeners=[LISTENER_B])
    assert cache.get_resources("a", ResourceKind.LISTENER).names == ["listener_a"]
    assert cache.get_resources("b", ResourceKind.LISTENER).version == "7"
    assert cache.nodes() == ["a", "b"]

    cache.clear("a")
    assert cache.get_snapshot("a") is None
    assert cache.get_snapshot("b") is not None


def test_snapshots_are_not_mutated_by_later_pushes():
    cache = SnapshotCache()
    pub = ConfigPublisher(cache)
    first = pub.push("node", "1", listeners=[LISTENER_A])
    pub.push("node", "2", listeners=[LISTENER_B])
    assert first.version(ResourceKind.LISTENER) == "1"
    assert [l["name"] for l in first.listeners()] == ["listener_a"]


def test_defaults_for_client_and_server():
    cache = SnapshotCache()
    pub = ConfigPublisher(cache, PORTS)

    client = pub.push("client", "0")
    server = pub.push("server", "0")

    (client_listener,) = client.listeners()
    (client_cluster,) = client.clusters()
    assert client_listener["address"]["socket_address"]["port_value"] == PORTS.app_to_client_port
    assert client_cluster["name"] == CLIENT_CLUSTER

    (server_listener,) = server.listeners()
    (server_cluster,) = server.clusters()
    assert server_listener["address"]["socket_address"]["port_value"] == PORTS.client_to_server_port
    assert server_cluster["name"] == SERVER_CLUSTER
    endpoint = server_cluster["load_assignment"]["endpoints"][0]["lb_endpoints"][0]["endpoint"]
    assert endpoint["address"]["socket_address"]["port_value"] == PORTS.backend_port


def test_missing_kind_gets_default_on_first_push():
    """Giving only clusters for the client still leaves it with a listener."""
    cache = SnapshotCache()
    pub = ConfigPublisher(cache, PORTS)

    client = pub.push("client", "0", clusters=[CLUSTER_X])
    (listener,) = client.listeners()
    assert listener["address"]["socket_address"]["port_value"] == PORTS.app_to_client_port
    assert [c["name"] for c in client.clusters()] == ["cluster_x"]

    server = pub.push("server", "0", listeners=[LISTENER_A])
    assert [l["name"] for l in server.listeners()] == ["listener_a"]
    assert [c["name"] for c in server.clusters()] == [SERVER_CLUSTER]
    print("  OK: each missing kind defaulted on its own")


def test_later_push_keeps_pushed_kind_instead_of_default():
    cache = SnapshotCache()
    pub = ConfigPublisher(cache, PORTS)
    pub.push("client", "0", listeners=[LISTENER_A], clusters=[CLUSTER_X])
    pub.push("client", "1", clusters=[])

    listeners = cache.get_resources("client", ResourceKind.LISTENER)
    assert listeners.names == ["listener_a"], "existing listeners are kept, not replaced by defaults"
    assert listeners.version == "0"
    assert cache.get_resources("client", ResourceKind.CLUSTER).names == []


def test_defaults_need_ports():
    pub = ConfigPublisher(SnapshotCache())
    with pytest.raises(ConfigError):
        pub.push("client", "0")
    with pytest.raises(ConfigError):
        pub.push("server", "0", listeners=[LISTENER_A])
    # Unknown nodes just get an empty snapshot
    snap = pub.push("other", "0")
    assert snap.listeners() == [] and snap.clusters() == []


def test_mapping_definitions_are_copied():
    definition = {"name": "cluster_y", "type": "STATIC"}
    cache = SnapshotCache()
    ConfigPublisher(cache).push("node", "1", clusters=[definition])
    definition["type"] = "EDS"
    assert cache.get_snapshot("node").clusters()[0]["type"] == "STATIC"


def test_invalid_definitions():
    with pytest.raises(ConfigError, match="no name"):
        parse_resource(ResourceKind.LISTENER, "address: {}")
    with pytest.raises(ConfigError, match="mapping"):
        parse_resource(ResourceKind.CLUSTER, "- a\n- b\n")
    with pytest.raises(ConfigError):
        parse_resource(ResourceKind.CLUSTER, "name: [unclosed")
    with pytest.raises(ConfigError, match="duplicate"):
        ConfigPublisher(SnapshotCache()).push("node", "1", listeners=[LISTENER_A, LISTENER_A])
