"""Versioned configuration snapshots per proxy node.

A push replaces a node's resources kind by kind: pushing listeners drops the
previous listeners but leaves previously pushed clusters alone. Versions are
opaque; callers are expected to hand out increasing ones.
"""

from __future__ import annotations

import copy
import enum
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import yaml

from sidecar_harness.errors import ConfigError
from sidecar_harness.ports import PortBlock

log = logging.getLogger("sidecar-harness")


class ResourceKind(enum.Enum):
    LISTENER = "type.googleapis.com/envoy.config.listener.v3.Listener"
    CLUSTER = "type.googleapis.com/envoy.config.cluster.v3.Cluster"

    @property
    def type_url(self) -> str:
        return self.value


@dataclass(frozen=True)
class Resource:
    name: str
    kind: ResourceKind
    body: Mapping[str, Any]

    def to_dict(self) -> dict:
        return copy.deepcopy(dict(self.body))


@dataclass(frozen=True)
class Resources:
    version: str
    items: tuple[Resource, ...] = ()

    @property
    def names(self) -> list[str]:
        return [r.name for r in self.items]


@dataclass(frozen=True)
class Snapshot:
    node: str
    resources: Mapping[ResourceKind, Resources] = field(default_factory=dict)

    def get(self, kind: ResourceKind) -> Resources | None:
        return self.resources.get(kind)

    def version(self, kind: ResourceKind) -> str | None:
        res = self.resources.get(kind)
        return res.version if res else None

    def listeners(self) -> list[dict]:
        res = self.resources.get(ResourceKind.LISTENER)
        return [r.to_dict() for r in res.items] if res else []

    def clusters(self) -> list[dict]:
        res = self.resources.get(ResourceKind.CLUSTER)
        return [r.to_dict() for r in res.items] if res else []


class SnapshotCache:
    """Holds the current snapshot for every node. Scenario-local."""

    def __init__(self):
        self._snapshots: dict[str, Snapshot] = {}

    def set_snapshot(self, node: str, snapshot: Snapshot) -> None:
        self._snapshots[node] = snapshot

    def get_snapshot(self, node: str) -> Snapshot | None:
        return self._snapshots.get(node)

    def get_resources(self, node: str, kind: ResourceKind) -> Resources | None:
        snap = self._snapshots.get(node)
        return snap.get(kind) if snap else None

    def nodes(self) -> list[str]:
        return sorted(self._snapshots)

    def clear(self, node: str | None = None) -> None:
        if node is None:
            self._snapshots.clear()
        else:
            self._snapshots.pop(node, None)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_resource(kind: ResourceKind, definition: str | Mapping[str, Any]) -> Resource:
    """Turn a YAML/JSON text or a mapping into a Resource."""
    if isinstance(definition, str):
        try:
            body = yaml.safe_load(definition)
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid {kind.name.lower()} definition: {exc}") from exc
    else:
        body = copy.deepcopy(dict(definition))
    if not isinstance(body, dict):
        raise ConfigError(f"{kind.name.lower()} definition must be a mapping, got {type(body).__name__}")
    name = body.get("name")
    if not isinstance(name, str) or not name:
        raise ConfigError(f"{kind.name.lower()} definition has no name")
    return Resource(name=name, kind=kind, body=MappingProxyType(body))


def parse_resources(kind: ResourceKind, definitions: Iterable[str | Mapping[str, Any]]) -> tuple[Resource, ...]:
    parsed = []
    seen: set[str] = set()
    for definition in definitions:
        resource = parse_resource(kind, definition)
        if resource.name in seen:
            raise ConfigError(f"duplicate {kind.name.lower()} {resource.name!r}")
        seen.add(resource.name)
        parsed.append(resource)
    return tuple(parsed)


# ---------------------------------------------------------------------------
# Default listener/cluster pairs
# ---------------------------------------------------------------------------

CLIENT_CLUSTER = "outbound|9080|http|server.default.svc.cluster.local"
SERVER_CLUSTER = "inbound|9080|http|server.default.svc.cluster.local"


def _static_cluster(name: str, port: int, *, http2: bool = False) -> dict:
    cluster: dict = {
        "name": name,
        "connect_timeout": "1s",
        "type": "STATIC",
        "load_assignment": {
            "cluster_name": name,
            "endpoints": [
                {"lb_endpoints": [{"endpoint": {"address": {"socket_address": {"address": "127.0.0.1", "port_value": port}}}}]}
            ],
        },
    }
    if http2:
        cluster["http2_protocol_options"] = {}
    return cluster


def _http_listener(name: str, port: int, cluster: str, stat_prefix: str) -> dict:
    return {
        "name": name,
        "traffic_direction": "OUTBOUND" if name == "client" else "INBOUND",
        "address": {"socket_address": {"address": "127.0.0.1", "port_value": port}},
        "filter_chains": [
            {
                "filters": [
                    {
                        "name": "http",
                        "typed_config": {
                            "@type": "type.googleapis.com/envoy.extensions.filters.network."
                            "http_connection_manager.v3.HttpConnectionManager",
                            "codec_type": "AUTO",
                            "stat_prefix": stat_prefix,
                            "http_filters": [
                                {
                                    "name": "envoy.filters.http.router",
                                    "typed_config": {
                                        "@type": "type.googleapis.com/envoy.extensions.filters.http.router.v3.Router"
                                    },
                                }
                            ],
                            "route_config": {
                                "name": stat_prefix,
                                "virtual_hosts": [
                                    {"name": stat_prefix, "domains": ["*"], "routes": [{"match": {"prefix": "/"}, "route": {"cluster": cluster}}]}
                                ],
                            },
                        },
                    }
                ]
            }
        ],
    }


def default_listeners(node: str, ports: PortBlock) -> list[dict]:
    if node == "client":
        return [_http_listener("client", ports.app_to_client_port, CLIENT_CLUSTER, "client")]
    if node == "server":
        return [_http_listener("server", ports.client_to_server_port, SERVER_CLUSTER, "server")]
    return []


def default_clusters(node: str, ports: PortBlock) -> list[dict]:
    if node == "client":
        return [_static_cluster(CLIENT_CLUSTER, ports.client_to_server_port, http2=True)]
    if node == "server":
        return [_static_cluster(SERVER_CLUSTER, ports.backend_port)]
    return []


# ---------------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------------


class ConfigPublisher:
    """Parses resource definitions and publishes them into a SnapshotCache."""

    def __init__(self, cache: SnapshotCache, ports: PortBlock | None = None):
        self.cache = cache
        self.ports = ports

    def push(
        self,
        node: str,
        version: str,
        listeners: Iterable[str | Mapping[str, Any]] | None = None,
        clusters: Iterable[str | Mapping[str, Any]] | None = None,
    ) -> Snapshot:
        """Publish ``version`` for ``node``.

        A kind left as None keeps whatever the node already had for it. For
        client and server nodes that never had that kind, the default
        listener or cluster wired to the local backend is used instead.
        """
        previous = self.cache.get_snapshot(node)
        if node in ("client", "server"):
            if listeners is None and (previous is None or previous.get(ResourceKind.LISTENER) is None):
                listeners = default_listeners(node, self._ports_for_defaults(node))
            if clusters is None and (previous is None or previous.get(ResourceKind.CLUSTER) is None):
                clusters = default_clusters(node, self._ports_for_defaults(node))

        updates: dict[ResourceKind, Resources] = {}
        if listeners is not None:
            updates[ResourceKind.LISTENER] = Resources(version, parse_resources(ResourceKind.LISTENER, listeners))
        if clusters is not None:
            updates[ResourceKind.CLUSTER] = Resources(version, parse_resources(ResourceKind.CLUSTER, clusters))

        merged = dict(previous.resources) if previous else {}
        merged.update(updates)
        snap = Snapshot(node=node, resources=MappingProxyType(merged))
        self.cache.set_snapshot(node, snap)

        summary = ", ".join(f"{kind.name.lower()}s={res.names}" for kind, res in updates.items()) or "nothing"
        log.info(f"update config for {node!r} with version {version!r}: {summary}")
        return snap

    def _ports_for_defaults(self, node: str) -> PortBlock:
        if self.ports is None:
            raise ConfigError(f"no resources given for {node!r} and no ports to build defaults from")
        return self.ports
