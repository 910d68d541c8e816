"""Bootstrap documents for the client and server proxies."""

from __future__ import annotations

import copy
from typing import Any, Mapping

import yaml

from sidecar_harness.errors import ConfigError
from sidecar_harness.ports import PortBlock
from sidecar_harness.snapshot import Snapshot

XDS_CLUSTER = "xds_cluster"


def admin_port_for(role: str, ports: PortBlock) -> int:
    if role == "client":
        return ports.client_admin_port
    if role == "server":
        return ports.server_admin_port
    raise ConfigError(f"unknown proxy role {role!r}")


def _xds_cluster(port: int) -> dict:
    return {
        "name": XDS_CLUSTER,
        "connect_timeout": "1s",
        "type": "STATIC",
        "load_assignment": {
            "cluster_name": XDS_CLUSTER,
            "endpoints": [
                {"lb_endpoints": [{"endpoint": {"address": {"socket_address": {"address": "127.0.0.1", "port_value": port}}}}]}
            ],
        },
    }


def _rest_source(refresh_delay: str) -> dict:
    return {
        "resource_api_version": "V3",
        "api_config_source": {
            "api_type": "REST",
            "transport_api_version": "V3",
            "cluster_names": [XDS_CLUSTER],
            "refresh_delay": refresh_delay,
        },
    }


def bootstrap_dict(
    role: str,
    ports: PortBlock,
    *,
    snapshot: Snapshot | None = None,
    metadata: Mapping[str, Any] | None = None,
    extra: Mapping[str, Any] | None = None,
    refresh_delay: str = "0.2s",
) -> dict:
    """Build the bootstrap for ``role``.

    With a ``snapshot`` the listeners and clusters are embedded statically;
    otherwise LDS/CDS point at the discovery server on ``ports.xds_port``.
    ``extra`` is merged at the top level (e.g. ``stats_config``).
    """
    doc: dict = {
        "node": {"id": role, "cluster": "test-cluster", "metadata": copy.deepcopy(dict(metadata or {}))},
        "admin": {
            "access_log_path": "/dev/null",
            "address": {"socket_address": {"address": "127.0.0.1", "port_value": admin_port_for(role, ports)}},
        },
    }
    if snapshot is not None:
        doc["static_resources"] = {"listeners": snapshot.listeners(), "clusters": snapshot.clusters()}
    else:
        doc["dynamic_resources"] = {"lds_config": _rest_source(refresh_delay), "cds_config": _rest_source(refresh_delay)}
        doc["static_resources"] = {"clusters": [_xds_cluster(ports.xds_port)]}
    for key, value in (extra or {}).items():
        doc[key] = copy.deepcopy(value)
    return doc


def render_bootstrap(role: str, ports: PortBlock, **kwargs) -> str:
    return yaml.safe_dump(bootstrap_dict(role, ports, **kwargs), sort_keys=False)
