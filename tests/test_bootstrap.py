"""Tests for bootstrap rendering."""

import pytest
import yaml

from sidecar_harness.bootstrap import XDS_CLUSTER, admin_port_for, bootstrap_dict, render_bootstrap
from sidecar_harness.errors import ConfigError
from sidecar_harness.ports import PortBlock
from sidecar_harness.snapshot import ConfigPublisher, SnapshotCache

PORTS = PortBlock(index=2, base=20040)


def test_dynamic_bootstrap_points_at_discovery():
    doc = yaml.safe_load(render_bootstrap("client", PORTS, metadata={"ISTIO_VERSION": "1.0"}))

    assert doc["node"]["id"] == "client"
    assert doc["node"]["metadata"] == {"ISTIO_VERSION": "1.0"}
    assert doc["admin"]["address"]["socket_address"]["port_value"] == PORTS.client_admin_port

    lds = doc["dynamic_resources"]["lds_config"]["api_config_source"]
    assert lds["api_type"] == "REST"
    assert lds["cluster_names"] == [XDS_CLUSTER]
    (xds,) = doc["static_resources"]["clusters"]
    endpoint = xds["load_assignment"]["endpoints"][0]["lb_endpoints"][0]["endpoint"]
    assert endpoint["address"]["socket_address"]["port_value"] == PORTS.xds_port


def test_static_bootstrap_embeds_snapshot():
    snapshot = ConfigPublisher(SnapshotCache(), PORTS).push("server", "0")
    doc = bootstrap_dict("server", PORTS, snapshot=snapshot)

    assert "dynamic_resources" not in doc
    assert doc["static_resources"]["listeners"] == snapshot.listeners()
    assert doc["static_resources"]["clusters"] == snapshot.clusters()
    assert doc["admin"]["address"]["socket_address"]["port_value"] == PORTS.server_admin_port


def test_extra_config_is_merged():
    extra = {"stats_config": {"use_all_default_tags": False}}
    doc = bootstrap_dict("client", PORTS, extra=extra)
    assert doc["stats_config"] == {"use_all_default_tags": False}
    doc["stats_config"]["use_all_default_tags"] = True
    assert extra["stats_config"]["use_all_default_tags"] is False


def test_admin_port_for_unknown_role():
    assert admin_port_for("server", PORTS) == PORTS.server_admin_port
    with pytest.raises(ConfigError):
        admin_port_for("sidecar", PORTS)
