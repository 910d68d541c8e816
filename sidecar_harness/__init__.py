"""sidecar-harness: lifecycle orchestration for sidecar proxy integration tests.

Allocates ports, launches a client and a server proxy, serves them versioned
configuration snapshots, and asserts on the telemetry their admin endpoints
report.
"""

from __future__ import annotations

__version__ = "0.1.0"
__all__ = [
    "__version__",
    "ClientServerScenario",
    "ConfigPublisher",
    "DiscoveryServer",
    "ExactStats",
    "HarnessConfig",
    "HTTPBackend",
    "LabeledStats",
    "PortAllocator",
    "PortBlock",
    "ProxyInstance",
    "ProxySupervisor",
    "ReadinessCheck",
    "ScenarioOptions",
    "SnapshotCache",
    "Stat",
    "StatLessThan",
    "TCPBackend",
    "run_scenario",
]

from sidecar_harness.backends import HTTPBackend, TCPBackend
from sidecar_harness.config import HarnessConfig
from sidecar_harness.discovery import DiscoveryServer
from sidecar_harness.envoy import ProxyInstance, ProxySupervisor
from sidecar_harness.ports import PortAllocator, PortBlock
from sidecar_harness.scenario import ClientServerScenario, ScenarioOptions, run_scenario
from sidecar_harness.snapshot import ConfigPublisher, SnapshotCache
from sidecar_harness.stats import ExactStats, LabeledStats, ReadinessCheck, Stat, StatLessThan
