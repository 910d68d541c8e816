"""Client/server proxy scenarios: set up the pair, run a test body, tear down."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Sequence, Union

from sidecar_harness import poller
from sidecar_harness.backends import HTTPBackend, TCPBackend, load_tls_context
from sidecar_harness.bootstrap import admin_port_for, render_bootstrap
from sidecar_harness.config import HarnessConfig, configure_logging
from sidecar_harness.discovery import DiscoveryServer
from sidecar_harness.envoy import ProxyInstance, ProxySupervisor, base_id_for
from sidecar_harness.ports import PortAllocator, PortBlock
from sidecar_harness.snapshot import ConfigPublisher, Snapshot, SnapshotCache
from sidecar_harness.stats import ExactStats, LabeledStats, Stat, verify_stats_lt

log = logging.getLogger("sidecar-harness")

Definitions = Sequence[Union[str, Mapping[str, Any]]]


@dataclass
class ScenarioOptions:
    """Per-test knobs for a client/server scenario."""

    # Extra flags appended to both proxy command lines.
    extra_proxy_args: list[str] = field(default_factory=list)
    # Full bootstrap overrides; rendered from the port block when unset.
    client_bootstrap: str | None = None
    server_bootstrap: str | None = None
    client_node_metadata: dict[str, Any] = field(default_factory=dict)
    server_node_metadata: dict[str, Any] = field(default_factory=dict)
    # Extra top level bootstrap config, e.g. stats_config.
    extra_bootstrap: dict[str, Any] = field(default_factory=dict)

    # Initial resources pushed at version "0"; None means the default pair.
    client_listeners: Definitions | None = None
    client_clusters: Definitions | None = None
    server_listeners: Definitions | None = None
    server_clusters: Definitions | None = None
    # Embed resources in the bootstrap instead of serving them over discovery.
    static_config: bool = False

    start_http_backend: bool = True
    start_tcp_backend: bool = False
    tcp_prefix: str = "hello"
    enable_tls: bool = False
    tls_dir: Path | None = None

    stress: bool = False
    disable_hot_restart: bool = False
    epoch: int = 0
    working_dir: Path | None = None
    copy_yaml_files: bool = False


class ClientServerScenario:
    """A server proxy, a client proxy in front of it, and the backends behind them.

    ``set_up`` brings everything up in order and raises on the first failure;
    ``tear_down`` always attempts every cleanup step and only logs what fails.
    """

    def __init__(
        self,
        allocator: PortAllocator,
        options: ScenarioOptions | None = None,
        config: HarnessConfig | None = None,
    ):
        self.allocator = allocator
        self.options = options or ScenarioOptions()
        self.config = config or HarnessConfig.from_env()
        self.supervisor = ProxySupervisor(self.config)
        self.cache = SnapshotCache()
        self.ports: PortBlock | None = None
        self.publisher: ConfigPublisher | None = None
        self.discovery: DiscoveryServer | None = None
        self.client: ProxyInstance | None = None
        self.server: ProxyInstance | None = None
        self.http_backend: HTTPBackend | None = None
        self.tcp_backend: TCPBackend | None = None
        self.teardown_errors: list[str] = []

    # -- lifecycle ------------------------------------------------------------

    async def set_up(self) -> None:
        if self.config.log_path:
            configure_logging(self.config.log_path)

        self.ports = self.allocator.allocate_ports()
        self.publisher = ConfigPublisher(self.cache, self.ports)
        opts = self.options

        if not opts.static_config:
            self.discovery = DiscoveryServer(self.cache, self.ports.xds_port)
            await self.discovery.start()

        self.publisher.push("client", "0", listeners=opts.client_listeners, clusters=opts.client_clusters)
        self.publisher.push("server", "0", listeners=opts.server_listeners, clusters=opts.server_clusters)

        log.info(f"Starting server proxy at {self.ports.server_admin_port}")
        self.server = await self._launch("server")
        await self.wait_ready("server")

        log.info(f"Starting client proxy at {self.ports.client_admin_port}")
        self.client = await self._launch("client")
        await self.wait_ready("client")

        tls = None
        if opts.enable_tls:
            tls = load_tls_context(opts.tls_dir or opts.working_dir or Path.cwd())
        if opts.start_http_backend:
            self.http_backend = HTTPBackend(self.ports.backend_port, tls_context=tls)
            await self.http_backend.start()
        if opts.start_tcp_backend:
            self.tcp_backend = TCPBackend(self.ports.tcp_backend_port, prefix=opts.tcp_prefix, tls_context=tls)
            await self.tcp_backend.start()

    async def _launch(self, role: str) -> ProxyInstance:
        opts = self.options
        bootstrap = opts.client_bootstrap if role == "client" else opts.server_bootstrap
        if bootstrap is None:
            metadata = opts.client_node_metadata if role == "client" else opts.server_node_metadata
            bootstrap = render_bootstrap(
                role,
                self.ports,
                snapshot=self.cache.get_snapshot(role) if opts.static_config else None,
                metadata=metadata,
                extra=opts.extra_bootstrap,
            )
        return await self.supervisor.launch(
            bootstrap,
            role,
            admin_port_for(role, self.ports),
            base_id=base_id_for(role, self.ports.index),
            epoch=opts.epoch,
            stress=opts.stress,
            disable_hot_restart=opts.disable_hot_restart,
            extra_args=opts.extra_proxy_args,
            working_dir=opts.working_dir,
            copy_yaml_files=opts.copy_yaml_files,
        )

    async def tear_down(self) -> list[str]:
        """Stop and clean up everything that was started; returns the errors seen."""
        for instance in (self.client, self.server):
            if instance is None:
                continue
            try:
                await self.supervisor.stop(instance)
            except Exception as exc:
                self._teardown_error(f"error quitting {instance.role} proxy: {exc}")
            self.teardown_errors.extend(self.supervisor.tear_down(instance))
        self.client = self.server = None

        for backend in (self.http_backend, self.tcp_backend):
            if backend is None:
                continue
            try:
                await backend.stop()
            except Exception as exc:
                self._teardown_error(f"error stopping backend on {backend.port}: {exc}")
        self.http_backend = self.tcp_backend = None

        if self.discovery is not None:
            try:
                await self.discovery.stop()
            except Exception as exc:
                self._teardown_error(f"error stopping discovery server: {exc}")
            self.discovery = None
        return self.teardown_errors

    def _teardown_error(self, msg: str) -> None:
        log.warning(msg)
        self.teardown_errors.append(msg)

    async def run(self, body: Callable[["ClientServerScenario"], Awaitable[Any]]) -> Any:
        """Set up, run ``body(self)``, tear down. A set-up failure skips the body."""
        try:
            await self.set_up()
            return await body(self)
        finally:
            errors = await self.tear_down()
            if errors:
                log.warning(f"teardown finished with {len(errors)} error(s)")

    async def __aenter__(self) -> "ClientServerScenario":
        try:
            await self.set_up()
        except BaseException:
            await self.tear_down()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.tear_down()

    # -- helpers for test bodies ----------------------------------------------

    def admin_port(self, role: str) -> int:
        return admin_port_for(role, self.ports)

    def push(self, node: str, version: str, listeners: Definitions | None = None, clusters: Definitions | None = None) -> Snapshot:
        return self.publisher.push(node, version, listeners=listeners, clusters=clusters)

    async def wait_ready(self, role: str) -> dict[str, int]:
        return await poller.wait_ready(
            self.admin_port(role),
            host=self.config.admin_host,
            interval=self.config.poll_interval,
            timeout=self.config.poll_timeout,
            settle=self.config.ready_settle_delay,
        )

    async def verify_stats(self, expected: Mapping[str, int], role: str = "client") -> dict[str, int]:
        return await poller.poll_until(
            ExactStats(dict(expected)),
            self.admin_port(role),
            host=self.config.admin_host,
            interval=self.config.poll_interval,
            timeout=self.config.poll_timeout,
        )

    async def verify_prometheus_stats(self, expected: Mapping[str, Stat], role: str = "client"):
        return await poller.poll_until(
            LabeledStats(dict(expected)),
            self.admin_port(role),
            host=self.config.admin_host,
            interval=self.config.poll_interval,
            timeout=self.config.poll_timeout,
        )

    def verify_stats_lt(self, stats: str | Mapping[str, int], name: str, bound: int) -> int:
        return verify_stats_lt(stats, name, bound)

    async def wait_for_stats_update_and_get_stats(self, wait: float, role: str = "client") -> str:
        return await poller.wait_for_stats_update_and_get_stats(
            self.admin_port(role), wait, host=self.config.admin_host
        )

    def last_request_headers(self) -> dict[str, str] | None:
        if self.http_backend is not None:
            return self.http_backend.last_headers
        return None

    async def stop_http_backend(self) -> None:
        if self.http_backend is not None:
            await self.http_backend.stop()


def run_scenario(
    body: Callable[[ClientServerScenario], Awaitable[Any]],
    allocator: PortAllocator,
    options: ScenarioOptions | None = None,
    config: HarnessConfig | None = None,
) -> Any:
    """Synchronous entry point: run one scenario on a fresh event loop."""
    return asyncio.run(ClientServerScenario(allocator, options, config).run(body))
