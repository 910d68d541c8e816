"""DiscoveryServer - serves snapshots over the REST flavour of the discovery API.

Proxies configured with ``api_type: REST`` poll
``POST /v3/discovery:<kind>`` with their node id and the version they hold;
the reply carries the node's current resources of that kind, or 304 when
nothing changed.
"""

from __future__ import annotations

import json
import logging

from aiohttp import web

from sidecar_harness.snapshot import ResourceKind, SnapshotCache

log = logging.getLogger("sidecar-harness")

ROUTES = {
    "listeners": ResourceKind.LISTENER,
    "clusters": ResourceKind.CLUSTER,
}


class DiscoveryServer:
    """HTTP server exposing a SnapshotCache to connected proxies."""

    def __init__(self, cache: SnapshotCache, port: int = 0, host: str = "127.0.0.1"):
        self.cache = cache
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None
        self._actual_port: int = 0
        self.requests = 0

    async def start(self) -> int:
        """Start serving and return the bound port."""
        app = web.Application()
        app.router.add_post("/v3/discovery:{kind}", self._handle_discovery)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        try:
            self._actual_port = site._server.sockets[0].getsockname()[1]
        except (AttributeError, IndexError, OSError):
            self._actual_port = self.port

        log.info(f"discovery server starting on {self._actual_port}")
        return self._actual_port

    async def stop(self) -> None:
        if self._runner:
            log.info("stopping discovery server")
            await self._runner.cleanup()
            self._runner = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self._actual_port}"

    async def _handle_discovery(self, request: web.Request) -> web.Response:
        kind = ROUTES.get(request.match_info["kind"])
        if kind is None:
            return web.Response(status=404, text=f"unknown resource type {request.match_info['kind']}")

        try:
            body = await request.json()
        except (json.JSONDecodeError, ValueError):
            return web.Response(status=400, text="request body is not JSON")
        if not isinstance(body, dict):
            return web.Response(status=400, text="request body must be an object")
        node_info = body.get("node")
        node = node_info.get("id") if isinstance(node_info, dict) else None
        if not node:
            return web.Response(status=400, text="request has no node id")

        self.requests += 1
        resources = self.cache.get_resources(node, kind)
        if resources is None:
            log.debug(f"discovery: no {kind.name.lower()}s for node {node!r}")
            return web.Response(status=404, text=f"no snapshot for node {node}")

        if body.get("version_info") == resources.version:
            return web.Response(status=304)

        log.debug(f"discovery: sending {kind.name.lower()}s version {resources.version!r} to {node!r}")
        return web.json_response(
            {
                "version_info": resources.version,
                "type_url": kind.type_url,
                "resources": [{"@type": kind.type_url, **r.to_dict()} for r in resources.items],
            }
        )
