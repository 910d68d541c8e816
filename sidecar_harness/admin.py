"""Admin endpoint client: thin aiohttp wrappers around the proxy's admin API."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from sidecar_harness.errors import StatsError

log = logging.getLogger("sidecar-harness")

STATS_JSON_PATH = "/stats?format=json&usedonly"
STATS_PROMETHEUS_PATH = "/stats/prometheus"
QUIT_PATH = "/quitquitquit"


async def http_get(url: str, *, timeout: float = 2.0) -> tuple[int, str]:
    """GET ``url`` and return ``(status, body)``. Transport errors propagate."""
    async with aiohttp.ClientSession() as session:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            return resp.status, await resp.text()


async def http_post(url: str, body: str = "", *, content_type: str = "text/plain", timeout: float = 2.0) -> tuple[int, str]:
    async with aiohttp.ClientSession() as session:
        async with session.post(
            url,
            data=body.encode("utf-8"),
            headers={"Content-Type": content_type},
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            return resp.status, await resp.text()


class AdminClient:
    """Admin API of a single proxy instance, addressed by port."""

    def __init__(self, port: int, host: str = "127.0.0.1", timeout: float = 2.0):
        self.port = port
        self.host = host
        self.timeout = timeout

    def url(self, path: str) -> str:
        return f"http://{self.host}:{self.port}{path}"

    async def get(self, path: str) -> tuple[int, str]:
        return await http_get(self.url(path), timeout=self.timeout)

    async def stats_text(self, path: str = STATS_JSON_PATH) -> str:
        """Fetch a stats page, raising StatsError on transport errors or non-200."""
        try:
            status, body = await self.get(path)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise StatsError(f"sending stats request returns an error: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise StatsError(f"stats response is not valid text: {exc}") from exc
        if status != 200:
            raise StatsError(f"sending stats request returns unexpected status code: {status}")
        return body

    async def quit(self) -> None:
        """Ask the proxy to shut down. The response and any error are ignored."""
        try:
            await http_post(self.url(QUIT_PATH), timeout=self.timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            log.debug(f"quitquitquit on port {self.port} failed: {exc}")
