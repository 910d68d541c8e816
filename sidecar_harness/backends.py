"""Backend servers that proxied traffic ends up at."""

from __future__ import annotations

import asyncio
import logging
import ssl
from pathlib import Path

from aiohttp import web

from sidecar_harness.errors import ConfigError

log = logging.getLogger("sidecar-harness")


def load_tls_context(cert_dir: Path) -> ssl.SSLContext:
    """Server-side TLS context from ``cert.pem`` / ``key.pem`` in ``cert_dir``."""
    cert = Path(cert_dir) / "cert.pem"
    key = Path(cert_dir) / "key.pem"
    if not cert.exists() or not key.exists():
        raise ConfigError(f"TLS requested but {cert} or {key} is missing")
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.load_cert_chain(str(cert), str(key))
    return ctx


class HTTPBackend:
    """HTTP server answering every path with 200, remembering the last request."""

    def __init__(self, port: int, host: str = "127.0.0.1", tls_context: ssl.SSLContext | None = None, body: str = "hello"):
        self.port = port
        self.host = host
        self.tls_context = tls_context
        self.body = body
        self.request_count = 0
        self.last_headers: dict[str, str] | None = None
        self._runner: web.AppRunner | None = None

    def start(self) -> asyncio.Future:
        """Bind in the background; the returned future resolves once listening
        or carries the bind error."""
        return asyncio.ensure_future(self._bind())

    async def _bind(self) -> None:
        app = web.Application()
        app.router.add_route("*", "/{path_info:.*}", self._handle)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port, ssl_context=self.tls_context)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        scheme = "https" if self.tls_context else "http"
        log.info(f"HTTP backend listening on {scheme}://{self.host}:{self.port}")

    async def _handle(self, request: web.Request) -> web.Response:
        self.request_count += 1
        self.last_headers = dict(request.headers)
        data = await request.read()
        return web.Response(status=200, body=data or self.body.encode("utf-8"))

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            log.info(f"HTTP backend on {self.port} stopped")


class TCPBackend:
    """TCP server replying ``prefix + data`` to everything it reads."""

    def __init__(self, port: int, prefix: str = "hello", host: str = "127.0.0.1", tls_context: ssl.SSLContext | None = None):
        self.port = port
        self.prefix = prefix.encode("utf-8")
        self.host = host
        self.tls_context = tls_context
        self.connection_count = 0
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    def start(self) -> asyncio.Future:
        return asyncio.ensure_future(self._bind())

    async def _bind(self) -> None:
        self._server = await asyncio.start_server(self._handle, self.host, self.port, ssl=self.tls_context)
        log.info(f"TCP backend listening on {self.host}:{self.port}")

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connection_count += 1
        self._writers.add(writer)
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                writer.write(self.prefix + data)
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError, ssl.SSLError):
            pass
        finally:
            self._writers.discard(writer)
            writer.close()

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer in list(self._writers):
            writer.close()
        await self._server.wait_closed()
        self._server = None
        log.info(f"TCP backend on {self.port} stopped")
