"""Pytest configuration and shared fixtures."""

import asyncio
import os
import shutil
import socket
import ssl
import subprocess
import sys
import tempfile
import threading
from pathlib import Path

import pytest


@pytest.fixture
def temp_out_dir():
    """Create a temporary directory for rendered configs and shm files."""
    out_dir = tempfile.mkdtemp(prefix="sidecar_harness_test_")
    yield Path(out_dir)
    shutil.rmtree(out_dir, ignore_errors=True)


@pytest.fixture
def project_dir():
    """Return the project root directory."""
    return Path(__file__).parent.parent


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def free_port():
    """Return a callable handing out currently unbound localhost ports."""
    return _free_port


class FakeAdminServer:
    """aiohttp server on its own event loop in a background thread.

    Tests drive the harness with ``asyncio.run``, so the fake endpoint needs a
    loop of its own that outlives each of those runs.
    """

    def __init__(self, port, handler_fn):
        self.port = port
        self.handler_fn = handler_fn
        self.error = None
        self._loop = asyncio.new_event_loop()
        self._started = threading.Event()
        self._done = None
        self._thread = threading.Thread(target=self._loop.run_until_complete, args=(self._serve(),), daemon=True)

    async def _serve(self):
        from aiohttp import web

        app = web.Application()
        app.router.add_route("*", "/{path_info:.*}", self.handler_fn)
        runner = web.AppRunner(app)
        await runner.setup()
        self._done = asyncio.Event()
        try:
            await web.TCPSite(runner, "127.0.0.1", self.port).start()
        except OSError as exc:
            self.error = exc
            self._done.set()
        self._started.set()
        try:
            await self._done.wait()
        finally:
            await runner.cleanup()

    def start(self):
        self._thread.start()
        if not self._started.wait(timeout=5):
            raise RuntimeError(f"fake server on port {self.port} did not start")
        if self.error is not None:
            self.stop()
            raise self.error
        return self

    def stop(self):
        if self._thread.is_alive() and self._done is not None:
            self._loop.call_soon_threadsafe(self._done.set)
        self._thread.join(timeout=3)
        if not self._thread.is_alive() and not self._loop.is_closed():
            self._loop.close()


@pytest.fixture
def fake_admin():
    """Start fake admin servers; all of them are stopped when the test ends.

    Usage: ``port = fake_admin(handler)`` where ``handler`` is an aiohttp handler.
    """
    servers = []

    def start(handler_fn, port=None):
        port = port or _free_port()
        servers.append(FakeAdminServer(port, handler_fn).start())
        return port

    yield start
    for server in servers:
        server.stop()


FAKE_PROXY_SCRIPT = Path(__file__).parent / "fake_proxy.py"


def write_proxy_launcher(directory, script=FAKE_PROXY_SCRIPT):
    """Write an executable that runs ``script`` with this interpreter."""
    launcher = Path(directory) / "envoy"
    launcher.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    os.chmod(launcher, 0o755)
    return launcher


@pytest.fixture
def fake_proxy_path(temp_out_dir):
    """Path of an executable standing in for the proxy binary."""
    return write_proxy_launcher(temp_out_dir)


@pytest.fixture
def tls_dir(temp_out_dir):
    """Directory holding a fresh self-signed cert.pem / key.pem pair."""
    if shutil.which("openssl") is None:
        pytest.skip("openssl not available")
    cert_dir = temp_out_dir / "certs"
    cert_dir.mkdir()
    subprocess.run(
        [
            "openssl", "req", "-x509", "-newkey", "rsa:2048", "-nodes",
            "-keyout", str(cert_dir / "key.pem"),
            "-out", str(cert_dir / "cert.pem"),
            "-days", "1",
            "-subj", "/CN=localhost",
        ],
        check=True,
        capture_output=True,
    )  # fmt: skip
    return cert_dir


def client_tls_context():
    """Client context that accepts the self-signed backend cert."""
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx
