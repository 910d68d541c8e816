"""Port allocation: disjoint port blocks for concurrently running tests."""

from __future__ import annotations

import errno
import logging
import socket
import threading
from dataclasses import dataclass
from typing import Callable

from sidecar_harness.errors import PortExhaustedError

log = logging.getLogger("sidecar-harness")

PORT_BASE = 20000
# Maximum number of ports used by one test.
BLOCK_SIZE = 20
MAX_PORT = 65535

# Offsets of the named roles inside a block
ROLE_OFFSETS = {
    "backend_port": 0,
    "client_admin_port": 1,
    "app_to_client_port": 2,
    "client_to_server_port": 3,
    "server_admin_port": 4,
    "xds_port": 5,
    "sd_port": 6,
    "tcp_backend_port": 7,
}


def is_port_used(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if ``port`` cannot be bound on ``host`` right now."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
    except OSError as exc:
        if exc.errno not in (errno.EADDRINUSE, errno.EACCES):
            log.debug(f"bind check on {host}:{port} failed: {exc}")
        return True
    finally:
        sock.close()
    return False


@dataclass(frozen=True)
class PortBlock:
    """A contiguous run of ports reserved (best-effort) for one test."""

    index: int
    base: int
    size: int = BLOCK_SIZE

    @property
    def ports(self) -> range:
        return range(self.base, self.base + self.size)

    @property
    def roles(self) -> dict[str, int]:
        return {name: self.base + offset for name, offset in ROLE_OFFSETS.items()}

    @property
    def backend_port(self) -> int:
        return self.base + ROLE_OFFSETS["backend_port"]

    @property
    def client_admin_port(self) -> int:
        return self.base + ROLE_OFFSETS["client_admin_port"]

    @property
    def app_to_client_port(self) -> int:
        return self.base + ROLE_OFFSETS["app_to_client_port"]

    @property
    def client_to_server_port(self) -> int:
        return self.base + ROLE_OFFSETS["client_to_server_port"]

    @property
    def server_admin_port(self) -> int:
        return self.base + ROLE_OFFSETS["server_admin_port"]

    @property
    def xds_port(self) -> int:
        return self.base + ROLE_OFFSETS["xds_port"]

    @property
    def sd_port(self) -> int:
        return self.base + ROLE_OFFSETS["sd_port"]

    @property
    def tcp_backend_port(self) -> int:
        return self.base + ROLE_OFFSETS["tcp_backend_port"]

    def overlaps(self, other: "PortBlock") -> bool:
        return self.base < other.base + other.size and other.base < self.base + self.size


class PortAllocator:
    """Hands out non-overlapping PortBlocks.

    One allocator is meant to be shared by every test in a process; the block
    index is the only state and is guarded by a lock. Ports are only bind-checked,
    not held, so another process can still grab one before the proxy binds it.
    """

    def __init__(
        self,
        base: int = PORT_BASE,
        block_size: int = BLOCK_SIZE,
        host: str = "127.0.0.1",
        is_used: Callable[[int, str], bool] = is_port_used,
    ):
        if block_size < len(ROLE_OFFSETS):
            raise ValueError(f"block_size must be at least {len(ROLE_OFFSETS)}")
        self.base = base
        self.block_size = block_size
        self.host = host
        self._is_used = is_used
        self._index = 0
        self._lock = threading.Lock()

    @property
    def index(self) -> int:
        return self._index

    def allocate_ports(self) -> PortBlock:
        with self._lock:
            candidate = self.base + self._index * self.block_size
            while candidate + self.block_size <= MAX_PORT:
                if self._all_free(candidate):
                    break
                candidate += self.block_size
            else:
                raise PortExhaustedError(
                    f"no available port range of {self.block_size} ports above {self.base}"
                )
            index = (candidate - self.base) // self.block_size
            self._index = index + 1
        log.info(f"allocated ports {candidate}-{candidate + self.block_size - 1} (block {index})")
        return PortBlock(index=index, base=candidate, size=self.block_size)

    def _all_free(self, start: int) -> bool:
        for port in range(start, start + self.block_size):
            if self._is_used(port, self.host):
                log.info(f"port {port} is in use, skipping block at {start}")
                return False
        return True
