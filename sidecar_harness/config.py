"""Harness configuration: timings, paths and environment overrides."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

log = logging.getLogger("sidecar-harness")

DEFAULT_ENVOY_VERSION = "release-1.5"


def default_proxy_path(version: str | None = None) -> Path:
    """Local path of the staged proxy binary for ``version``.

    The binary itself is fetched by a separate tool; this only names where it
    is expected to be.
    """
    version = version or os.environ.get("ENVOY_VERSION", DEFAULT_ENVOY_VERSION)
    return Path("istio-proxy") / f"envoy-{version}"


def default_out_dir() -> Path:
    return Path(tempfile.gettempdir()) / "sidecar-harness"


@dataclass
class HarnessConfig:
    """Settings shared by every scenario run in one process."""

    proxy_path: Path = field(default_factory=default_proxy_path)
    log_level: str = "info"
    out_dir: Path = field(default_factory=default_out_dir)
    log_path: Path | None = None

    # Admin surface
    admin_host: str = "127.0.0.1"
    liveness_path: str = "/server_info"

    # Poll loops (15 attempts at 200ms inside a 3s budget)
    poll_interval: float = 0.2
    poll_timeout: float = 3.0
    # Slow CI hosts refuse connections briefly even after warming hits zero
    ready_settle_delay: float = 1.0
    launch_timeout: float = 10.0
    launch_interval: float = 0.2
    stop_timeout: float = 3.0

    # Proxy flags
    drain_time_s: int = 1
    parent_shutdown_time_s: int = 1

    shm_dir: Path = Path("/dev/shm")

    @classmethod
    def from_env(cls, **overrides) -> "HarnessConfig":
        """Build a config from ``ENVOY_*`` / ``HARNESS_*`` variables.

        Keyword arguments win over the environment.
        """
        kwargs: dict = {}
        if os.environ.get("ENVOY_PATH"):
            kwargs["proxy_path"] = Path(os.environ["ENVOY_PATH"])
        if os.environ.get("ENVOY_DEBUG"):
            kwargs["log_level"] = os.environ["ENVOY_DEBUG"]
        if os.environ.get("HARNESS_OUT"):
            kwargs["out_dir"] = Path(os.environ["HARNESS_OUT"])
        if os.environ.get("HARNESS_LOG"):
            kwargs["log_path"] = Path(os.environ["HARNESS_LOG"])
        kwargs.update(overrides)
        return cls(**kwargs)


def configure_logging(log_path: Path | None = None, level: int = logging.DEBUG) -> None:
    """Send harness logs to ``log_path`` (if given) and quiet aiohttp access logs."""
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        resolved = str(log_path.resolve())
        if not any(getattr(h, "baseFilename", None) == resolved for h in log.handlers):
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter("%(asctime)s %(message)s", datefmt="%H:%M:%S"))
            log.addHandler(file_handler)
    log.setLevel(level)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
