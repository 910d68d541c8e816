"""Bounded polling against the admin endpoint.

Proxies apply configuration asynchronously, so every check here is a loop:
fetch, evaluate, sleep, until the predicate holds or the budget runs out.
There is no cancellation other than the deadline.
"""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from sidecar_harness.admin import STATS_JSON_PATH, AdminClient, http_get
from sidecar_harness.errors import ConvergenceTimeout, StatsError
from sidecar_harness.stats import STATS_PATHS, Matcher, ReadinessCheck, evaluate_text

log = logging.getLogger("sidecar-harness")

DEFAULT_INTERVAL = 0.2
DEFAULT_TIMEOUT = 3.0


def attempts_for(timeout: float, interval: float) -> int:
    """Number of polls that fit in ``timeout`` at ``interval`` (at least one)."""
    if interval <= 0:
        return 1
    return max(1, int(round(timeout / interval, 6)))


async def poll_until(
    matcher: Matcher,
    port: int,
    *,
    host: str = "127.0.0.1",
    interval: float = DEFAULT_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT,
    settle: float = 0.0,
):
    """Poll ``port``'s stats page until ``matcher`` holds.

    Returns the observation that satisfied the matcher. Raises
    ConvergenceTimeout with the last mismatch reason once
    ``timeout / interval`` attempts have failed.
    """
    if settle > 0:
        await asyncio.sleep(settle)

    admin = AdminClient(port, host=host)
    path = STATS_PATHS[matcher.kind]
    reason: str | None = None
    observed = None
    for attempt in range(attempts_for(timeout, interval)):
        try:
            text = await admin.stats_text(path)
            result, observed = evaluate_text(matcher, text)
        except StatsError as exc:
            reason = str(exc)
            log.info(f"[:{port}] attempt {attempt + 1}: {reason}")
        else:
            if result.ok:
                log.info(f"[:{port}] {matcher.kind.value} stats matched after {attempt + 1} attempt(s)")
                return observed
            reason = result.reason
            log.info(f"[:{port}] failed to verify stats: {reason}")
        await asyncio.sleep(interval)

    raise ConvergenceTimeout(f"{matcher.kind.value} stats on port {port} did not converge", reason, observed)


async def wait_ready(
    port: int,
    *,
    host: str = "127.0.0.1",
    interval: float = DEFAULT_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT,
    settle: float = 1.0,
) -> dict[str, int]:
    """Block until the proxy on ``port`` reports no warming listeners or clusters."""
    try:
        return await poll_until(
            ReadinessCheck(), port, host=host, interval=interval, timeout=timeout, settle=settle
        )
    except ConvergenceTimeout as exc:
        raise ConvergenceTimeout(f"proxy on port {port} failed to get ready", exc.reason, exc.observed) from None


async def wait_for_http(
    url: str,
    *,
    interval: float = DEFAULT_INTERVAL,
    timeout: float = 10.0,
    process: asyncio.subprocess.Process | None = None,
) -> None:
    """Retry GET ``url`` at a fixed interval until it answers 200.

    When ``process`` is given, stop early if it has already exited.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last: str | None = None
    while loop.time() < deadline:
        if process is not None and process.returncode is not None:
            raise ConvergenceTimeout(f"waiting for {url}", f"process exited with status {process.returncode}")
        try:
            status, _body = await http_get(url, timeout=max(interval, 1.0))
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, UnicodeDecodeError) as exc:
            last = str(exc) or type(exc).__name__
        else:
            if status == 200:
                return
            last = f"status {status}"
        await asyncio.sleep(interval)
    raise ConvergenceTimeout(f"waiting for {url}", last)


async def wait_for_stats_update_and_get_stats(
    port: int, wait: float = 0.0, *, host: str = "127.0.0.1"
) -> str:
    """Give the proxy ``wait`` seconds to flush stats, then return the JSON dump."""
    if wait > 0:
        await asyncio.sleep(wait)
    return await AdminClient(port, host=host).stats_text(STATS_JSON_PATH)
