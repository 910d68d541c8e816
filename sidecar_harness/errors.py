"""Exception hierarchy for sidecar-harness."""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for every error raised by the harness."""


class PortExhaustedError(HarnessError):
    """No free block of ports is left below 65535."""


class LaunchError(HarnessError):
    """The proxy process could not be spawned or never became live."""


class ProxyExitError(HarnessError):
    """The proxy exited with a non-zero status after a shutdown request."""

    def __init__(self, role: str, returncode: int):
        super().__init__(f"{role} proxy exited with status {returncode}")
        self.role = role
        self.returncode = returncode


class ConfigError(HarnessError):
    """A configuration resource could not be parsed or is malformed."""


class StatsError(HarnessError):
    """Stats could not be fetched from the admin endpoint or parsed."""


class StatsMismatch(HarnessError):
    """A one-shot stats assertion did not hold."""


class ConvergenceTimeout(HarnessError):
    """A poll loop ran out of budget before its predicate held.

    ``reason`` is the last mismatch seen and ``observed`` the last stats
    snapshot, kept for diagnosing slow convergence vs. misconfiguration.
    """

    def __init__(self, what: str, reason: str | None, observed=None):
        msg = f"{what}: {reason or 'no successful poll'}"
        if observed is not None:
            msg += f" (last observed: {observed})"
        super().__init__(msg)
        self.reason = reason
        self.observed = observed
