"""Stats parsing and matchers.

Two admin pages are understood: the flat JSON dump
(``/stats?format=json&usedonly``) and the Prometheus text exposition
(``/stats/prometheus``). Matchers form a closed set keyed by ``MatchKind``;
each one knows which page it reads and exposes ``evaluate(observed)``.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import ClassVar, Mapping, Union

from prometheus_client.metrics_core import Metric
from prometheus_client.parser import text_string_to_metric_families

from sidecar_harness.admin import STATS_JSON_PATH, STATS_PROMETHEUS_PATH
from sidecar_harness.errors import StatsError, StatsMismatch

log = logging.getLogger("sidecar-harness")

LISTENERS_WARMING = "listener_manager.total_listeners_warming"
CLUSTERS_WARMING = "cluster_manager.warming_clusters"


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def parse_json_stats(text: str) -> dict[str, int]:
    """Flatten ``{"stats": [{"name": ..., "value": ...}]}`` into ``{name: value}``.

    Entries without a numeric value (histograms, text readouts) are skipped.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError) as exc:
        raise StatsError(f"unable to unmarshal stats from json: {exc}") from exc
    if not isinstance(data, dict):
        raise StatsError("unable to unmarshal stats from json: top level is not an object")

    out: dict[str, int] = {}
    for entry in data.get("stats", []):
        if not isinstance(entry, dict) or "name" not in entry:
            continue
        value = entry.get("value")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        out[entry["name"]] = int(value)
    return out


def parse_prometheus(text: str) -> dict[str, Metric]:
    """Parse exposition text into families, indexed by family and sample names.

    Counters are reachable both as ``foo`` and ``foo_total``.
    """
    try:
        families = list(text_string_to_metric_families(text))
    except ValueError as exc:
        raise StatsError(f"unable to parse prometheus stats: {exc}") from exc
    index: dict[str, Metric] = {}
    for family in families:
        index.setdefault(family.name, family)
        for sample in family.samples:
            index.setdefault(sample.name, family)
    return index


def _series(family: Metric) -> list:
    names = {family.name}
    if family.type == "counter":
        names.add(family.name + "_total")
    return [s for s in family.samples if s.name in names]


# ---------------------------------------------------------------------------
# Matchers
# ---------------------------------------------------------------------------


class MatchKind(enum.Enum):
    READY = "ready"
    EXACT = "exact"
    LABELED = "labeled"
    LESS_THAN = "less_than"


# Admin page each matcher kind is evaluated against
STATS_PATHS = {
    MatchKind.READY: STATS_JSON_PATH,
    MatchKind.EXACT: STATS_JSON_PATH,
    MatchKind.LESS_THAN: STATS_JSON_PATH,
    MatchKind.LABELED: STATS_PROMETHEUS_PATH,
}

PARSERS = {
    MatchKind.READY: parse_json_stats,
    MatchKind.EXACT: parse_json_stats,
    MatchKind.LESS_THAN: parse_json_stats,
    MatchKind.LABELED: parse_prometheus,
}


@dataclass(frozen=True)
class MatchResult:
    ok: bool
    reason: str | None = None

    @classmethod
    def success(cls) -> "MatchResult":
        return cls(True)

    @classmethod
    def failure(cls, reason: str) -> "MatchResult":
        return cls(False, reason)


@dataclass
class Stat:
    """Expected value of a Prometheus metric, plus the labels it must carry."""

    value: float
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ReadinessCheck:
    """No listener and no cluster is still warming."""

    kind: ClassVar[MatchKind] = MatchKind.READY

    def evaluate(self, observed: Mapping[str, int]) -> MatchResult:
        listeners = observed.get(LISTENERS_WARMING)
        clusters = observed.get(CLUSTERS_WARMING)
        if listeners is None or clusters is None:
            return MatchResult.failure("warming stats not reported yet")
        if listeners or clusters:
            return MatchResult.failure(f"{listeners} listeners and {clusters} clusters still warming")
        return MatchResult.success()


@dataclass(frozen=True)
class ExactStats:
    """Every named stat equals its expected value; absent counts as zero."""

    expected: Mapping[str, int]
    kind: ClassVar[MatchKind] = MatchKind.EXACT

    def evaluate(self, observed: Mapping[str, int]) -> MatchResult:
        for name, want in self.expected.items():
            got = observed.get(name)
            if got is None:
                if want != 0:
                    return MatchResult.failure(f"failed to find expected stat {name}")
                continue
            if got != want:
                return MatchResult.failure(f"stats {name} does not match. expected vs actual: {want} vs {got}")
            log.debug(f"stat {name} is matched. value is {want}")
        return MatchResult.success()


@dataclass(frozen=True)
class LabeledStats:
    """Prometheus counters/gauges with an exact value and required labels."""

    expected: Mapping[str, Stat]
    kind: ClassVar[MatchKind] = MatchKind.LABELED

    def evaluate(self, observed: Mapping[str, Metric]) -> MatchResult:
        for name, want in self.expected.items():
            family = observed.get(name)
            if family is None:
                return MatchResult.failure(f"failed to find expected stat {name}")
            if family.type not in ("counter", "gauge"):
                return MatchResult.failure(f"metric {name} has unsupported type {family.type}")
            series = _series(family)
            if len(series) != 1:
                return MatchResult.failure(f"expected one value for {family.type} {name}, got {len(series)}")
            sample = series[0]
            if float(sample.value) != float(want.value):
                return MatchResult.failure(
                    f"stats {name} does not match. expected vs actual: {want.value} vs {sample.value}"
                )
            found = 0
            for label, value in sample.labels.items():
                if label not in want.labels:
                    continue
                if value != want.labels[label]:
                    return MatchResult.failure(
                        f"metric {name} label {label} differs got:{value}, want: {want.labels[label]}"
                    )
                found += 1
            if found != len(want.labels):
                return MatchResult.failure(f"metric {name}, {len(want.labels) - found} required labels missing")
        return MatchResult.success()


@dataclass(frozen=True)
class StatLessThan:
    """A single stat exists and is strictly below ``bound``."""

    name: str
    bound: int
    kind: ClassVar[MatchKind] = MatchKind.LESS_THAN

    def evaluate(self, observed: Mapping[str, int]) -> MatchResult:
        got = observed.get(self.name)
        if got is None:
            return MatchResult.failure(f"failed to find expected stat {self.name}")
        if got >= self.bound:
            return MatchResult.failure(
                f"stat {self.name} does not match. expected value < {self.bound}, actual stat value is {got}"
            )
        return MatchResult.success()


Matcher = Union[ReadinessCheck, ExactStats, LabeledStats, StatLessThan]


def evaluate_text(matcher: Matcher, text: str):
    """Parse ``text`` the way ``matcher`` expects and evaluate it.

    Returns ``(result, observed)``.
    """
    observed = PARSERS[matcher.kind](text)
    return matcher.evaluate(observed), observed


def verify_stats_lt(stats: str | Mapping[str, int], name: str, bound: int) -> int:
    """Assert on an already fetched JSON stats dump; returns the stat's value."""
    observed = parse_json_stats(stats) if isinstance(stats, str) else stats
    result = StatLessThan(name, bound).evaluate(observed)
    if not result.ok:
        raise StatsMismatch(result.reason)
    log.info(f"stat {name} is matched. {observed[name]} < {bound}")
    return observed[name]
