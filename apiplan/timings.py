# apiplan/timings.py
"""
Request timings and their summary statistics.

Samples are integer nanoseconds. Mean and variance are streamed (Welford);
percentiles use the nearest-rank method over a sorted snapshot.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

NS_PER_SEC = 1_000_000_000


@dataclass
class Timing:
    """One timed HTTP call"""
    method: str
    url: str
    duration_ns: int
    request: Any = None


@dataclass
class Stats:
    """Summary of a set of durations (all durations in ns, variance in s²)"""
    mean: int = 0
    stddev: int = 0
    variance: float = 0.0
    min: int = 0
    max: int = 0
    p50: int = 0
    p90: int = 0
    p99: int = 0
    count: int = 0
    ok: bool = False

    def as_dict(self) -> dict:
        return {
            "mean_ms": self.mean / 1e6,
            "stddev_ms": self.stddev / 1e6,
            "variance_s2": self.variance,
            "min_ms": self.min / 1e6,
            "max_ms": self.max / 1e6,
            "p50_ms": self.p50 / 1e6,
            "p90_ms": self.p90 / 1e6,
            "p99_ms": self.p99 / 1e6,
            "count": self.count,
        }


def nearest_rank(sorted_values: List[int], p: float) -> int:
    """Nearest-rank percentile (``p`` in 0..1) of an already sorted list"""
    n = len(sorted_values)
    k = max(1, math.ceil(p * n))
    return sorted_values[min(k, n) - 1]


def compute_stats(durations: Iterable[int], sample: bool = False) -> Stats:
    values = list(durations)
    if not values:
        return Stats()

    n = 0
    mean_s = 0.0
    m2 = 0.0
    for d in values:
        x = d / NS_PER_SEC
        n += 1
        delta = x - mean_s
        mean_s += delta / n
        m2 += delta * (x - mean_s)

    ordered = sorted(values)
    result = Stats(
        mean=round(mean_s * NS_PER_SEC),
        min=ordered[0],
        max=ordered[-1],
        p50=nearest_rank(ordered, 0.50),
        p90=nearest_rank(ordered, 0.90),
        p99=nearest_rank(ordered, 0.99),
        count=n,
        ok=True,
    )
    if sample:
        if n < 2:
            return result
        result.variance = m2 / (n - 1)
    else:
        result.variance = m2 / n
    result.stddev = round(math.sqrt(result.variance) * NS_PER_SEC)
    return result


class Timings:
    """Thread-safe collector of Timing samples"""

    def __init__(self, samples: Optional[Iterable[Timing]] = None):
        self._samples: List[Timing] = list(samples or [])
        self._lock = threading.Lock()

    def add(self, timing: Timing) -> None:
        with self._lock:
            self._samples.append(timing)

    def record(self, method: str, url: str, duration_ns: int, request: Any = None) -> Timing:
        t = Timing(method=method, url=url, duration_ns=int(duration_ns), request=request)
        self.add(t)
        return t

    def samples(self) -> List[Timing]:
        with self._lock:
            return list(self._samples)

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def stats(self, include_zeros: bool = False, sample: bool = False) -> Stats:
        """
        Summary statistics; ``ok`` is False when there are no samples.

        Zero-length samples (calls that never completed) are excluded unless
        ``include_zeros`` is set.
        """
        durations = [t.duration_ns for t in self.samples() if include_zeros or t.duration_ns > 0]
        return compute_stats(durations, sample=sample)

    def outliers(self, p: float) -> List[Timing]:
        """Samples at or above the p-th percentile (0..1), slowest last"""
        ordered = sorted(self.samples(), key=lambda t: t.duration_ns)
        if not ordered:
            return []
        if math.isnan(p) or math.isinf(p) or p <= 0:
            return ordered
        threshold = nearest_rank([t.duration_ns for t in ordered], min(p, 1.0))
        return [t for t in ordered if t.duration_ns >= threshold]
