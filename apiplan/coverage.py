# apiplan/coverage.py
"""
Coverage accounting against an OpenAPI document.

Every executed method reports failures, unmet/met/skipped expectations, the
response status and its timing. ``spec_coverage()`` partitions what was run
into covered / non-covered / unknown paths and methods of the loaded OAS.
"""

from __future__ import annotations

import io
import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, DefaultDict, Dict, IO, List, Optional, Set, Tuple, Union

import yaml

from .errors import ApiPlanError
from .timings import Timing, Timings

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "PUT", "POST", "DELETE", "OPTIONS", "HEAD", "PATCH", "TRACE")

_PLACEHOLDER_RE = re.compile(r"\{[^/{}]*\}")

OasSource = Union[str, bytes, Path, IO[str], IO[bytes]]


# ==================== OAS table ====================

@dataclass
class OasTable:
    """path template -> METHOD -> declared response codes"""
    paths: Dict[str, Dict[str, List[Union[int, str]]]] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "OasTable":
        if not isinstance(doc, dict):
            raise ApiPlanError("unable to read OAS: document is not an object")
        table = cls()
        for path, item in (doc.get("paths") or {}).items():
            if not isinstance(item, dict):
                continue
            methods: Dict[str, List[Union[int, str]]] = {}
            for key, op in item.items():
                if key.upper() not in HTTP_METHODS:
                    continue
                codes: List[Union[int, str]] = []
                for code in ((op or {}).get("responses") or {}):
                    code_s = str(code)
                    codes.append(int(code_s) if code_s.isdigit() else code_s)
                methods[key.upper()] = codes
            if methods:
                table.paths[str(path)] = methods
        return table

    def method_count(self) -> int:
        return sum(len(m) for m in self.paths.values())


def load_oas(source: OasSource) -> OasTable:
    """
    Read an OpenAPI document from text, bytes, a path or a stream.

    JSON when the first non-blank character is ``{``, YAML otherwise.
    """
    if isinstance(source, Path):
        text = source.read_text(encoding="utf-8")
    elif isinstance(source, bytes):
        text = source.decode("utf-8")
    elif isinstance(source, str):
        text = source
    else:
        raw = source.read()
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    try:
        if text.lstrip()[:1] == "{":
            doc = json.loads(text)
        else:
            doc = yaml.safe_load(io.StringIO(text))
    except (ValueError, yaml.YAMLError) as e:
        raise ApiPlanError(f"unable to read OAS: {e}", cause=e) from e
    return OasTable.from_document(doc)


def normalize_path(path: str) -> str:
    """Replace ``{name}`` placeholders with ``{}`` and trim empty segments"""
    parts = [p for p in path.split("/") if p]
    return "/" + "/".join(_PLACEHOLDER_RE.sub("{}", p) if p.startswith("{") and p.endswith("}") else p for p in parts)


# ==================== Records ====================

@dataclass
class Failure:
    url: str
    method: str
    request: Any
    error: BaseException


@dataclass
class Unmet:
    url: str
    method: str
    request: Any
    expectation: Any
    error: BaseException


@dataclass
class Met:
    url: str
    method: str
    request: Any
    expectation: Any


@dataclass
class Skip:
    url: str
    method: str
    request: Any
    expectation: Any


@dataclass
class Common:
    failures: List[Failure] = field(default_factory=list)
    unmet: List[Unmet] = field(default_factory=list)
    met: List[Met] = field(default_factory=list)
    skipped: List[Skip] = field(default_factory=list)
    timings: List[Timing] = field(default_factory=list)

    def extend(self, other: "Common") -> None:
        self.failures.extend(other.failures)
        self.unmet.extend(other.unmet)
        self.met.extend(other.met)
        self.skipped.extend(other.skipped)
        self.timings.extend(other.timings)

    def copy(self) -> "Common":
        c = Common()
        c.extend(self)
        return c


@dataclass
class MethodCoverage(Common):
    method: str = ""


@dataclass
class EndpointCoverage(Common):
    url: str = ""
    methods: Dict[str, MethodCoverage] = field(default_factory=dict)


@dataclass
class SpecMethod(Common):
    method: str = ""
    statuses: List[Union[int, str]] = field(default_factory=list)


@dataclass
class SpecPath:
    path: str
    declared: Dict[str, List[Union[int, str]]] = field(default_factory=dict)
    covered_methods: Dict[str, SpecMethod] = field(default_factory=dict)
    non_covered_methods: Dict[str, SpecMethod] = field(default_factory=dict)
    unknown_methods: Dict[str, SpecMethod] = field(default_factory=dict)


@dataclass
class SpecCoverage:
    covered_paths: Dict[str, SpecPath] = field(default_factory=dict)
    non_covered_paths: Dict[str, SpecPath] = field(default_factory=dict)
    unknown_paths: Dict[str, SpecPath] = field(default_factory=dict)

    def paths_covered(self) -> Tuple[int, int, float]:
        covered = len(self.covered_paths)
        total = covered + len(self.non_covered_paths)
        return total, covered, _fraction(covered, total)

    def methods_covered(self) -> Tuple[int, int, float]:
        total = covered = 0
        for sp in self.covered_paths.values():
            total += len(sp.covered_methods) + len(sp.non_covered_methods)
            covered += len(sp.covered_methods)
        for sp in self.non_covered_paths.values():
            total += len(sp.declared)
        return total, covered, _fraction(covered, total)

    def unknown(self) -> List[Tuple[str, str]]:
        """(path, method) pairs that were exercised but are not in the OAS"""
        out: List[Tuple[str, str]] = []
        for sp in list(self.covered_paths.values()) + list(self.unknown_paths.values()):
            out.extend((sp.path, m) for m in sp.unknown_methods)
        return sorted(out)

    def unknown_unmet(self) -> List[Unmet]:
        """Unknown hits as Unmet records for the report; they do not fail the run"""
        return [
            Unmet(path, method, None, None, ApiPlanError(f"{method} {path} is not declared in the OAS"))
            for path, method in self.unknown()
        ]


def _fraction(covered: int, total: int) -> float:
    return covered / total if total else 0.0


# ==================== Collectors ====================

class CoverageCollector(ABC):
    """Receives everything a run observes"""

    @abstractmethod
    def load_spec(self, source: OasSource) -> None:
        ...

    @abstractmethod
    def report_failure(self, url: str, method: str, request: Any, error: BaseException) -> None:
        ...

    @abstractmethod
    def report_unmet(self, url: str, method: str, request: Any, expectation: Any, error: BaseException) -> None:
        ...

    @abstractmethod
    def report_met(self, url: str, method: str, request: Any, expectation: Any) -> None:
        ...

    @abstractmethod
    def report_skipped(self, url: str, method: str, request: Any, expectation: Any) -> None:
        ...

    @abstractmethod
    def report_timing(self, url: str, method: str, request: Any, duration_ns: int) -> None:
        ...

    def report_status(self, url: str, method: str, status: int) -> None:
        """Optional: collectors that don't track status codes ignore this"""

    @abstractmethod
    def has_failures(self) -> bool:
        ...


class Coverage(CoverageCollector):
    """Full coverage collector"""

    def __init__(self):
        self.endpoints: Dict[str, EndpointCoverage] = {}
        self.common = Common()
        self.oas: Optional[OasTable] = None
        self.statuses: DefaultDict[Tuple[str, str], DefaultDict[int, int]] = defaultdict(lambda: defaultdict(int))
        self._normalized: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    # ---- convenience accessors ----

    @property
    def failures(self) -> List[Failure]:
        return self.common.failures

    @property
    def unmet(self) -> List[Unmet]:
        return self.common.unmet

    @property
    def met(self) -> List[Met]:
        return self.common.met

    @property
    def skipped(self) -> List[Skip]:
        return self.common.skipped

    @property
    def timings(self) -> Timings:
        return Timings(self.common.timings)

    # ---- collector ----

    def load_spec(self, source: OasSource) -> None:
        self.oas = load_oas(source)
        logger.debug(f"OAS loaded: {len(self.oas.paths)} paths, {self.oas.method_count()} methods")

    def _add(self, url: str, method: str) -> Tuple[EndpointCoverage, MethodCoverage]:
        ep = self.endpoints.get(url)
        if ep is None:
            ep = EndpointCoverage(url=url)
            self.endpoints[url] = ep
            self._normalized.setdefault(normalize_path(url), set()).add(url)
        m = ep.methods.get(method)
        if m is None:
            m = MethodCoverage(method=method)
            ep.methods[method] = m
        return ep, m

    def report_failure(self, url, method, request, error):
        f = Failure(url, method, request, error)
        with self._lock:
            ep, m = self._add(url, method)
            for c in (self.common, ep, m):
                c.failures.append(f)

    def report_unmet(self, url, method, request, expectation, error):
        u = Unmet(url, method, request, expectation, error)
        with self._lock:
            ep, m = self._add(url, method)
            for c in (self.common, ep, m):
                c.unmet.append(u)

    def report_met(self, url, method, request, expectation):
        mt = Met(url, method, request, expectation)
        with self._lock:
            ep, m = self._add(url, method)
            for c in (self.common, ep, m):
                c.met.append(mt)

    def report_skipped(self, url, method, request, expectation):
        s = Skip(url, method, request, expectation)
        with self._lock:
            ep, m = self._add(url, method)
            for c in (self.common, ep, m):
                c.skipped.append(s)

    def report_timing(self, url, method, request, duration_ns):
        t = Timing(method=method, url=url, duration_ns=int(duration_ns), request=request)
        with self._lock:
            ep, m = self._add(url, method)
            for c in (self.common, ep, m):
                c.timings.append(t)

    def report_status(self, url, method, status):
        with self._lock:
            self._add(url, method)
            self.statuses[(url, method)][int(status)] += 1

    def has_failures(self) -> bool:
        with self._lock:
            return bool(self.common.failures or self.common.unmet)

    # ---- reporting ----

    def status_buckets(self) -> Dict[str, int]:
        """Response counts bucketed by class: 2xx, 3xx, 4xx, 5xx"""
        buckets: Dict[str, int] = {"2xx": 0, "3xx": 0, "4xx": 0, "5xx": 0}
        with self._lock:
            for counts in self.statuses.values():
                for status, n in counts.items():
                    key = f"{status // 100}xx"
                    if key in buckets:
                        buckets[key] += n
        return buckets

    def spec_coverage(self) -> SpecCoverage:
        with self._lock:
            if self.oas is None:
                raise ApiPlanError("spec not supplied")
            result = SpecCoverage()
            seen: Set[str] = set()
            for path, declared in self.oas.paths.items():
                sp = SpecPath(path=path, declared=dict(declared))
                templates = self._normalized.get(normalize_path(path))
                if templates:
                    seen.update(templates)
                    result.covered_paths[path] = sp
                    self._check_methods(sp, declared, templates)
                else:
                    result.non_covered_paths[path] = sp
            for url, ep in self.endpoints.items():
                if url in seen:
                    continue
                sp = SpecPath(path=url)
                result.unknown_paths[url] = sp
                for m, cm in ep.methods.items():
                    sp.unknown_methods[m] = _spec_method(m, cm)
            return result

    def _check_methods(self, sp: SpecPath, declared: Dict[str, List[Union[int, str]]], templates: Set[str]) -> None:
        for m, statuses in declared.items():
            sm = SpecMethod(method=m, statuses=list(statuses))
            found = False
            for t in sorted(templates):
                cm = self.endpoints[t].methods.get(m)
                if cm is not None:
                    found = True
                    sm.extend(cm)
            if found:
                sp.covered_methods[m] = sm
            else:
                sp.non_covered_methods[m] = sm
        for t in sorted(templates):
            for m, cm in self.endpoints[t].methods.items():
                if m in declared:
                    continue
                if m in sp.unknown_methods:
                    sp.unknown_methods[m].extend(cm)
                else:
                    sp.unknown_methods[m] = _spec_method(m, cm)

    def paths_covered(self) -> Tuple[int, int, float]:
        return self.spec_coverage().paths_covered()

    def methods_covered(self) -> Tuple[int, int, float]:
        return self.spec_coverage().methods_covered()


def _spec_method(method: str, c: Common) -> SpecMethod:
    sm = SpecMethod(method=method)
    sm.extend(c)
    return sm


class NullCoverage(CoverageCollector):
    """Collector that only remembers whether anything failed"""

    def __init__(self):
        self._failed = False

    def load_spec(self, source: OasSource) -> None:
        pass

    def report_failure(self, url, method, request, error):
        self._failed = True

    def report_unmet(self, url, method, request, expectation, error):
        self._failed = True

    def report_met(self, url, method, request, expectation):
        pass

    def report_skipped(self, url, method, request, expectation):
        pass

    def report_timing(self, url, method, request, duration_ns):
        pass

    def has_failures(self) -> bool:
        return self._failed
