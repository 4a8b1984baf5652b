# apiplan/suite.py
"""
Suite runner.

A Suite is a list of endpoints plus the options ("withs") that configure the
run. Options initialise in three stages:

    INITIAL     core options (host, doer, vars, coverage, repeats, logging)
    SUPPORTING  supporting images other images depend on
    FINAL       primary images and anything needing supporting images

Then the plan runs sequentially, repeated N times if asked, and the
shutdown callbacks registered during init run in reverse order.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, TextIO, Tuple, Union

from .context import Context, DatabaseArgs, NamedDatabase
from .coverage import Coverage, CoverageCollector, OasSource
from .endpoint import Endpoint, ExecutionUnit, flatten
from .errors import ApiPlanError, DeclarationError, ImageError, ResolutionError
from .harness import FailNow, Harness, StandaloneHarness
from .hooks import Hook
from .http_driver import HttpDoer, HttpxDoer
from .timings import Timings

if TYPE_CHECKING:
    from .images import SupportingImage

logger = logging.getLogger(__name__)

DEFAULT_HOST = "http://localhost"


class Stage(IntEnum):
    INITIAL = 0
    SUPPORTING = 1
    FINAL = 2


class With(ABC):
    """An option applied to a SuiteInit during Suite.run"""

    stage: Stage = Stage.INITIAL

    @abstractmethod
    def init(self, si: "SuiteInit") -> None:
        ...


@dataclass
class RepeatConfig:
    count: int = 1
    stop_on_failure: bool = False
    resets: Tuple[Any, ...] = ()


@dataclass
class RunResult:
    """What a run produced"""
    failed: bool
    coverage: CoverageCollector
    timings: Timings
    traces: List[Dict[str, Any]] = field(default_factory=list)
    repeats_run: int = 0

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


# ==================== Init ====================

class SuiteInit:
    """Mutable init state the options write into"""

    def __init__(self):
        self.host = DEFAULT_HOST
        self.http_do: Optional[HttpDoer] = None
        self.harness: Optional[Harness] = None
        self.vars: Dict[str, Any] = {}
        self.cookies: Dict[str, str] = {}
        self.report_coverage: Optional[Callable[[Coverage], None]] = None
        self.coverage_collector: Optional[CoverageCollector] = None
        self.oas: Optional[OasSource] = None
        self.repeats = RepeatConfig()
        self.out: TextIO = sys.stdout
        self.err: TextIO = sys.stderr
        self.trace_timings = False
        self.clock: Optional[Callable[[], int]] = None
        self.cancel: Optional[threading.Event] = None
        self.dbs: Dict[str, NamedDatabase] = {}
        self.images: List["SupportingImage"] = []
        self.shutdowns: List[Tuple[str, Callable[[], Any]]] = []
        self.reaper_shutdowns = True
        self.ctx: Optional[Context] = None

    # ---- core options ----

    def set_api_host(self, host: str, port: Optional[int] = None, scheme: str = "http") -> None:
        host = self.resolve_env(host)
        if "://" not in host:
            host = f"{scheme}://{host}"
        self.host = f"{host.rstrip('/')}:{port}" if port else host.rstrip("/")

    def set_http_do(self, doer: HttpDoer) -> None:
        self.http_do = doer

    def set_harness(self, harness: Harness) -> None:
        self.harness = harness

    def set_var(self, name: str, value: Any) -> None:
        self.vars[name] = value
        if self.ctx is not None:
            self.ctx.set_var(name, value)

    def set_cookie(self, name: str, value: str) -> None:
        self.cookies[name] = value

    def set_report_coverage(self, cb: Callable[[Coverage], None]) -> None:
        self.report_coverage = cb

    def set_coverage_collector(self, collector: CoverageCollector) -> None:
        self.coverage_collector = collector

    def set_oas(self, source: OasSource) -> None:
        self.oas = source

    def set_repeats(self, count: int, stop_on_failure: bool = False, *resets: Any) -> None:
        if count < 1:
            raise DeclarationError(f"repeats must be >= 1, got {count}")
        self.repeats = RepeatConfig(count, stop_on_failure, tuple(resets))

    def set_logging(self, out: Optional[TextIO], err: Optional[TextIO]) -> None:
        self.out = out or self.out
        self.err = err or self.err

    def set_trace_timings(self) -> None:
        self.trace_timings = True

    def set_clock(self, clock: Callable[[], int]) -> None:
        self.clock = clock

    def set_cancel(self, event: threading.Event) -> None:
        self.cancel = event

    def set_db(self, name: str, conn: Any, args: Optional[DatabaseArgs] = None) -> None:
        self.dbs[name] = NamedDatabase(conn, args or DatabaseArgs())
        if self.ctx is not None:
            self.ctx.dbs[name] = self.dbs[name]

    def set_db_arg_markers(self, name: str, args: DatabaseArgs) -> None:
        if name not in self.dbs:
            raise DeclarationError(f"db name {name!r} not found")
        self.dbs[name].args = args

    def disable_reaper_shutdowns(self) -> None:
        self.reaper_shutdowns = False

    # ---- images ----

    def add_supporting_image(self, image: "SupportingImage") -> None:
        """Register a started image; duplicate names get -2, -3... suffixes"""
        taken = {img.name for img in self.images}
        if image.name in taken:
            base, n = image.name, 2
            while f"{base}-{n}" in taken:
                n += 1
            image.name = f"{base}-{n}"
        self.images.append(image)
        if self.ctx is not None:
            self.ctx.add_image(image)
        self.add_shutdown(image.name, image.shutdown)

    def add_shutdown(self, name: str, fn: Callable[[], Any]) -> None:
        self.shutdowns.append((name, fn))

    def get_image(self, name: str) -> Optional["SupportingImage"]:
        for img in self.images:
            if img.name == name:
                return img
        return None

    def resolve_env(self, s: str) -> str:
        return resolve_env(self, s)

    # ---- lifecycle ----

    def build_context(self) -> Context:
        if self.report_coverage is not None and self.coverage_collector is not None:
            raise DeclarationError("cannot use both ReportCoverage and CoverageCollector")
        collector = self.coverage_collector
        if collector is None and (self.report_coverage is not None or self.oas is not None):
            collector = Coverage()
        if collector is not None and self.oas is not None:
            collector.load_spec(self.oas)
        doer = self.http_do
        if doer is None:
            doer = HttpxDoer()
            self.add_shutdown("http-client", doer.close)
        ctx = Context(
            host=self.host,
            http_do=doer,
            coverage=collector,
            harness=self.harness or StandaloneHarness("suite", self.out, self.err),
            out=self.out,
            err=self.err,
            clock=self.clock,
            trace_timings=self.trace_timings,
            cancel=self.cancel,
        )
        ctx.vars.update(self.vars)
        ctx.default_cookies.update(self.cookies)
        ctx.dbs.update(self.dbs)
        self.ctx = ctx
        return ctx

    def run_shutdowns(self) -> None:
        if not self.reaper_shutdowns:
            logger.info(f"shutdowns disabled; leaving {len(self.shutdowns)} resource(s) running")
            return
        for name, fn in reversed(self.shutdowns):
            try:
                fn()
            except Exception as e:
                logger.error(f"shutdown of {name} failed: {e}", exc_info=True)
        self.shutdowns.clear()


# ==================== Env substitution ====================

_IMAGE_PROPS = ("host", "port", "mport", "username", "password")


def resolve_env(si: SuiteInit, s: str) -> str:
    """
    Substitute ``{$var}``, ``{$env:NAME}`` and ``{$img:name:prop}`` markers.
    ``\\{`` escapes a literal brace.
    """
    out: List[str] = []
    i = 0
    while i < len(s):
        c = s[i]
        if c == "\\" and i + 1 < len(s) and s[i + 1] == "{":
            out.append("{")
            i += 2
            continue
        if c == "{" and s.startswith("{$", i):
            end = s.find("}", i)
            if end < 0:
                raise ResolutionError(f"unterminated marker in {s!r}")
            out.append(_env_marker(si, s[i + 2:end]))
            i = end + 1
            continue
        out.append(c)
        i += 1
    return "".join(out)


def _env_marker(si: SuiteInit, marker: str) -> str:
    if marker.startswith("env:"):
        return os.environ.get(marker[4:], "")
    if marker.startswith("img:"):
        parts = marker.split(":")
        if len(parts) != 3 or parts[2] not in _IMAGE_PROPS:
            raise ResolutionError(f"invalid image marker {{${marker}}}")
        img = si.get_image(parts[1])
        if img is None:
            raise ResolutionError(f"unknown image {parts[1]!r}")
        prop = parts[2]
        if prop == "mport":
            return str(img.mapped_port)
        return str(getattr(img, prop))
    if marker not in si.vars:
        raise ResolutionError(f"unknown variable {marker!r}")
    v = si.vars[marker]
    return "" if v is None else str(v)


# ==================== Suite ====================

class Suite:
    """Top-level plan: endpoints and their run options"""

    def __init__(self, *endpoints: Endpoint, withs: Sequence[With] = ()):
        for ep in endpoints:
            if not isinstance(ep, Endpoint):
                raise DeclarationError(f"suite accepts endpoints, got {type(ep).__name__}")
        self.endpoints: Tuple[Endpoint, ...] = tuple(endpoints)
        self.withs: Tuple[With, ...] = tuple(withs)

    def init(self, *withs: Union[With, Sequence[With]]) -> "Suite":
        """A new suite with ``withs`` appended; later options override earlier ones"""
        flat: List[With] = []
        for w in withs:
            if isinstance(w, (list, tuple)):
                flat.extend(w)
            elif w is not None:
                flat.append(w)
        for w in flat:
            if not isinstance(w, With):
                raise DeclarationError(f"unsupported init option type {type(w).__name__}")
        return Suite(*self.endpoints, withs=self.withs + tuple(flat))

    def _initialise(self) -> SuiteInit:
        si = SuiteInit()
        for w in self.withs:
            if w.stage == Stage.INITIAL:
                w.init(si)
        si.build_context()
        for stage in (Stage.SUPPORTING, Stage.FINAL):
            for w in self.withs:
                if w.stage != stage:
                    continue
                try:
                    w.init(si)
                except Exception as e:
                    si.ctx.stop_listeners()
                    si.run_shutdowns()
                    if isinstance(e, ApiPlanError) and not isinstance(e, ImageError):
                        raise
                    raise ImageError(f"init of {type(w).__name__} failed: {e}", cause=e) from e
        return si

    def run(self) -> RunResult:
        """
        Initialise and run the plan. Declaration and init problems raise;
        test failures are reported and reflected in ``RunResult.failed``.
        """
        units = flatten(self.endpoints)
        si = self._initialise()
        ctx = si.ctx
        try:
            self._validate_hooks(ctx, units, si.repeats.resets)
        except ApiPlanError:
            ctx.stop_listeners()
            si.run_shutdowns()
            raise
        rc = si.repeats
        logger.info(f"🚀 suite starting: {len(units)} method(s), {len(si.images)} image(s), repeats={rc.count}")

        failed = False
        repeats_run = 0
        try:
            for r in range(1, rc.count + 1):
                if ctx.stopped:
                    break
                if rc.count > 1:
                    ctx.out.write(f">>> REPEAT {r}/{rc.count}\n")
                if r > 1 and not self._reset(si, ctx):
                    failed = True
                    break
                start = time.monotonic()
                ok = self._run_once(ctx)
                repeats_run += 1
                failed = failed or not ok
                if rc.count > 1:
                    status = "FAILED" if not ok else "FINISHED"
                    ctx.out.write(f"    {status} ({time.monotonic() - start:.2f}s)\n")
                if not ok and rc.stop_on_failure:
                    break
        finally:
            if si.cancel is None:
                ctx.cancel.set()
            ctx.stop_listeners()
            si.run_shutdowns()
            if si.harness is None:
                ctx.harness.end()

        if si.cancel is not None and si.cancel.is_set():
            logger.warning(f"⛔ suite cancelled after {repeats_run} repeat(s)")
            failed = True
        failed = failed or ctx.coverage.has_failures()
        if si.report_coverage is not None:
            si.report_coverage(ctx.coverage)
        logger.info(f"🏁 suite finished: {'FAILED' if failed else 'PASSED'} ({len(ctx.timings)} call(s))")
        return RunResult(
            failed=failed,
            coverage=ctx.coverage,
            timings=ctx.timings,
            traces=list(ctx.traces),
            repeats_run=repeats_run,
        )

    def _validate_hooks(self, ctx: Context, units: Sequence[ExecutionUnit], resets: Sequence[Any]) -> None:
        hooks: List[Hook] = [r for r in resets if isinstance(r, Hook)]
        pending = list(self.endpoints)
        while pending:
            ep = pending.pop()
            hooks.extend(ep.before + ep.after)
            pending.extend(ep.subs)
        for unit in units:
            hooks.extend(unit.method.before + unit.method.after)
        for h in hooks:
            h.validate(ctx)

    def _run_once(self, ctx: Context) -> bool:
        passed = True
        for ep in self.endpoints:
            if ctx.stopped:
                return False
            if not ctx.run(ep.url, ep.run):
                passed = False
        return passed

    def _reset(self, si: SuiteInit, ctx: Context) -> bool:
        """Restore the initial vars and run the resets; False after a fatal reset"""
        ctx.clear_vars()
        ctx.vars.update(si.vars)
        ctx.cookies.clear()
        ctx.json_cache.clear()
        for reset in si.repeats.resets:
            try:
                if isinstance(reset, Hook):
                    reset.execute(ctx)
                else:
                    reset(ctx)
            except ApiPlanError as e:
                ctx.report_failure(e)
            except FailNow:
                return False
        return True
