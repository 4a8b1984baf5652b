# apiplan/context.py
"""
Per-run context.

The Context is the scratchpad every hook, expectation and resolvable works
against: variables, cookies, databases, supporting images, listeners, the
current request/response, coverage and timings. Only the main run thread
mutates it; listener workers only touch their own buffers.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, TextIO

import httpx

from .coverage import CoverageCollector, NullCoverage
from .errors import ApiPlanError, ResolutionError, UnmetError
from .harness import FailNow, Harness
from .listeners import Listener
from .resolvables import TemplateString, resolve_template, resolve_value
from .timings import Timings

if TYPE_CHECKING:
    from .endpoint import ExecutionUnit
    from .expectations import Expectation
    from .http_driver import HttpDoer
    from .images import SupportingImage

logger = logging.getLogger(__name__)


# ==================== Databases ====================

class ArgStyle(str, Enum):
    """SQL argument marker styles"""
    POSITIONAL = "positional"  # ?, ?, ?
    NUMBERED = "numbered"  # $1, $2 / @p1, @p2
    NAMED = "named"  # :name


@dataclass
class DatabaseArgs:
    style: ArgStyle = ArgStyle.POSITIONAL
    prefix: str = ""
    base: int = 1

    def marker(self, index: int, name: str) -> str:
        if self.style == ArgStyle.NUMBERED:
            return f"{self.prefix or '$'}{self.base + index}"
        if self.style == ArgStyle.NAMED:
            return f"{self.prefix or ':'}{name}"
        return self.prefix or "?"


@dataclass
class NamedDatabase:
    """A DB-API 2.0 connection and the marker style its driver expects"""
    conn: Any
    args: DatabaseArgs = dataclasses.field(default_factory=DatabaseArgs)


class RawQuery(str):
    """A column value inserted as a sub-select rather than a bound argument"""


def _db_value(v: Any, ctx: "Context") -> Any:
    if dataclasses.is_dataclass(v) and not isinstance(v, type):
        return json.dumps(dataclasses.asdict(v))
    if isinstance(v, (dict, list, tuple)):
        return json.dumps(resolve_value(v, ctx))
    return resolve_value(v, ctx)


# ==================== Context ====================

class Context:
    """Mutable state for one suite run"""

    def __init__(
        self,
        host: str = "http://localhost:8080",
        http_do: Optional["HttpDoer"] = None,
        coverage: Optional[CoverageCollector] = None,
        harness: Optional[Harness] = None,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
        clock: Optional[Callable[[], int]] = None,
        trace_timings: bool = False,
        cancel: Optional[threading.Event] = None,
    ):
        self.host = host
        self.http_do = http_do
        self.coverage: CoverageCollector = coverage or NullCoverage()
        self.harness = harness
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self.clock: Callable[[], int] = clock or time.perf_counter_ns
        self.trace_timings = trace_timings

        self.vars: Dict[str, Any] = {}
        self.cookies: Dict[str, str] = {}
        self.default_cookies: Dict[str, str] = {}
        self.dbs: Dict[str, NamedDatabase] = {}
        self.images: Dict[str, "SupportingImage"] = {}
        self.listeners: Dict[str, Listener] = {}
        self.json_cache: Dict[str, Any] = {}
        self.timings = Timings()
        self.traces: List[Dict[str, Any]] = []
        self.cancel = cancel if cancel is not None else threading.Event()

        self.current_endpoint: Optional[str] = None
        self.current_unit: Optional["ExecutionUnit"] = None
        self.current_request: Optional[httpx.Request] = None
        self.current_response: Optional[httpx.Response] = None
        self.current_body: Any = None
        self.request_overrides: Any = None

        self.failed = False
        self._tests: List[Harness] = []

    # ==================== Variables ====================

    def get_var(self, name: str) -> Any:
        if name not in self.vars:
            raise ResolutionError(f"unknown variable {name!r}")
        return self.vars[name]

    def set_var(self, name: str, value: Any) -> None:
        self.vars[name] = value

    def clear_vars(self) -> None:
        self.vars.clear()

    def resolve(self, value: Any) -> Any:
        return resolve_value(value, self)

    def render(self, s: str) -> str:
        return resolve_template(TemplateString(s), self)

    # ==================== Images & listeners ====================

    def add_image(self, image: "SupportingImage") -> None:
        self.images[image.name] = image

    def get_image(self, name: str) -> Optional["SupportingImage"]:
        return self.images.get(name)

    def register_listener(self, name: str, listener: Listener) -> None:
        self.listeners[name] = listener

    def get_listener(self, name: str) -> Optional[Listener]:
        return self.listeners.get(name)

    def _listener(self, name: str) -> Listener:
        listener = self.listeners.get(name)
        if listener is None:
            raise ResolutionError(f"unknown listener {name!r}")
        return listener

    def events(self, name: str) -> List[Any]:
        return self._listener(name).events()

    def events_count(self, name: str) -> int:
        return self._listener(name).events_count()

    def stop_listeners(self) -> None:
        for name, listener in self.listeners.items():
            try:
                listener.stop()
            except Exception:
                logger.error(f"failed to stop listener {name}", exc_info=True)

    # ==================== Databases ====================

    def _named_db(self, name: str) -> NamedDatabase:
        if name in self.dbs:
            return self.dbs[name]
        if not name and len(self.dbs) == 1:
            return next(iter(self.dbs.values()))
        raise ResolutionError(f"db name {name!r} not found")

    def db(self, name: str = "") -> Any:
        return self._named_db(name).conn

    def db_args(self, name: str = "") -> DatabaseArgs:
        return self._named_db(name).args

    def db_insert(self, name: str, table: str, row: Dict[str, Any]) -> None:
        """INSERT one row; dict/list/dataclass values are stored as JSON text"""
        ndb = self._named_db(name)
        cols: List[str] = []
        markers: List[str] = []
        positional: List[Any] = []
        named: Dict[str, Any] = {}
        for col, v in row.items():
            cols.append(col)
            if isinstance(v, RawQuery):
                markers.append(f"({self.render(v)})")
                continue
            av = _db_value(v, self)
            markers.append(ndb.args.marker(len(positional), col))
            positional.append(av)
            named[col] = av
        sql = f"INSERT INTO {table} ({','.join(cols)}) VALUES ({','.join(markers)})"
        params = named if ndb.args.style == ArgStyle.NAMED else positional
        self._execute(ndb, sql, params)

    def db_exec(self, name: str, sql: str, *args: Any) -> None:
        ndb = self._named_db(name)
        self._execute(ndb, sql, [resolve_value(a, self) for a in args])

    def db_clear_table(self, name: str, table: str) -> None:
        self._execute(self._named_db(name), f"DELETE FROM {table}", [])

    def _execute(self, ndb: NamedDatabase, sql: str, params: Any) -> None:
        cur = ndb.conn.cursor()
        try:
            cur.execute(sql, params)
            commit = getattr(ndb.conn, "commit", None)
            if commit is not None:
                commit()
        finally:
            cur.close()

    # ==================== Current call ====================

    @property
    def current_url(self) -> str:
        if self.current_unit is not None:
            return self.current_unit.url
        return self.current_endpoint or ""

    @property
    def current_verb(self) -> str:
        return self.current_unit.verb if self.current_unit is not None else ""

    def set_current_unit(self, unit: Optional["ExecutionUnit"]) -> None:
        self.current_unit = unit
        self.current_request = None
        self.current_response = None
        self.current_body = None

    def store_cookie(self, name: str, value: str) -> None:
        self.cookies[name] = value

    def get_cookie(self, name: str) -> Optional[str]:
        return self.cookies.get(name)

    # ==================== Running & reporting ====================

    @property
    def stopped(self) -> bool:
        if self.cancel.is_set():
            return True
        return bool(getattr(self.harness, "stopped", False))

    def current_test(self) -> Optional[Harness]:
        if self._tests:
            return self._tests[-1]
        return self.harness

    def run(self, name: str, runnable: Any) -> bool:
        """
        Run ``runnable`` (an object with ``run(ctx)`` or a callable) as a named
        test. Returns True when it passed; failures propagate to the caller.
        """
        outer_failed = self.failed
        self.failed = False
        fn = getattr(runnable, "run", runnable)

        def body(t: Optional[Harness]) -> None:
            if t is not None:
                self._tests.append(t)
            try:
                fn(self)
            except FailNow:
                raise
            except ApiPlanError as e:
                self.report_failure(e)
            finally:
                if t is not None:
                    self._tests.pop()

        current = self.current_test()
        if current is not None:
            ran = current.run(name, body)
            if not ran and not self.failed and self.stopped:
                self.failed = True
        else:
            try:
                body(None)
            except FailNow:
                self.failed = True
        passed = not self.failed
        self.failed = outer_failed or self.failed
        return passed

    def report_failure(self, err: BaseException) -> None:
        self.failed = True
        self.coverage.report_failure(self.current_url, self.current_verb, self.current_request, err)
        logger.debug(f"❌ {self.current_verb} {self.current_url}: {err}")
        t = self.current_test()
        if t is not None:
            t.error(_test_format(err))

    def fatal(self, err: BaseException) -> None:
        """Report ``err`` and stop the whole run; never returns"""
        self.failed = True
        self.coverage.report_failure(self.current_url, self.current_verb, self.current_request, err)
        logger.warning(f"🛑 fatal in {self.current_verb} {self.current_url}: {err}")
        t = self.current_test()
        if t is not None:
            t.fatal(_test_format(err))
        raise FailNow(str(err))

    def report_unmet(self, exp: "Expectation", err: BaseException) -> None:
        self.coverage.report_unmet(self.current_url, self.current_verb, self.current_request, exp, err)
        self.failed = True
        t = self.current_test()
        if t is not None:
            t.error(_test_format(err))

    def report_met(self, exp: "Expectation") -> None:
        self.coverage.report_met(self.current_url, self.current_verb, self.current_request, exp)

    def report_skipped(self, exp: "Expectation") -> None:
        self.coverage.report_skipped(self.current_url, self.current_verb, self.current_request, exp)

    def log(self, msg: str) -> None:
        t = self.current_test()
        if t is not None:
            t.log(msg)
        else:
            logger.info(msg)


def _test_format(err: BaseException) -> str:
    if isinstance(err, (ApiPlanError, UnmetError)):
        return err.test_format()
    return str(err)
