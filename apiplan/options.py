# apiplan/options.py
"""
Suite options.

Each option is a small With applied to the SuiteInit in declaration order,
so a later option overrides an earlier one:

    Suite(endpoints...).init(
        options.ApiHost("localhost", 8080),
        options.Var("tenant", "t1"),
        options.OAS(open("openapi.yaml", "rb")),
        options.Repeats(3, True),
    ).run()
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Optional, TextIO

from .config import Settings
from .context import ArgStyle, DatabaseArgs
from .coverage import Coverage, OasSource
from .coverage import CoverageCollector as _Collector
from .harness import AttachedHarness, Harness
from .http_driver import HttpDoer, HttpxDoer
from .suite import SuiteInit, With

logger = logging.getLogger(__name__)


class ApiHost(With):
    def __init__(self, host: str, port: Optional[int] = None, scheme: str = "http"):
        self.host = host
        self.port = port
        self.scheme = scheme

    def init(self, si: SuiteInit) -> None:
        si.set_api_host(self.host, self.port, self.scheme)


class HttpDo(With):
    """Replace the default httpx-based doer"""

    def __init__(self, doer: HttpDoer):
        self.doer = doer

    def init(self, si: SuiteInit) -> None:
        si.set_http_do(self.doer)


class Testing(With):
    """
    Attach to an external harness: a Harness instance, a
    ``unittest.TestCase`` or a pytest-subtests fixture.
    """

    def __init__(self, target: Any):
        self.target = target

    def init(self, si: SuiteInit) -> None:
        harness = self.target if isinstance(self.target, Harness) else AttachedHarness(self.target)
        si.set_harness(harness)


class Var(With):
    def __init__(self, name: str, value: Any):
        self.name = name
        self.value = value

    def init(self, si: SuiteInit) -> None:
        si.set_var(self.name, self.value)


class Cookie(With):
    """A cookie sent with every request"""

    def __init__(self, name: str, value: str):
        self.name = name
        self.value = value

    def init(self, si: SuiteInit) -> None:
        si.set_cookie(self.name, si.resolve_env(self.value))


class ReportCoverage(With):
    """``cb(coverage)`` is called once the run has finished"""

    def __init__(self, cb: Callable[[Coverage], None]):
        self.cb = cb

    def init(self, si: SuiteInit) -> None:
        si.set_report_coverage(self.cb)


class CoverageCollector(With):
    def __init__(self, collector: _Collector):
        self.collector = collector

    def init(self, si: SuiteInit) -> None:
        si.set_coverage_collector(self.collector)


class OAS(With):
    """OpenAPI document (path, str, bytes or readable stream; JSON or YAML)"""

    def __init__(self, source: OasSource):
        self.source = source

    def init(self, si: SuiteInit) -> None:
        si.set_oas(self.source)


class Repeats(With):
    """
    Run the whole plan ``count`` times. ``resets`` (hooks or ``fn(ctx)``)
    run before every repeat after the first.
    """

    def __init__(self, count: int, stop_on_failure: bool = False, *resets: Any):
        self.count = count
        self.stop_on_failure = stop_on_failure
        self.resets = resets

    def init(self, si: SuiteInit) -> None:
        si.set_repeats(self.count, self.stop_on_failure, *self.resets)


class Logging(With):
    def __init__(self, out: Optional[TextIO] = None, err: Optional[TextIO] = None):
        self.out = out
        self.err = err

    def init(self, si: SuiteInit) -> None:
        si.set_logging(self.out, self.err)


class TraceTimings(With):
    def init(self, si: SuiteInit) -> None:
        si.set_trace_timings()


class Clock(With):
    """Nanosecond clock used to time calls"""

    def __init__(self, clock: Callable[[], int]):
        self.clock = clock

    def init(self, si: SuiteInit) -> None:
        si.set_clock(self.clock)


class Cancel(With):
    """
    Cancel the run from another thread by setting ``event``. The run stops at
    the next wait, call or method; the suite never sets the event itself.
    """

    def __init__(self, event: threading.Event):
        self.event = event

    def init(self, si: SuiteInit) -> None:
        si.set_cancel(self.event)


class Database(With):
    """A named DB-API 2.0 connection for db hooks and Query resolvables"""

    def __init__(self, name: str, conn: Any, args: Optional[DatabaseArgs] = None):
        self.name = name
        self.conn = conn
        self.args = args

    def init(self, si: SuiteInit) -> None:
        si.set_db(self.name, self.conn, self.args)


class DatabaseArgMarkers(With):
    def __init__(self, name: str, style: ArgStyle = ArgStyle.POSITIONAL, prefix: str = "", base: int = 1):
        self.name = name
        self.args = DatabaseArgs(ArgStyle(style), prefix, base)

    def init(self, si: SuiteInit) -> None:
        si.set_db_arg_markers(self.name, self.args)


class DisableReaperShutdowns(With):
    """Leave supporting resources running after the suite"""

    def init(self, si: SuiteInit) -> None:
        si.disable_reaper_shutdowns()


class FromSettings(With):
    """Apply a Settings instance (env/.env driven by default)"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings

    def init(self, si: SuiteInit) -> None:
        s = self.settings or Settings()
        logging.getLogger("apiplan").setLevel(s.log_level.upper())
        si.set_api_host(s.host, s.port, s.scheme)
        if si.http_do is None:
            doer = HttpxDoer(timeout_s=s.timeout_s, verify_ssl=s.verify_ssl)
            si.set_http_do(doer)
            si.add_shutdown("http-client", doer.close)
        si.set_repeats(s.repeats, s.stop_on_failure)
        if s.trace_timings:
            si.set_trace_timings()
        if s.oas_path:
            si.set_oas(Path(s.oas_path))
        if s.disable_reaper_shutdowns:
            si.disable_reaper_shutdowns()
        logger.debug(f"settings applied: host={si.host} repeats={s.repeats}")
