# apiplan/harness.py
"""
Test-harness adapters.

StandaloneHarness prints go-test style hierarchical lines:

    === RUN   suite/api/GET
        test_api.py:12: expected status code 200 "OK"
    --- FAIL: suite/api/GET (0.01s)

AttachedHarness maps each run onto an external unit-test harness's nested-test
primitive (``unittest.TestCase.subTest`` or the pytest-subtests fixture).
"""

from __future__ import annotations

import os
import sys
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, TextIO

from .framing import Frame


class FailNow(Exception):
    """Raised by ``fatal`` to abandon the current test body"""


class Harness(ABC):
    """Minimal nested test primitive used by the run loop"""

    @abstractmethod
    def run(self, name: str, fn: Callable[["Harness"], None]) -> bool:
        """Run ``fn`` as a named child test; True when it passed"""

    @abstractmethod
    def log(self, msg: str) -> None:
        ...

    @abstractmethod
    def fail(self) -> None:
        ...

    @abstractmethod
    def failed(self) -> bool:
        ...

    def error(self, msg: str) -> None:
        """Log and mark failed; the test body continues"""
        self.log(msg)
        self.fail()

    @abstractmethod
    def fatal(self, msg: str) -> None:
        """Log, mark failed and stop"""

    def end(self) -> None:
        """Called once when the suite is done with this harness"""


def _format_duration(seconds: float) -> str:
    return f"{seconds:.2f}s"


class StandaloneHarness(Harness):
    """Writes RUN / PASS / FAIL lines to out/err"""

    def __init__(
        self,
        name: str = "",
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
        frame: Optional[Frame] = None,
        parent: Optional["StandaloneHarness"] = None,
    ):
        self.parent = parent
        self.frame = frame or Frame.here()
        self.name = name or (self.frame.name if self.frame else "suite")
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self._failed = False
        self.stopped = False
        self.duration = 0.0
        self._start = time.monotonic()
        self._lock = threading.Lock()
        if parent is None:
            self._log_start()

    def display_name(self) -> str:
        if self.parent is not None:
            return f"{self.parent.display_name()}/{self.name}"
        return self.name

    def run(self, name: str, fn: Callable[[Harness], None]) -> bool:
        if self.stopped:
            return False
        child = StandaloneHarness(name, self.out, self.err, self.frame, parent=self)
        child._log_start()
        child._start = time.monotonic()
        try:
            fn(child)
        except FailNow:
            pass
        child.duration = time.monotonic() - child._start
        child._log_end()
        return not child.failed()

    def end(self) -> None:
        if self.parent is None:
            self.duration = time.monotonic() - self._start
            self._log_end()

    def fail(self) -> None:
        if self.parent is not None:
            self.parent.fail()
        with self._lock:
            self._failed = True

    def failed(self) -> bool:
        with self._lock:
            return self._failed

    def fail_now(self) -> None:
        if self.parent is not None:
            self.parent.fail_now()
        with self._lock:
            self._failed = True
            self.stopped = True

    def fatal(self, msg: str) -> None:
        self.log(msg)
        self.fail_now()
        raise FailNow(msg)

    def log(self, msg: str) -> None:
        lines = str(msg).split("\n")
        where = ""
        if self.frame is not None:
            where = f"{os.path.basename(self.frame.file)}:{self.frame.line}: "
        self.out.write(f"    {where}{lines[0]}\n")
        for line in lines[1:]:
            if line:
                self.out.write(f"        {line}\n")

    def exit_code(self) -> int:
        return 1 if self.failed() else 0

    def _log_start(self) -> None:
        self.out.write(f"=== RUN   {self.display_name()}\n")

    def _log_end(self) -> None:
        if self._failed:
            self.err.write(f"\n--- FAIL: {self.display_name()} ({_format_duration(self.duration)})\n")
        else:
            self.out.write(f"--- PASS: {self.display_name()} ({_format_duration(self.duration)})\n")


class AttachedHarness(Harness):
    """
    Drives an external harness.

    ``target`` is a ``unittest.TestCase`` (uses ``subTest``) or a pytest-subtests
    fixture (uses ``test``). Errors are collected and raised as one failure at
    the end of the sub-test; ``fatal`` fails immediately.
    """

    def __init__(self, target: Any, parent: Optional["AttachedHarness"] = None):
        self.target = target
        self.parent = parent
        self.messages: List[str] = []
        self._failed = False
        self.failure_exception = getattr(target, "failureException", AssertionError)

    def _subtest(self, name: str):
        if hasattr(self.target, "subTest"):
            return self.target.subTest(msg=name)
        return self.target.test(msg=name)

    def run(self, name: str, fn: Callable[[Harness], None]) -> bool:
        child = AttachedHarness(self.target, parent=self)
        with self._subtest(name):
            try:
                fn(child)
            except FailNow as e:
                raise self.failure_exception(str(e)) from None
            if child.messages and child.failed():
                raise self.failure_exception("\n".join(child.messages))
        return not child.failed()

    def log(self, msg: str) -> None:
        self.messages.append(str(msg))

    def fail(self) -> None:
        self._failed = True
        if self.parent is not None:
            self.parent.fail()

    def failed(self) -> bool:
        return self._failed

    def fatal(self, msg: str) -> None:
        self.log(msg)
        self.fail()
        raise FailNow("\n".join(self.messages))
