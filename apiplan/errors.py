# apiplan/errors.py
"""
Exception hierarchy and failure records.

Declaration, resolution, transport, hook and image errors are raised.
UnmetError and CaptureError are also exceptions, but the run loop records them
as failures instead of letting them escape.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, List, Optional

from .framing import Frame


class ApiPlanError(Exception):
    """Base for every error raised by apiplan"""

    def __init__(self, msg: str, cause: Optional[BaseException] = None, frame: Optional[Frame] = None):
        super().__init__(msg)
        self.msg = msg
        self.cause = cause
        self.frame = frame
        if cause is not None:
            self.__cause__ = cause

    @property
    def name(self) -> str:
        return type(self).__name__

    def test_format(self) -> str:
        lines = [self.msg]
        if self.cause is not None:
            lines.append(f"\tCause:    \t{self.cause}")
        if self.frame is not None:
            lines.append(f"\tFrame:    \t{self.frame}")
        return "\n".join(lines)


class DeclarationError(ApiPlanError):
    """Malformed declaration tree or invalid option combination"""


class ResolutionError(ApiPlanError):
    """A value could not be resolved against the context"""


class TransportError(ApiPlanError):
    """The HTTP doer failed to produce a response"""


class ImageError(ApiPlanError):
    """A supporting image failed to initialise"""


class HookError(ApiPlanError):
    """A before/after hook failed"""


# ==================== Operand rendering ====================

@dataclass
class OperandValue:
    """An operand as declared, as resolved, and as coerced for comparison"""
    original: Any = None
    resolved: Any = None
    coerced: Any = None
    coercion_error: Optional[BaseException] = None

    def test_format(self) -> str:
        rt = self.resolved
        if rt is None:
            out = _plain(self.original) if not _is_resolvable(self.original) else "null"
        elif isinstance(rt, str):
            out = json.dumps(rt)
        else:
            out = f"{type(rt).__name__}({rt!r})"
        if _is_resolvable(self.original):
            out += f" << {self.original}"
        if self.coercion_error is not None:
            out += f"\n\t          \tCoercion error: {self.coercion_error}"
        return out


def _is_resolvable(v: Any) -> bool:
    return callable(getattr(v, "resolve", None))


def _plain(v: Any) -> str:
    return "null" if v is None else str(v)


# ==================== Recorded failures ====================

class UnmetError(ApiPlanError):
    """An expectation (assert or require) that was not met"""

    def __init__(
        self,
        msg: str,
        name: str = "",
        expected: Optional[OperandValue] = None,
        actual: Optional[OperandValue] = None,
        comparator: str = "",
        left: Optional[OperandValue] = None,
        right: Optional[OperandValue] = None,
        cause: Optional[BaseException] = None,
        frame: Optional[Frame] = None,
    ):
        super().__init__(msg, cause=cause, frame=frame)
        self._name = name
        self.expected = expected or OperandValue()
        self.actual = actual or OperandValue()
        self.comparator = comparator
        self.left = left or OperandValue()
        self.right = right or OperandValue()

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_comparator(self) -> bool:
        return bool(self.comparator)

    def test_format(self) -> str:
        lines = [self.msg]
        if self.is_comparator:
            lines.append(f"\tLeft:     \t{self.left.test_format()}")
            lines.append(f"\tRight:    \t{self.right.test_format()}")
        else:
            lines.append(f"\tExpected: \t{self.expected.test_format()}")
            lines.append(f"\tActual:   \t{self.actual.test_format()}")
        if self.cause is not None:
            lines.append(f"\tCause:    \t{self.cause}")
        if self.frame is not None:
            lines.append(f"\tFrame:    \t{self.frame}")
        return "\n".join(lines)


class CaptureError(HookError):
    """Failure raised from inside a hook"""

    def __init__(
        self,
        msg: str,
        name: str = "",
        cause: Optional[BaseException] = None,
        frame: Optional[Frame] = None,
        values: Optional[List[OperandValue]] = None,
    ):
        super().__init__(msg or str(cause), cause=cause, frame=frame)
        self._name = name
        self.values = list(values or [])

    @property
    def name(self) -> str:
        return self._name

    def test_format(self) -> str:
        lines = [self.msg]
        for ov in self.values:
            if _is_resolvable(ov.original):
                lines.append(f"\tValue:    \t{ov.original}")
            else:
                lines.append(f"\tValue:    \t{type(ov.original).__name__}({ov.original!r})")
        if self.cause is not None:
            lines.append(f"\tCause:    \t{self.cause}")
        if self.frame is not None:
            lines.append(f"\tFrame:    \t{self.frame}")
        return "\n".join(lines)


def wrap_capture_error(cause: BaseException, hook: Any, msg: str = "", *values: OperandValue) -> CaptureError:
    """Wrap an arbitrary exception raised while running ``hook``"""
    if isinstance(cause, CaptureError):
        return cause
    return CaptureError(
        msg or str(cause),
        name=getattr(hook, "name", type(hook).__name__),
        cause=cause,
        frame=getattr(hook, "frame", None),
        values=list(values),
    )
