# apiplan/framing.py
"""
Declaration-site frames.

Every builder in the package captures a Frame so that failures point back at
the user's declaration rather than at library internals.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Optional

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))


@dataclass(frozen=True)
class Frame:
    """Source location of a declared operation"""
    file: str
    line: int
    name: str
    module: str = ""

    @classmethod
    def here(cls, skip: int = 0) -> Optional["Frame"]:
        """
        Capture the first frame outside the apiplan package.

        ``skip`` drops additional user frames (for helpers that wrap builders).
        """
        try:
            f = sys._getframe(1)
        except ValueError:
            return None
        while f is not None and _is_internal(f.f_code.co_filename):
            f = f.f_back
        while f is not None and skip > 0:
            f = f.f_back
            skip -= 1
        if f is None:
            return None
        return cls(
            file=f.f_code.co_filename,
            line=f.f_lineno,
            name=f.f_code.co_name,
            module=f.f_globals.get("__name__", ""),
        )

    def __str__(self) -> str:
        return f"{self.file}:{self.line}"


def _is_internal(filename: str) -> bool:
    return os.path.abspath(filename).startswith(_PACKAGE_DIR + os.sep)
