# apiplan/__init__.py
"""
apiplan - declarative integration-test plans for HTTP APIs.

    from apiplan import Endpoint, Get, Post, Suite, options
    from apiplan.resolvables import JsonPath, Var

    Suite(
        Endpoint("/api", "Root",
            Endpoint("/todos", "Todos",
                Post("Create").request_body({"title": "x"}).assert_created().set_var("id", JsonPath("id")),
                Endpoint("/{id}", "Todo",
                    Get("Fetch").path_param(Var("id")).assert_ok(),
                ),
            ),
        ),
    ).init(options.ApiHost("localhost", 8080)).run()
"""

from . import options
from .auth import AuthScheme
from .context import ArgStyle, Context, DatabaseArgs
from .coverage import Coverage, CoverageCollector
from .endpoint import Delete, Endpoint, ExecutionUnit, Get, Head, Method, Options, Patch, Post, Put, flatten
from .errors import (
    ApiPlanError,
    CaptureError,
    DeclarationError,
    HookError,
    ImageError,
    ResolutionError,
    TransportError,
    UnmetError,
)
from .harness import AttachedHarness, Harness, StandaloneHarness
from .hooks import When
from .http_driver import Field, FileField, Multipart, UrlEncoded
from .suite import RunResult, Stage, Suite, SuiteInit, With

__all__ = [
    "options",
    "AuthScheme",
    "ArgStyle",
    "Context",
    "DatabaseArgs",
    "Coverage",
    "CoverageCollector",
    "Delete",
    "Endpoint",
    "ExecutionUnit",
    "Get",
    "Head",
    "Method",
    "Options",
    "Patch",
    "Post",
    "Put",
    "flatten",
    "ApiPlanError",
    "CaptureError",
    "DeclarationError",
    "HookError",
    "ImageError",
    "ResolutionError",
    "TransportError",
    "UnmetError",
    "AttachedHarness",
    "Harness",
    "StandaloneHarness",
    "When",
    "Field",
    "FileField",
    "Multipart",
    "UrlEncoded",
    "RunResult",
    "Stage",
    "Suite",
    "SuiteInit",
    "With",
]

__version__ = "0.1.0"
