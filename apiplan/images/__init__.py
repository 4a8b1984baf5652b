# apiplan/images/__init__.py
"""
Supporting images.

A supporting image is a named external service (broker, cache, document
store) the API under test depends on. The suite starts it during init,
registers it in the context and shuts it down at the end. Concrete clients
are provided through ``client_factory``; the adapters only speak to small
client protocols.
"""

from __future__ import annotations

import logging
import threading
from abc import abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Optional, Type

from ..errors import ResolutionError
from ..hooks import Hook, When, image_from_context
from ..listeners import Listener
from ..resolvables import Resolvable
from ..suite import Stage, SuiteInit, With

if TYPE_CHECKING:
    from ..context import Context

logger = logging.getLogger(__name__)


class SupportingImage(With):
    """Lifecycle and connection details of one supporting service"""

    canonical_name: ClassVar[str] = "image"
    default_port: ClassVar[int] = 0

    def __init__(
        self,
        name: str = "",
        host: str = "localhost",
        port: Optional[int] = None,
        mapped_port: Optional[int] = None,
        username: str = "",
        password: str = "",
        stage: Stage = Stage.SUPPORTING,
        leave_running: bool = False,
    ):
        self.name = name or self.canonical_name
        self.host = host
        self.port = port or self.default_port
        self.mapped_port = mapped_port or self.port
        self.username = username
        self.password = password
        self.stage = stage
        self.leave_running = leave_running
        self.is_docker = False
        self.started = False
        self.cancel: Optional[threading.Event] = None

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def shutdown(self) -> None:
        ...

    def listeners(self) -> Dict[str, Listener]:
        """Listeners set up by the image's own options, keyed by destination"""
        return {}

    def init(self, si: SuiteInit) -> None:
        logger.info(f"🐳 starting image {self.name} ({type(self).__name__})")
        self.cancel = si.ctx.cancel
        self.start()
        self.started = True
        si.add_supporting_image(self)
        for dest, listener in self.listeners().items():
            si.ctx.register_listener(dest, listener)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.host}:{self.mapped_port})"


class ImageHook(Hook):
    """A hook that acts on a supporting image found by name"""

    image_type: ClassVar[Type[SupportingImage]] = SupportingImage

    def __init__(self, when: When, name: str, img_name: str = ""):
        super().__init__(when, name)
        self.img_name = img_name

    def image(self, ctx: "Context") -> Any:
        return image_from_context(ctx, self.image_type, [self.img_name], self.image_type.canonical_name)

    def validate(self, ctx: "Context") -> None:
        self.image(ctx)


class ImageResolvable(Resolvable):
    """A resolvable read from a supporting image found by name"""

    image_type: ClassVar[Type[SupportingImage]] = SupportingImage

    def __init__(self, label: str, img_name: str = ""):
        self.label = label
        self.img_name = img_name

    def image(self, ctx: "Context") -> Any:
        name = self.img_name or self.image_type.canonical_name
        img = ctx.get_image(name)
        if not isinstance(img, self.image_type):
            raise ResolutionError(f"{self.label}: image {name!r} not found")
        return img

    def __str__(self) -> str:
        return self.label
