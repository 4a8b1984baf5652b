# apiplan/images/pubsub.py
"""
Queue/topic machinery shared by the broker-style images.

An image with pub/sub support keeps one BufferedListener per destination it
was configured to listen on (``subscribers`` for topics, ``consumers`` for
queues). Hooks send and publish through the image's client; resolvables read
the per-destination counts and messages.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Dict, Optional, Protocol, Type

from ..errors import CaptureError, ResolutionError
from ..hooks import When
from ..listeners import BufferedListener, Listener, name_and_dest, register_listener, retention
from ..resolvables import resolve_value
from . import ImageHook, ImageResolvable, SupportingImage

if TYPE_CHECKING:
    from ..context import Context

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class PubSubClient(Protocol):
    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Start delivering topic messages to ``handler``; returns a closer"""

    def consume(self, queue: str, handler: Handler) -> Callable[[], None]:
        """Start delivering queue messages to ``handler``; returns a closer"""


@dataclass
class Receiver:
    """
    Listener options for one destination.

    ``max_messages`` of zero keeps no messages but still counts them.
    """
    max_messages: int = 0
    json_messages: bool = False
    unmarshaler: Optional[Callable[[Any], Any]] = None


class PubSubImage(SupportingImage):
    """Base for images that own topic subscribers and queue consumers"""

    listener_type: ClassVar[Type[BufferedListener]] = BufferedListener

    def __init__(self, subscribers: Optional[Dict[str, Receiver]] = None,
                 consumers: Optional[Dict[str, Receiver]] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.subscribers = dict(subscribers or {})
        self.consumers = dict(consumers or {})
        self.topic_listeners: Dict[str, BufferedListener] = {}
        self.queue_listeners: Dict[str, BufferedListener] = {}
        self.client: Any = None

    def new_listener(self, r: Receiver, max_messages: Optional[int]) -> BufferedListener:
        return self.listener_type(max_messages, r.json_messages, r.unmarshaler)

    def setup_listeners(self) -> None:
        for topic, r in self.subscribers.items():
            listener = self.new_listener(r, max(r.max_messages, 0))
            listener.closer = self.client.subscribe(topic, listener.receive)
            self.topic_listeners[topic] = listener
        for queue, r in self.consumers.items():
            listener = self.new_listener(r, max(r.max_messages, 0))
            listener.closer = self.client.consume(queue, listener.receive)
            self.queue_listeners[queue] = listener

    def stop_listeners(self) -> None:
        for listener in list(self.topic_listeners.values()) + list(self.queue_listeners.values()):
            listener.stop()

    def listeners(self) -> Dict[str, Listener]:
        out: Dict[str, Listener] = dict(self.topic_listeners)
        out.update(self.queue_listeners)
        return out

    def topic_listener(self, topic: str) -> BufferedListener:
        listener = self.topic_listeners.get(topic)
        if listener is None:
            raise ResolutionError(f"no listener for topic {topic!r}")
        return listener

    def queue_listener(self, queue: str) -> BufferedListener:
        listener = self.queue_listeners.get(queue)
        if listener is None:
            raise ResolutionError(f"no listener for queue {queue!r}")
        return listener


# ==================== Hooks ====================

class SendMessage(ImageHook):
    """Resolve ``message`` and send it to a queue"""

    def __init__(self, when: When, queue: str, message: Any, img_name: str = ""):
        super().__init__(when, f"SendMessage({queue!r})", img_name)
        self.queue = queue
        self.message = message

    def run(self, ctx: "Context") -> None:
        self.image(ctx).send(self.queue, resolve_value(self.message, ctx))


class PublishMessage(ImageHook):
    """Resolve ``message`` and publish it to a topic"""

    def __init__(self, when: When, topic: str, message: Any, img_name: str = ""):
        super().__init__(when, f"PublishMessage({topic!r})", img_name)
        self.topic = topic
        self.message = message

    def run(self, ctx: "Context") -> None:
        self.image(ctx).publish(self.topic, resolve_value(self.message, ctx))


class _ListenerHook(ImageHook):
    kind = ""

    def __init__(self, name: str, dest: str, options: Optional[Receiver] = None, img_name: str = ""):
        name, dest = name_and_dest(name, dest)
        super().__init__(When.BEFORE, f"{self.kind}Listener({dest!r})", img_name)
        self.listener_name = name
        self.dest = dest
        self.options = options or Receiver()

    @abstractmethod
    def _subscribe(self, img: Any, handler: Handler) -> Callable[[], None]:
        """Subscribe ``handler`` to the destination; returns the unsubscribe callable"""

    def run(self, ctx: "Context") -> None:
        img = self.image(ctx)
        if not isinstance(img, PubSubImage):
            raise CaptureError(f"image {img.name!r} has no listeners", self.name, frame=self.frame)

        def factory() -> Listener:
            listener = img.new_listener(self.options, retention(self.options.max_messages))
            listener.closer = self._subscribe(img, listener.receive)
            return listener

        register_listener(ctx, self.listener_name, img.listener_type, factory)


class TopicListener(_ListenerHook):
    """
    Before hook registering a listener on a topic under ``name``; an existing
    listener with that name is cleared rather than re-subscribed.
    """
    kind = "Topic"

    def _subscribe(self, img: Any, handler: Handler) -> Callable[[], None]:
        return img.client.subscribe(self.dest, handler)


class QueueListener(_ListenerHook):
    """Before hook registering a listener on a queue under ``name``"""
    kind = "Queue"

    def _subscribe(self, img: Any, handler: Handler) -> Callable[[], None]:
        return img.client.consume(self.dest, handler)


# ==================== Resolvables ====================

class ReceivedQueueMessages(ImageResolvable):
    """Count of messages received on a queue the image consumes"""

    def __init__(self, queue: str, img_name: str = ""):
        super().__init__(f"ReceivedQueueMessages({queue!r})", img_name)
        self.queue = queue

    def resolve(self, ctx: "Context") -> Any:
        return self.image(ctx).queue_listener(self.queue).received()


class ReceivedQueueMessage(ImageResolvable):
    """A retained queue message by index (negative counts from the newest)"""

    def __init__(self, queue: str, index: int, img_name: str = ""):
        super().__init__(f"ReceivedQueueMessage({queue!r}, {index})", img_name)
        self.queue = queue
        self.index = index

    def resolve(self, ctx: "Context") -> Any:
        return self.image(ctx).queue_listener(self.queue).received_message(self.index)


class ReceivedTopicMessages(ImageResolvable):
    def __init__(self, topic: str, img_name: str = ""):
        super().__init__(f"ReceivedTopicMessages({topic!r})", img_name)
        self.topic = topic

    def resolve(self, ctx: "Context") -> Any:
        return self.image(ctx).topic_listener(self.topic).received()


class ReceivedTopicMessage(ImageResolvable):
    def __init__(self, topic: str, index: int, img_name: str = ""):
        super().__init__(f"ReceivedTopicMessage({topic!r}, {index})", img_name)
        self.topic = topic
        self.index = index

    def resolve(self, ctx: "Context") -> Any:
        return self.image(ctx).topic_listener(self.topic).received_message(self.index)
