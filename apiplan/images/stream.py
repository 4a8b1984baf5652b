# apiplan/images/stream.py
"""
Kafka-style event stream image (canonical name ``kafka``).

Stream consumers are pull based, so every listener is fed by a PollingWorker
thread calling ``consumer.poll(timeout_s)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Protocol

from ..errors import ResolutionError
from ..hooks import When, stringify_message
from ..listeners import BufferedListener, Listener, PollingWorker, name_and_dest, register_listener, retention
from ..resolvables import resolve_value
from . import ImageHook, ImageResolvable, SupportingImage

if TYPE_CHECKING:
    from ..context import Context

logger = logging.getLogger(__name__)


@dataclass
class Message:
    topic: str
    key: Optional[str]
    value: Any
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def body(self) -> Any:
        return self.value


class StreamConsumer(Protocol):
    def poll(self, timeout_s: float) -> Optional[Message]:
        ...

    def close(self) -> None:
        ...


class StreamClient(Protocol):
    def publish(self, topic: str, key: Optional[str], value: str) -> None:
        ...

    def consumer(self, topic: str) -> StreamConsumer:
        ...

    def close(self) -> None:
        ...


@dataclass
class Subscriber:
    max_messages: int = 0
    json_messages: bool = False
    unmarshaler: Optional[Callable[[Any], Any]] = None
    mark: str = ""  # reserved: consumer group / offset marker


@dataclass
class StreamOptions:
    client_factory: Callable[["StreamImage"], StreamClient]
    subscribers: Dict[str, Subscriber] = field(default_factory=dict)
    poll_interval_s: float = 0.1
    leave_running: bool = False


class StreamListener(BufferedListener):
    pass


class StreamImage(SupportingImage):
    canonical_name = "kafka"
    default_port = 9092

    def __init__(self, options: StreamOptions, name: str = "", host: str = "localhost",
                 port: Optional[int] = None, mapped_port: Optional[int] = None):
        super().__init__(name=name, host=host, port=port, mapped_port=mapped_port,
                         leave_running=options.leave_running)
        self.options = options
        self.client: Any = None
        self.topic_listeners: Dict[str, StreamListener] = {}

    def start(self) -> None:
        self.client = self.options.client_factory(self)
        for topic, sub in self.options.subscribers.items():
            self.topic_listeners[topic] = self.new_listener(topic, sub, max(sub.max_messages, 0))

    def new_listener(self, topic: str, sub: Subscriber, max_messages: Optional[int]) -> StreamListener:
        consumer = self.client.consumer(topic)
        listener = StreamListener(max_messages, sub.json_messages, sub.unmarshaler)
        worker = PollingWorker(listener, consumer.poll, interval_s=self.options.poll_interval_s,
                               name=f"{self.name}-{topic}", cancel=self.cancel).start()

        def close() -> None:
            worker.stop()
            consumer.close()

        listener.closer = close
        return listener

    def shutdown(self) -> None:
        for listener in self.topic_listeners.values():
            listener.stop()
        if self.client is not None and not self.leave_running:
            self.client.close()

    def listeners(self) -> Dict[str, Listener]:
        return dict(self.topic_listeners)

    def topic_listener(self, topic: str) -> StreamListener:
        listener = self.topic_listeners.get(topic)
        if listener is None:
            raise ResolutionError(f"no listener for topic {topic!r}")
        return listener

    def publish(self, topic: str, key: Optional[str], value: Any) -> None:
        self.client.publish(topic, key, stringify_message(value))


# ==================== Hooks ====================

class Publish(ImageHook):
    image_type = StreamImage

    def __init__(self, when: When, topic: str, key: Any, value: Any, img_name: str = ""):
        super().__init__(when, f"Publish({topic!r})", img_name)
        self.topic = topic
        self.key = key
        self.value = value

    def run(self, ctx: "Context") -> None:
        key = resolve_value(self.key, ctx)
        self.image(ctx).publish(self.topic, None if key is None else str(key), resolve_value(self.value, ctx))


class TopicListener(ImageHook):
    """Before hook registering a polling listener on a topic under ``name``"""
    image_type = StreamImage

    def __init__(self, name: str, topic: str, options: Optional[Subscriber] = None, img_name: str = ""):
        name, topic = name_and_dest(name, topic)
        super().__init__(When.BEFORE, f"TopicListener({topic!r})", img_name)
        self.listener_name = name
        self.topic = topic
        self.options = options or Subscriber()

    def run(self, ctx: "Context") -> None:
        img = self.image(ctx)
        register_listener(
            ctx, self.listener_name, StreamListener,
            lambda: img.new_listener(self.topic, self.options, retention(self.options.max_messages)),
        )


# ==================== Resolvables ====================

class ReceivedMessages(ImageResolvable):
    image_type = StreamImage

    def __init__(self, topic: str, img_name: str = ""):
        super().__init__(f"ReceivedMessages({topic!r})", img_name)
        self.topic = topic

    def resolve(self, ctx: "Context") -> Any:
        return self.image(ctx).topic_listener(self.topic).received()


class ReceivedMessage(ImageResolvable):
    """A retained message by index; the message value when not unmarshaled"""
    image_type = StreamImage

    def __init__(self, topic: str, index: int, img_name: str = ""):
        super().__init__(f"ReceivedMessage({topic!r}, {index})", img_name)
        self.topic = topic
        self.index = index

    def resolve(self, ctx: "Context") -> Any:
        msg = self.image(ctx).topic_listener(self.topic).received_message(self.index)
        return msg.value if isinstance(msg, Message) else msg
