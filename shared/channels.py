import logging
import threading
from typing import Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNSET = object()


class Channel(Generic[T]):
    """
    In-process notification channel carrying values of one type.

    Handlers run synchronously on the publishing thread. Consumers that would
    rather block than register a callback can use wait().
    """

    def __init__(self, name: str):
        self.name = name
        self._handlers: Dict[int, Callable[[T], None]] = {}
        self._next_token = 0
        self._latest = _UNSET
        self._sequence = 0
        self._condition = threading.Condition()

    def subscribe(self, handler: Callable[[T], None]) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it again."""
        with self._condition:
            token = self._next_token
            self._next_token += 1
            self._handlers[token] = handler

        def unsubscribe():
            with self._condition:
                self._handlers.pop(token, None)

        return unsubscribe

    def publish(self, value: T):
        with self._condition:
            self._latest = value
            self._sequence += 1
            handlers = list(self._handlers.values())
            self._condition.notify_all()

        for handler in handlers:
            try:
                handler(value)
            except Exception as e:
                logger.error(f"Error in {self.name} handler: {e}")

    @property
    def latest(self) -> Optional[T]:
        return None if self._latest is _UNSET else self._latest

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def wait(self, timeout: float = None) -> Optional[T]:
        """Block until the next publish and return its value (None on timeout)."""
        with self._condition:
            start = self._sequence
            published = self._condition.wait_for(lambda: self._sequence != start, timeout)
            if not published:
                return None
            return self._latest
