"""
Observable streams used by the engine to publish state to callers.

Classes:
    ObservableValue: Latest-value stream (new observers receive the current value)
    EventStream: Plain event stream (observers only see events emitted after
        they subscribe)

Both are thread-safe. Observers are called on the publishing thread, in the
order values were published. A blocked observer delays later publications
on the same stream.
"""

import logging
import threading
import time
from typing import Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class _ObserverList(Generic[T]):
    """Shared observer bookkeeping."""

    def __init__(self, name: str):
        self.name = name
        self._observers: List[Callable[[T], None]] = []
        self._observer_lock = threading.Lock()

    def add_observer(self, callback: Callable[[T], None]) -> None:
        with self._observer_lock:
            if callback not in self._observers:
                self._observers.append(callback)

    def remove_observer(self, callback: Callable[[T], None]) -> None:
        """No-op if the callback is not registered."""
        with self._observer_lock:
            if callback in self._observers:
                self._observers.remove(callback)

    def _notify(self, value: T) -> None:
        with self._observer_lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(value)
            except Exception as e:
                logger.error(f"Observer {observer!r} of '{self.name}' raised: {e}", exc_info=True)


class ObservableValue(_ObserverList[T]):
    """
    Latest-value stream.

    Example:
        >>> status = ObservableValue("connection_status", initial=None)
        >>> status.add_observer(lambda value: print(value))
        None
        >>> status.set(42)
        42
    """

    def __init__(self, name: str, initial: Optional[T] = None):
        super().__init__(name)
        self._value = initial
        self._condition = threading.Condition()
        # Serializes publication so observers see values in set() order
        self._publish_lock = threading.RLock()

    @property
    def value(self) -> T:
        with self._condition:
            return self._value

    def set(self, value: T) -> None:
        """Replace the current value and notify all observers."""
        with self._publish_lock:
            with self._condition:
                self._value = value
                self._condition.notify_all()
            self._notify(value)

    def add_observer(self, callback: Callable[[T], None], replay: bool = True) -> None:
        """
        Register a callback.

        Args:
            callback: Function called with each new value
            replay: If True, the callback is immediately called with the
                current value
        """
        with self._publish_lock:
            super().add_observer(callback)
            if replay:
                current = self.value
                try:
                    callback(current)
                except Exception as e:
                    logger.error(f"Observer {callback!r} of '{self.name}' raised: {e}",
                                 exc_info=True)

    def wait_for(self, predicate: Callable[[T], bool], timeout: Optional[float] = None) -> bool:
        """
        Block until the current value satisfies ``predicate``.

        Returns:
            True if the predicate was satisfied, False on timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while not predicate(self._value):
                if deadline is None:
                    self._condition.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(remaining)
            return True


class EventStream(_ObserverList[T]):
    """Event stream without replay."""

    def __init__(self, name: str):
        super().__init__(name)
        self._publish_lock = threading.RLock()

    def subscribe(self, callback: Callable[[T], None]) -> None:
        self.add_observer(callback)

    def unsubscribe(self, callback: Callable[[T], None]) -> None:
        self.remove_observer(callback)

    def emit(self, event: T) -> None:
        with self._publish_lock:
            self._notify(event)
