import threading
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class DebouncedValue(Generic[T]):
    """
    Holds a rapidly-changing value and publishes a delayed copy of it.

    The debounced copy only changes after the raw value has been stable for
    `delay_ms`. Every `set` supersedes the pending emission; a superseded
    timer never publishes, even if it already fired and is waiting on the lock.
    """

    def __init__(
        self,
        initial: T,
        delay_ms: int = 300,
        on_emit: Callable[[T], None] | None = None,
    ):
        self.delay_ms = max(0, int(delay_ms))
        self.on_emit = on_emit
        self._value = initial
        self._debounced = initial
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._token = 0

    @property
    def value(self) -> T:
        return self._value

    @property
    def debounced(self) -> T:
        return self._debounced

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def set(self, value: T) -> None:
        with self._lock:
            self._value = value
            self._cancel_locked()
            self._token += 1
            token = self._token
            if self.delay_ms > 0:
                timer = threading.Timer(self.delay_ms / 1000.0, self._fire, args=(token,))
                timer.daemon = True
                self._timer = timer
                timer.start()
                return
        self._fire(token)

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()
            self._token += 1

    def flush(self) -> None:
        with self._lock:
            if self._timer is None:
                return
            self._cancel_locked()
            self._token += 1
            token = self._token
        self._fire(token)

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, token: int) -> None:
        with self._lock:
            if token != self._token:
                return
            self._timer = None
            value = self._value
            self._debounced = value
            callback = self.on_emit
        if callback is not None:
            callback(value)
