import threading
import time
from typing import Callable, Protocol


def now_ms() -> int:
    return int(time.time() * 1000)


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class ThreadingScheduler:
    """Runs a callback once after a delay on a daemon timer thread."""

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> Cancellable:
        timer = threading.Timer(delay_seconds, callback)
        timer.daemon = True
        timer.start()
        return timer
