"""Hand-off of callbacks to the thread that owns the player."""

import threading
from typing import Callable, Protocol


class Dispatcher(Protocol):
    """Schedules ``fn(*args)`` on the owning (UI) thread."""

    def call_soon(self, fn: Callable, *args) -> None:
        ...


class ImmediateDispatcher:
    """Runs callbacks on the calling thread. Used headless and in tests."""

    def call_soon(self, fn: Callable, *args) -> None:
        fn(*args)


def run_in_thread(fn: Callable[[], None]) -> None:
    """Default background runner: a daemon thread per job."""
    threading.Thread(target=fn, daemon=True).start()
