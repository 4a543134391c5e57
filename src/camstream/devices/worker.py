"""Single-threaded FIFO callback queue, one per physical device.

Every driver call and completion handler for a device runs on its queue,
so callbacks for the same device are strictly ordered and never
concurrent. Handlers are expected not to block for long; follow-up work
is posted back onto the same queue.

An exception escaping a task is logged and the queue keeps running.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable
from typing import Any

from camstream.observability import get_logger

logger = get_logger(__name__)

__all__ = ["CallbackQueue"]

_STOP = object()


class CallbackQueue:
    """Dedicated worker thread executing posted callables in order.

    Example:
        callbacks = CallbackQueue("back")
        callbacks.start()
        callbacks.post(session.on_opened)
        ...
        callbacks.stop(timeout=1.5)
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: queue.Queue[Any] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._accepting = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"CallbackQueue({self.name!r}, running={self.is_running})"

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def is_current(self) -> bool:
        """True when called from this queue's worker thread."""
        return self._thread is not None and threading.current_thread() is self._thread

    def start(self) -> None:
        """Start the worker thread. No-op if already running."""
        with self._lock:
            if self.is_running:
                return
            self._accepting = True
            self._thread = threading.Thread(
                target=self._run, name=f"callbacks-{self.name}", daemon=True
            )
            self._thread.start()

    def post(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """Enqueue ``fn(*args, **kwargs)``.

        Returns:
            False when the queue is stopping and the task was not accepted.
        """
        if not self._accepting:
            logger.debug(
                "Callback dropped after stop",
                queue=self.name,
                task=getattr(fn, "__qualname__", repr(fn)),
            )
            return False
        self._queue.put((fn, args, kwargs))
        return True

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every task posted before this call has run.

        Returns:
            True if the queue drained within ``timeout``.
        """
        if self.is_current():
            raise RuntimeError("flush() called from the queue's own thread")
        done = threading.Event()
        if not self.post(done.set):
            return not self.is_running
        return done.wait(timeout)

    def stop(self, timeout: float | None = None) -> bool:
        """Run the already-posted tasks, then stop the worker.

        Returns:
            True if the worker exited within ``timeout``.
        """
        with self._lock:
            if self._thread is None:
                return True
            self._accepting = False
            self._queue.put(_STOP)
            thread = self._thread
        if thread is threading.current_thread():
            return False
        thread.join(timeout)
        stopped = not thread.is_alive()
        if not stopped:
            logger.warning("Callback queue did not stop in time", queue=self.name)
        return stopped

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            fn, args, kwargs = item
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception(
                    "Unhandled error in device callback",
                    queue=self.name,
                    task=getattr(fn, "__qualname__", repr(fn)),
                )
        logger.debug("Callback queue stopped", queue=self.name)
