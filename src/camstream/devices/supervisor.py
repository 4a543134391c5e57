"""Connection supervisor: bounded retry with backoff and escalation.

Every connection attempt for a stream key (a facing, or a transfer kind
such as "photo") goes through the supervisor. Consecutive transient
failures are counted in a RetryState; after ``max_attempts`` of them a
single TerminalFailure event is published and RetryExhaustedError is
raised to the caller. A successful connect resets the count.

Fatal errors (invalid target, and anything else derived from
FatalStreamError) are never retried.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass

from camstream.devices.events import (
    EventChannel,
    ReconnectScheduled,
    StreamConnected,
    TerminalFailure,
)
from camstream.devices.stream import Clock, SystemClock
from camstream.errors import (
    FatalStreamError,
    RetryExhaustedError,
    StreamError,
    TransientStreamError,
)
from camstream.observability import LogContext, StreamStats, get_logger
from camstream.transport import Connection

logger = get_logger(__name__)

__all__ = [
    "ConnectionFactory",
    "ConnectionSupervisor",
    "RetryPolicy",
    "RetryState",
]

ConnectionFactory = Callable[[str, int, str], Connection]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How often and how patiently to retry.

    Attributes:
        max_attempts: Consecutive failures tolerated before giving up.
        backoff_s: Wait after the first failure.
        backoff_increment_s: Added to the wait after every further failure
            (0 gives a fixed backoff).
    """

    max_attempts: int = 3
    backoff_s: float = 2.0
    backoff_increment_s: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_s < 0 or self.backoff_increment_s < 0:
            raise ValueError("backoff must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Backoff after failed attempt number ``attempt`` (1-based).

        Example:
            >>> RetryPolicy(backoff_s=2.0, backoff_increment_s=1.0).delay_for(3)
            4.0
        """
        return self.backoff_s + max(0, attempt - 1) * self.backoff_increment_s


@dataclass
class RetryState:
    """Failure count of one connection-establishment episode."""

    policy: RetryPolicy
    attempt_count: int = 0
    terminal_emitted: bool = False

    @property
    def max_attempts(self) -> int:
        return self.policy.max_attempts

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.policy.max_attempts

    def record_failure(self) -> bool:
        """Count a failure; return True once the bound is reached."""
        self.attempt_count += 1
        return self.exhausted

    def next_delay(self) -> float:
        return self.policy.delay_for(self.attempt_count)

    def claim_terminal(self) -> bool:
        """True exactly once per episode: the caller publishes the event."""
        if self.terminal_emitted:
            return False
        self.terminal_emitted = True
        return True

    def reset(self) -> None:
        self.attempt_count = 0
        self.terminal_emitted = False


class ConnectionSupervisor:
    """Owns retry decisions for every stream of a service.

    Example:
        supervisor = ConnectionSupervisor(RetryPolicy(), events, factory)
        conn = supervisor.establish("back", "192.168.1.20", 12345)
    """

    def __init__(
        self,
        policy: RetryPolicy,
        events: EventChannel,
        connection_factory: ConnectionFactory,
        *,
        clock: Clock | None = None,
        stats: StreamStats | None = None,
    ) -> None:
        self.policy = policy
        self._events = events
        self._connection_factory = connection_factory
        self._clock = clock or SystemClock()
        self._stats = stats
        self._states: dict[str, RetryState] = {}
        self._lock = threading.Lock()

    def retry_state(self, key: str) -> RetryState:
        """The RetryState for ``key``, created on first use."""
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = RetryState(self.policy)
            return state

    def reset(self, key: str | None = None) -> None:
        """Start a fresh episode for ``key``, or for every key."""
        with self._lock:
            states = list(self._states.values()) if key is None else []
            if key is not None and key in self._states:
                states = [self._states[key]]
        for state in states:
            state.reset()

    def record_failure(self, key: str, error: StreamError) -> bool:
        """Count a failure for ``key``.

        On the failure that reaches the bound, publishes TerminalFailure
        (once per episode).

        Returns:
            True when retries are exhausted.
        """
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = RetryState(self.policy)
            exhausted = state.record_failure()
            emit = exhausted and state.claim_terminal()
            attempts = state.attempt_count

        if emit:
            logger.error(
                "Retry attempts exhausted",
                stream=key,
                attempts=attempts,
                error=str(error),
            )
            self._events.publish(
                TerminalFailure(facing=key, attempts=attempts, error=str(error))
            )
        return exhausted

    def establish(self, key: str, host: str, port: int) -> Connection:
        """Connect to ``host:port``, retrying transient failures.

        Blocks for connect timeouts and backoff sleeps; call it from a
        worker thread (see ``connect_async``).

        Returns:
            A connected Connection.

        Raises:
            FatalStreamError: Not retryable (e.g. InvalidTargetError).
            RetryExhaustedError: ``max_attempts`` consecutive failures.
        """
        state = self.retry_state(key)
        with self._lock:
            if state.exhausted:
                # A previous episode gave up; this call starts a new one.
                state.reset()
        with LogContext(stream=key, host=host, port=port):
            while True:
                conn = self._connection_factory(host, port, key)
                try:
                    conn.connect()
                except FatalStreamError:
                    conn.close()
                    raise
                except TransientStreamError as e:
                    conn.close()
                    if self.record_failure(key, e):
                        raise RetryExhaustedError(
                            f"Could not connect to {host}:{port} after "
                            f"{state.attempt_count} attempts: {e}",
                            attempts=state.attempt_count,
                        ) from e
                    delay = state.next_delay()
                    logger.warning(
                        "Connect failed, retrying",
                        attempt=state.attempt_count,
                        max_attempts=state.max_attempts,
                        delay_s=delay,
                        error=str(e),
                    )
                    if self._stats is not None:
                        self._stats.record_reconnect(key)
                    self._events.publish(
                        ReconnectScheduled(
                            facing=key,
                            attempt=state.attempt_count,
                            max_attempts=state.max_attempts,
                            delay_s=delay,
                        )
                    )
                    self._clock.sleep(delay)
                    continue

                state.reset()
                self._events.publish(StreamConnected(facing=key, host=host, port=port))
                return conn

    def connect_async(
        self,
        key: str,
        host: str,
        port: int,
        on_connected: Callable[[Connection], None],
        on_error: Callable[[StreamError], None],
    ) -> threading.Thread:
        """Run ``establish`` on a short-lived thread.

        Exactly one of ``on_connected`` / ``on_error`` is called, on that
        thread.
        """

        def run() -> None:
            try:
                conn = self.establish(key, host, port)
            except StreamError as e:
                on_error(e)
                return
            on_connected(conn)

        thread = threading.Thread(target=run, name=f"connect-{key}", daemon=True)
        thread.start()
        return thread
