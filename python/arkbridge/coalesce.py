"""Latest-wins work slots and re-armable debounce timers.

``CoalescingSlot`` holds at most one pending intent. Submitting overwrites
the pending intent, and one worker drains the slot sequentially, so a
burst of submissions while work is running collapses into a single
follow-up run for the most recent intent.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Generic, Optional, TypeVar

from .rpc import RequestCancelled, RequestSuperseded


logger = logging.getLogger(__name__)

T = TypeVar("T")

Spawn = Callable[[Callable[[], None], str], None]


def spawn_thread(target: Callable[[], None], name: str) -> None:
    threading.Thread(target=target, name=name, daemon=True).start()


class _Entry(Generic[T]):
    __slots__ = ("intent", "future", "claimed")

    def __init__(self, intent: T) -> None:
        self.intent = intent
        self.future: Future = Future()
        self.claimed = False


class CoalescingSlot(Generic[T]):
    """Single pending-intent slot with a sequential worker.

    Args:
        work: called with each intent on the worker; its return value
            resolves the submitter's future.
        supersede_in_flight: when True, a new submission also rejects the
            intent that is currently running and calls ``on_supersede`` with
            it, so the work function can abandon its wait.
        on_result: called with ``(intent, result)`` for every run whose
            future this slot resolved. Superseded runs are never reported.
        spawn: starts the worker; defaults to a daemon thread.
    """

    def __init__(
        self,
        work: Callable[[T], Any],
        *,
        name: str = "arkbridge-slot",
        supersede_in_flight: bool = False,
        on_supersede: Optional[Callable[[T], None]] = None,
        on_result: Optional[Callable[[T, Any], None]] = None,
        on_error: Optional[Callable[[T, BaseException], None]] = None,
        spawn: Optional[Spawn] = None,
    ) -> None:
        self._work = work
        self.name = name
        self.supersede_in_flight = supersede_in_flight
        self._on_supersede = on_supersede
        self._on_result = on_result
        self._on_error = on_error
        self._spawn = spawn or spawn_thread
        self._lock = threading.Lock()
        self._pending: Optional[_Entry[T]] = None
        self._in_flight: Optional[_Entry[T]] = None
        self._worker_active = False
        self._closed = False
        self.runs = 0

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._worker_active

    @property
    def pending_intent(self) -> Optional[T]:
        with self._lock:
            return self._pending.intent if self._pending else None

    def submit(self, intent: T) -> Future:
        entry: _Entry[T] = _Entry(intent)
        with self._lock:
            if self._closed:
                entry.claimed = True
                entry.future.set_exception(RequestCancelled(f"{self.name} is closed"))
                return entry.future
            replaced = self._pending
            self._pending = entry
            running = self._in_flight if self.supersede_in_flight else None
            start = not self._worker_active
            if start:
                self._worker_active = True
        if replaced is not None:
            self._reject(replaced, RequestSuperseded(f"{self.name}: replaced before it ran"))
        if running is not None and self._reject(running, RequestSuperseded(f"{self.name}: superseded")):
            logger.debug("%s: superseded in-flight intent", self.name)
            if self._on_supersede is not None:
                try:
                    self._on_supersede(running.intent)
                except Exception:
                    logger.exception("%s: supersede hook failed", self.name)
        if start:
            self._spawn(self._drain, self.name)
        return entry.future

    def clear_pending(self) -> Optional[T]:
        """Drop the pending intent (if any) without running it."""
        with self._lock:
            entry = self._pending
            self._pending = None
        if entry is None:
            return None
        self._reject(entry, RequestSuperseded(f"{self.name}: pending intent cleared"))
        return entry.intent

    def close(self, exc: Optional[BaseException] = None) -> None:
        """Reject pending and running intents; later submissions fail."""
        error = exc or RequestCancelled(f"{self.name} is closed")
        with self._lock:
            self._closed = True
            pending, running = self._pending, self._in_flight
            self._pending = None
        if pending is not None:
            self._reject(pending, error)
        if running is not None and self._reject(running, error) and self._on_supersede is not None:
            try:
                self._on_supersede(running.intent)
            except Exception:
                logger.exception("%s: supersede hook failed", self.name)

    def _drain(self) -> None:
        while True:
            with self._lock:
                entry = self._pending
                if entry is None or self._closed:
                    self._worker_active = False
                    self._in_flight = None
                    return
                self._pending = None
                self._in_flight = entry
            self._run(entry)
            with self._lock:
                self._in_flight = None

    def _run(self, entry: _Entry[T]) -> None:
        if entry.future.done():
            return
        self.runs += 1
        try:
            result = self._work(entry.intent)
        except Exception as exc:
            if self._reject(entry, exc):
                logger.debug("%s: work failed: %s", self.name, exc)
                if self._on_error is not None:
                    try:
                        self._on_error(entry.intent, exc)
                    except Exception:
                        logger.exception("%s: error hook failed", self.name)
            return
        if not self._resolve(entry, result):
            logger.debug("%s: dropping result of superseded intent", self.name)
            return
        if self._on_result is not None:
            try:
                self._on_result(entry.intent, result)
            except Exception:
                logger.exception("%s: result hook failed", self.name)

    def _claim(self, entry: _Entry[T]) -> bool:
        with self._lock:
            if entry.claimed:
                return False
            entry.claimed = True
        return entry.future.set_running_or_notify_cancel()

    def _resolve(self, entry: _Entry[T], result: Any) -> bool:
        if not self._claim(entry):
            return False
        entry.future.set_result(result)
        return True

    def _reject(self, entry: _Entry[T], exc: BaseException) -> bool:
        if not self._claim(entry):
            return False
        entry.future.set_exception(exc)
        return True


class Debouncer:
    """Run ``callback`` once a burst of ``trigger`` calls has gone quiet.

    Every trigger re-arms the timer and replaces the arguments, so only the
    last call within a quiet window reaches the callback.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[..., Any],
        *,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.delay = delay
        self._callback = callback
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer = None
        self._generation = 0
        self._args: tuple = ()

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def trigger(self, *args: Any) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._args = args
            timer = self._timer_factory(self.delay, self._fire, args=(self._generation,))
            timer.daemon = True
            self._timer = timer
        timer.start()

    def fire_now(self, *args: Any) -> None:
        self.cancel()
        self._callback(*args)

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._generation += 1

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            args = self._args
        try:
            self._callback(*args)
        except Exception:
            logger.exception("debounced callback failed")
