"""
request_tracker.py
------------------
MamaCare - Maternal Health Dashboard - Request Tracker / Loading Coordinator
----------------------------------------------------------------------------
Single source of truth for "is any EMR / LLM call outstanding" and "what was
the most recent error". Every outbound call made by the dashboard is wrapped
in begin_call() / end_call() (or the track() context manager) so independent
call sites share one loading signal and one error banner.

The tracker is a constructed object, not module state: the app builds one at
startup and hands it to the OpenMRS client and the advisory generator.

Invariant:
    The loading flag delivered to every subscriber equals
    ``len(in_flight) > 0``. Each id returned by begin_call() is removed at
    most once; repeated or unknown end_call() ids are ignored.

Notifications fire only on transitions (empty -> non-empty, non-empty ->
empty). Error observers receive the failure message on a failed call and
``None`` on a successful one, which clears any banner still on screen.

This is not a scheduler: calls are not throttled, ordered, deduplicated or
retried.

Key classes:
    - RequestTracker: begin_call, end_call, subscribe, track, clear_error
    - LoadingStatus: observer that keeps the latest loading flag and error

Project: MamaCare - Maternal Health Dashboard
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional, Set

logger = logging.getLogger(__name__)

LoadingCallback = Callable[[bool], None]
ErrorCallback = Callable[[Optional[str]], None]

# Message used when a failing call carries no text of its own.
DEFAULT_ERROR_MESSAGE = "Failed to fetch data from OpenMRS"


def error_message_for(exc: BaseException) -> str:
    """Return a human-readable message for *exc*, never an empty string."""
    message = str(exc).strip()
    return message or DEFAULT_ERROR_MESSAGE


class RequestTracker:
    """
    Aggregates concurrently issued calls into one loading flag and one error signal.

    Args:
        prefix: Prefix for generated request ids (e.g. ``"openmrs"``).
        loading_callbacks: Initial loading observers (injected, optional).
        error_callbacks:   Initial error observers (injected, optional).
    """

    def __init__(
        self,
        prefix: str = "openmrs",
        loading_callbacks: Optional[List[LoadingCallback]] = None,
        error_callbacks: Optional[List[ErrorCallback]] = None,
    ) -> None:
        self.prefix = prefix
        self._counter = itertools.count(1)
        self._in_flight: Set[str] = set()
        self._loading_callbacks: List[LoadingCallback] = list(loading_callbacks or [])
        self._error_callbacks: List[ErrorCallback] = list(error_callbacks or [])
        # Re-entrant so an observer may start another call from its callback.
        self._lock = threading.RLock()

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def is_loading(self) -> bool:
        with self._lock:
            return bool(self._in_flight)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    # ── Call lifecycle ───────────────────────────────────────────────────────

    def begin_call(self) -> str:
        """
        Register a new outbound call and return its request id.

        Notifies loading observers with ``True`` when this is the first call
        in flight.
        """
        with self._lock:
            request_id = f"{self.prefix}-{int(time.time() * 1000)}-{next(self._counter)}"
            was_idle = not self._in_flight
            self._in_flight.add(request_id)
            logger.debug("RequestTracker: begin %s (in_flight=%d)", request_id, len(self._in_flight))
            if was_idle:
                self._notify_loading(True)
        return request_id

    def end_call(self, request_id: str, error: Optional[str] = None) -> None:
        """
        Mark *request_id* as finished.

        Args:
            request_id: Id returned by begin_call().
            error:      Failure message, or None when the call succeeded.

        Unknown or already-ended ids are ignored so the in-flight count can
        never go negative and other outstanding calls keep loading=True.
        """
        with self._lock:
            if request_id not in self._in_flight:
                logger.warning("RequestTracker: end_call for unknown or finished id %s ignored", request_id)
                return
            self._in_flight.discard(request_id)
            logger.debug("RequestTracker: end %s (in_flight=%d)", request_id, len(self._in_flight))
            if not self._in_flight:
                self._notify_loading(False)
            if error is not None:
                self._notify_error(error or DEFAULT_ERROR_MESSAGE)
            else:
                self._notify_error(None)

    @asynccontextmanager
    async def track(self, label: str = "") -> AsyncIterator[str]:
        """
        Async context manager wrapping one outbound call.

        Ends the call on every exit path, including cancellation, and reports
        the exception message to error observers before re-raising it.

        Usage::

            async with tracker.track("visits") as request_id:
                resp = await http.get(url)
        """
        request_id = self.begin_call()
        if label:
            logger.debug("RequestTracker: %s started as %s", label, request_id)
        try:
            yield request_id
        except BaseException as exc:
            self.end_call(request_id, error=error_message_for(exc))
            raise
        else:
            self.end_call(request_id)

    def clear_error(self) -> None:
        """Tell error observers the banner was dismissed."""
        with self._lock:
            self._notify_error(None)

    # ── Subscriptions ────────────────────────────────────────────────────────

    def subscribe(
        self,
        on_loading_change: LoadingCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Callable[[], None]:
        """
        Register observers and return a callable that deregisters them.

        Multiple subscribers are supported; each one is notified on every
        transition. Calling the returned function twice is harmless.
        """
        with self._lock:
            self._loading_callbacks.append(on_loading_change)
            if on_error is not None:
                self._error_callbacks.append(on_error)
        subscribed = True

        def unsubscribe() -> None:
            nonlocal subscribed
            with self._lock:
                if not subscribed:
                    return
                subscribed = False
                self._loading_callbacks.remove(on_loading_change)
                if on_error is not None:
                    self._error_callbacks.remove(on_error)

        return unsubscribe

    # ── Notification ─────────────────────────────────────────────────────────

    def _notify_loading(self, loading: bool) -> None:
        for callback in list(self._loading_callbacks):
            try:
                callback(loading)
            except Exception:
                logger.exception("RequestTracker: error in loading callback")

    def _notify_error(self, message: Optional[str]) -> None:
        for callback in list(self._error_callbacks):
            try:
                callback(message)
            except Exception:
                logger.exception("RequestTracker: error in error callback")


class LoadingStatus:
    """
    Observer that mirrors the tracker into a readable loading/error state.

    The loading flag follows the tracker. The error stays set until a later
    call succeeds or clear_error() is called; a loading change never clears it.
    """

    def __init__(self, tracker: RequestTracker) -> None:
        self._tracker = tracker
        self.is_loading: bool = tracker.is_loading
        self.error: Optional[str] = None
        self._unsubscribe = tracker.subscribe(self._on_loading, self._on_error)

    def _on_loading(self, loading: bool) -> None:
        self.is_loading = loading

    def _on_error(self, message: Optional[str]) -> None:
        self.error = message or None

    def clear_error(self) -> None:
        self.error = None

    def close(self) -> None:
        self._unsubscribe()

    def as_dict(self) -> dict:
        return {
            "loading": self.is_loading,
            "error": self.error,
            "in_flight": self._tracker.in_flight,
        }
