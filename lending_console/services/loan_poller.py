from __future__ import annotations

import logging
import os
import threading
from typing import Any, Callable

from services.lending_api import LendingApiError, SessionExpiredError


DEFAULT_POLL_INTERVAL_SECONDS = 30.0

POLLER_LOGGER = logging.getLogger("lending_console.poller")


def get_poll_interval_seconds() -> float:
    raw = (os.environ.get("LOAN_POLL_INTERVAL_SECONDS") or "").strip()
    try:
        value = float(raw) if raw else DEFAULT_POLL_INTERVAL_SECONDS
    except ValueError:
        return DEFAULT_POLL_INTERVAL_SECONDS
    return value if value > 0 else DEFAULT_POLL_INTERVAL_SECONDS


class LoanPoller:
    """Periodic loan refresh that can be cancelled.

    Every fetch takes a new generation number. A result is handed to
    ``on_result`` only while its generation is still the newest and the poller
    has not been stopped, so a slow response never overwrites a newer one and
    nothing is delivered after teardown.
    """

    def __init__(
        self,
        fetch: Callable[[], Any],
        on_result: Callable[[Any], None],
        *,
        interval_seconds: float | None = None,
        on_error: Callable[[Exception], None] | None = None,
        on_session_expired: Callable[[SessionExpiredError], None] | None = None,
    ):
        self._fetch = fetch
        self._on_result = on_result
        self._on_error = on_error
        self._on_session_expired = on_session_expired
        self.interval_seconds = interval_seconds if interval_seconds is not None else get_poll_interval_seconds()
        self._lock = threading.Lock()
        self._generation = 0
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def _next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation and not self._stopped.is_set()

    def poll_once(self) -> bool:
        if self._stopped.is_set():
            return False
        generation = self._next_generation()
        try:
            result = self._fetch()
        except SessionExpiredError as exc:
            POLLER_LOGGER.warning("Loan polling stopped: %s", exc)
            self.stop(wait=False)
            if self._on_session_expired:
                self._on_session_expired(exc)
            return False
        except LendingApiError as exc:
            if not self._is_current(generation):
                return False
            POLLER_LOGGER.warning("Loan poll failed generation=%s error=%s", generation, exc)
            if self._on_error:
                self._on_error(exc)
            return False

        if not self._is_current(generation):
            POLLER_LOGGER.debug("Discarding superseded loan poll generation=%s", generation)
            return False
        self._on_result(result)
        return True

    def _run(self) -> None:
        self.poll_once()
        while not self._stopped.wait(self.interval_seconds):
            self.poll_once()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Loan poller already started")
        self._thread = threading.Thread(target=self._run, name="loan-poller", daemon=True)
        self._thread.start()

    def stop(self, wait: bool = True) -> None:
        with self._lock:
            self._stopped.set()
            self._generation += 1
        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval_seconds)
