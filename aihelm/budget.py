"""Admission control for unauthenticated (demo) usage.

Tracks per-session and per-origin message counts in sliding windows and a
daily spend total that resets at UTC midnight. Every analyze request on the
demo path passes through ``can_send`` before any costed work is done.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional

_SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of an admission check.

    ``code`` is one of ``budget_exhausted``, ``session_limit`` or
    ``origin_limit`` when the request is denied.
    """

    allowed: bool
    remaining: int
    reason: Optional[str] = None
    code: Optional[str] = None


@dataclass(frozen=True)
class DemoLimits:
    max_per_session: int
    max_per_origin: int
    daily_budget_usd: float
    window_seconds: float


class DemoBudgetTracker:
    """Thread-safe demo admission controller.

    Checks run in a fixed order: daily budget, then the session window,
    then the origin window. A successful check counts against both windows.
    """

    def __init__(
        self,
        max_per_session: int = 10,
        max_per_origin: int = 30,
        daily_budget_usd: float = 2.0,
        window_seconds: float = 3600.0,
    ) -> None:
        self._max_per_session = max_per_session
        self._max_per_origin = max_per_origin
        self._daily_budget_usd = daily_budget_usd
        self._window_seconds = window_seconds

        self._sessions: Dict[str, Deque[float]] = {}
        self._origins: Dict[str, Deque[float]] = {}
        self._spent_today = 0.0
        self._day = int(time.time() // _SECONDS_PER_DAY)
        self._lock = threading.Lock()
        self._disposed = False

    def can_send(self, session_id: str, origin: str) -> AdmissionDecision:
        """Decide whether a demo request may proceed and count it if so.

        Args:
            session_id: The connection's session identifier.
            origin: The client network origin (IP address).

        Returns:
            An AdmissionDecision. ``remaining`` is the number of messages
            left in the session window after this one.
        """
        with self._lock:
            now = time.time()
            self._roll_day(now)

            if self._spent_today >= self._daily_budget_usd:
                return AdmissionDecision(
                    allowed=False,
                    remaining=0,
                    reason="The daily demo budget has been used up. "
                    "Add your own API keys or try again tomorrow.",
                    code="budget_exhausted",
                )

            session_window = self._window(self._sessions, session_id, now)
            if len(session_window) >= self._max_per_session:
                return AdmissionDecision(
                    allowed=False,
                    remaining=0,
                    reason="Session limit reached ({} messages per {} minutes).".format(
                        self._max_per_session, int(self._window_seconds // 60)
                    ),
                    code="session_limit",
                )

            origin_window = self._window(self._origins, origin, now)
            if len(origin_window) >= self._max_per_origin:
                return AdmissionDecision(
                    allowed=False,
                    remaining=0,
                    reason="Too many demo messages from your network ({} per {} minutes).".format(
                        self._max_per_origin, int(self._window_seconds // 60)
                    ),
                    code="origin_limit",
                )

            session_window.append(now)
            origin_window.append(now)
            return AdmissionDecision(
                allowed=True,
                remaining=self._max_per_session - len(session_window),
            )

    def record_cost(self, amount_usd: float) -> None:
        """Add the cost of a completed demo request to today's spend.

        Raises:
            ValueError: If ``amount_usd`` is negative.
        """
        if amount_usd < 0:
            raise ValueError("Cost must be non-negative, got {}".format(amount_usd))
        with self._lock:
            self._roll_day(time.time())
            self._spent_today += amount_usd

    def spent_today(self) -> float:
        with self._lock:
            self._roll_day(time.time())
            return self._spent_today

    def status(self, session_id: str, enabled: bool = True) -> Dict[str, object]:
        """Describe the demo allowance for a session without counting a use."""
        with self._lock:
            now = time.time()
            self._roll_day(now)
            used = len(self._window(self._sessions, session_id, now))
            exhausted = self._spent_today >= self._daily_budget_usd
            return {
                "enabled": enabled,
                "remainingMessages": 0 if exhausted else max(self._max_per_session - used, 0),
                "maxMessages": self._max_per_session,
                "budgetExhausted": exhausted,
            }

    def limits(self) -> DemoLimits:
        with self._lock:
            return DemoLimits(
                max_per_session=self._max_per_session,
                max_per_origin=self._max_per_origin,
                daily_budget_usd=self._daily_budget_usd,
                window_seconds=self._window_seconds,
            )

    def set_limits(
        self,
        max_per_session: Optional[int] = None,
        max_per_origin: Optional[int] = None,
        daily_budget_usd: Optional[float] = None,
    ) -> DemoLimits:
        """Update any subset of the limits. Existing windows are kept."""
        if max_per_session is not None and max_per_session < 1:
            raise ValueError("max_per_session must be at least 1")
        if max_per_origin is not None and max_per_origin < 1:
            raise ValueError("max_per_origin must be at least 1")
        if daily_budget_usd is not None and daily_budget_usd < 0:
            raise ValueError("daily_budget_usd must be non-negative")

        with self._lock:
            if max_per_session is not None:
                self._max_per_session = max_per_session
            if max_per_origin is not None:
                self._max_per_origin = max_per_origin
            if daily_budget_usd is not None:
                self._daily_budget_usd = daily_budget_usd
        return self.limits()

    def cleanup(self) -> int:
        """Drop expired timestamps and empty windows.

        Returns:
            The number of windows removed.
        """
        removed = 0
        with self._lock:
            now = time.time()
            self._roll_day(now)
            for windows in (self._sessions, self._origins):
                for key in list(windows):
                    self._prune(windows[key], now)
                    if not windows[key]:
                        del windows[key]
                        removed += 1
        return removed

    def dispose(self) -> None:
        """Release all tracked state. Safe to call more than once."""
        with self._lock:
            if self._disposed:
                return
            self._sessions.clear()
            self._origins.clear()
            self._disposed = True

    def _roll_day(self, now: float) -> None:
        day = int(now // _SECONDS_PER_DAY)
        if day != self._day:
            self._day = day
            self._spent_today = 0.0

    def _window(self, windows: Dict[str, Deque[float]], key: str, now: float) -> Deque[float]:
        window = windows.get(key)
        if window is None:
            window = deque()
            windows[key] = window
        self._prune(window, now)
        return window

    def _prune(self, window: Deque[float], now: float) -> None:
        cutoff = now - self._window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
