from __future__ import annotations

import threading
import time


class DeadlineExceededError(TimeoutError):
    """The call ran out of time or was cancelled. Means "cannot decide", never "denied"."""


class Deadline:
    def __init__(self, expires_at: float | None = None) -> None:
        self.expires_at = expires_at
        self._cancelled = threading.Event()

    @classmethod
    def after(cls, seconds: float | None) -> Deadline:
        if seconds is None or seconds <= 0:
            return cls()
        return cls(time.monotonic() + seconds)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def check(self, stage: str) -> None:
        if self.cancelled:
            raise DeadlineExceededError(f"cancelled before {stage}")
        if self.expires_at is not None and time.monotonic() >= self.expires_at:
            raise DeadlineExceededError(f"deadline exceeded before {stage}")
