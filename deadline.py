import time
from typing import Optional


class DeadlineExceeded(Exception):
    """Raised by any blocking operation once the request deadline has passed."""

    def __init__(self, operation: str):
        super().__init__(f"{operation}: context deadline exceeded")
        self.operation = operation


class Deadline:
    """
    Absolute per-request deadline, threaded explicitly through every stage.

    Blocking calls ask for their budget with :meth:`remaining` (subprocesses)
    or :meth:`bound` (HTTP calls with their own per-call cap).
    """

    def __init__(self, seconds: float, clock=time.monotonic):
        self._clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, operation: str) -> None:
        if self.expired:
            raise DeadlineExceeded(operation)

    def bound(self, per_call: Optional[float]) -> float:
        rem = self.remaining()
        if per_call is None:
            return rem
        return min(float(per_call), rem)
