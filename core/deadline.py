import time
from typing import Optional

from core.errors import Timeout


class Deadline:
    """Absolute point in time by which a request must finish.

    Passed from the HTTP layer down to every suspension point (database
    commit, gateway HTTP call). Exceeding it raises ``Timeout``.
    """

    def __init__(self, seconds: Optional[float] = None):
        self.expires_at = None if seconds is None else time.monotonic() + seconds

    @classmethod
    def none(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def check(self, what: str = "operation") -> None:
        if self.expired():
            raise Timeout(f"Deadline exceeded during {what}")

    def clamp(self, timeout: float) -> float:
        """Shrink an I/O timeout so it never outlives the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)
