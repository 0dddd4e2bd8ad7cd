from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from procureflow.config import settings
from procureflow.models import ProcurementDocumentStatus as Status

SETTLED_AFTER_EXTRACTION = frozenset(status for status in Status if status != Status.UPLOADED)


@dataclass(frozen=True)
class PollPolicy:
    """Fixed-interval poll schedule with a hard attempt ceiling."""

    interval_seconds: int = 5
    max_attempts: int = 60

    @classmethod
    def from_settings(cls) -> PollPolicy:
        return cls(interval_seconds=settings.poll_interval_seconds, max_attempts=settings.poll_max_attempts)

    @property
    def timeout_seconds(self) -> int:
        return self.interval_seconds * self.max_attempts

    def next_delay(self, attempt: int) -> int | None:
        """Seconds to wait before poll number ``attempt + 1``; None once the ceiling is reached."""
        if attempt < 0:
            attempt = 0
        if attempt >= self.max_attempts:
            return None
        return self.interval_seconds


@dataclass(frozen=True)
class PollOutcome:
    status: Status
    attempts: int
    settled: bool

    @property
    def check_later(self) -> bool:
        return not self.settled


def is_settled(status: Status) -> bool:
    return status in SETTLED_AFTER_EXTRACTION


def wait_for_extraction(
    fetch_status: Callable[[], Status],
    policy: PollPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> PollOutcome:
    policy = policy or PollPolicy.from_settings()
    attempts = 0
    status = fetch_status()
    attempts += 1
    while not is_settled(status):
        delay = policy.next_delay(attempts)
        if delay is None:
            return PollOutcome(status=status, attempts=attempts, settled=False)
        sleep(delay)
        status = fetch_status()
        attempts += 1
    return PollOutcome(status=status, attempts=attempts, settled=True)
