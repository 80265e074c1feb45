from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple

from dealflow.storage.models import Account


class LockDecision(str, Enum):
    LOCKED = "locked"
    PROCEED = "proceed"


class LockoutPolicy:
    """Brute-force lockout applied before any password comparison.

    The failure counter is not reset when a lock elapses, so one more wrong
    password after the window relocks the account straight away.
    """

    def __init__(self, max_failures: int = 5, lock_minutes: int = 15) -> None:
        self.max_failures = max_failures
        self.lock_duration = timedelta(minutes=lock_minutes)

    def evaluate(self, account: Account, now: datetime) -> LockDecision:
        if account.is_locked(now):
            return LockDecision.LOCKED
        return LockDecision.PROCEED

    def register_failure(
        self, account: Account, now: datetime
    ) -> Tuple[int, Optional[datetime]]:
        attempts = account.failed_login_attempts + 1
        lock_until = account.lock_until
        if attempts >= self.max_failures:
            lock_until = now + self.lock_duration
        return attempts, lock_until

    def register_success(self, account: Account, now: datetime) -> Tuple[int, None]:
        return 0, None
