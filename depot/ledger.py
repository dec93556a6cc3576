"""
QuotaLedger - Per-user storage accounting.

Counters are changed only through the store's atomic increment/decrement,
never by reading a value and writing it back.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .exceptions import QuotaExceeded

WARNING_THRESHOLDS = (90, 80)


def format_bytes(bytes_val: Optional[float]) -> str:
    """Format bytes as human-readable string."""
    if bytes_val is None:
        return "unknown"
    for unit in ['B', 'KB', 'MB', 'GB']:
        if abs(bytes_val) < 1024:
            return f"{bytes_val:.1f} {unit}"
        bytes_val /= 1024
    return f"{bytes_val:.1f} TB"


@dataclass(frozen=True)
class LedgerUsage:
    """Snapshot of a user's storage counters."""
    user_id: str
    quota: int
    used: int

    @property
    def remaining(self) -> int:
        return max(self.quota - self.used, 0)

    @property
    def percent_used(self) -> float:
        if self.quota <= 0:
            return 100.0
        return (self.used / self.quota) * 100

    def to_dict(self) -> dict:
        return {
            'user_id': self.user_id,
            'quota': self.quota,
            'used': self.used,
            'remaining': self.remaining,
            'percent_used': round(self.percent_used, 1),
        }


class QuotaLedger:
    """
    Credits and debits per-user storage usage.
    """

    def __init__(self, store, logger: Optional[logging.Logger] = None):
        """
        Initialize ledger.

        Args:
            store: MySqlStore or MemoryStore
            logger: Optional logger instance
        """
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def credit(self, user_id: str, nbytes: int) -> None:
        """Charge nbytes to a user's storage usage."""
        if nbytes < 0:
            raise ValueError("credit amount must not be negative")
        if nbytes == 0:
            return
        before = self._used(user_id)
        if not self.store.increment_storage_used(user_id, nbytes):
            self.logger.warning(f"Ledger credit skipped, unknown user {user_id}")
            return
        self._log_change(user_id, 'credited', f"+{format_bytes(nbytes)}", before)

    def report_credit(self, user_id: str, nbytes: int, before: Optional[int] = None) -> None:
        """
        Log a charge the store already applied together with another write.

        Args:
            user_id: User that was charged
            nbytes: Bytes charged
            before: Usage before the charge, derived from the current usage if omitted
        """
        if nbytes <= 0:
            return
        after = self._used(user_id)
        if before is None and after is not None:
            before = max(after - nbytes, 0)
        self._log_change(user_id, 'credited', f"+{format_bytes(nbytes)}", before, after)

    def debit(self, user_id: str, nbytes: int) -> None:
        """Release nbytes of a user's storage usage. Usage never drops below zero."""
        if nbytes < 0:
            raise ValueError("debit amount must not be negative")
        if nbytes == 0:
            return
        before = self._used(user_id)
        if not self.store.decrement_storage_used(user_id, nbytes):
            self.logger.warning(f"Ledger debit skipped, unknown user {user_id}")
            return
        self._log_change(user_id, 'released', f"-{format_bytes(nbytes)}", before)

    def _used(self, user_id: str) -> Optional[int]:
        user = self.store.get_user(user_id)
        return user.storage_used if user else None

    def _log_change(
        self,
        user_id: str,
        verb: str,
        delta: str,
        before: Optional[int],
        after: Optional[int] = None
    ) -> None:
        # Reads around the atomic write are for the log line only
        if after is None:
            after = self._used(user_id)
        self.logger.info(
            f"Storage {verb} for user {user_id}: {delta} "
            f"({format_bytes(before)} -> {format_bytes(after)})"
        )

    def usage(self, user_id: str) -> Optional[LedgerUsage]:
        user = self.store.get_user(user_id)
        if user is None:
            return None
        return LedgerUsage(user_id=user.id, quota=user.storage_quota, used=user.storage_used)

    def ensure_capacity(self, user_id: str, nbytes: int) -> None:
        """
        Admission check made by callers before accepting an upload.

        Raises:
            QuotaExceeded: if nbytes does not fit in the remaining quota
        """
        usage = self.usage(user_id)
        remaining = usage.remaining if usage else 0
        if nbytes > remaining:
            raise QuotaExceeded(user_id, nbytes, remaining)

    def usage_warning(self, user_id: str) -> Optional[int]:
        """Return the highest warning threshold (90 or 80 percent) the user has reached."""
        usage = self.usage(user_id)
        if usage is None:
            return None
        for threshold in WARNING_THRESHOLDS:
            if usage.percent_used >= threshold:
                return threshold
        return None
