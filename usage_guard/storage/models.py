"""
Data models for storage layer.

Defines the per-user, per-day usage record.
"""

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class UsageRecord:
    """Metered consumption of one user within one accounting day.

    There is exactly one record per (user_id, period_key). Cost is always
    recomputed from units_consumed and is never mutated on its own; a new day starts
    a new record rather than resetting an old one.
    """
    user_id: str
    period_key: str
    units_consumed: int = 0
    cost_accrued: Decimal = Decimal("0")

    def __post_init__(self):
        """Validate counters are non-negative."""
        if self.units_consumed < 0:
            raise ValueError("units_consumed cannot be negative")
        if self.cost_accrued < 0:
            raise ValueError("cost_accrued cannot be negative")

    @classmethod
    def empty(cls, user_id: str, period_key: str) -> "UsageRecord":
        """Zero-valued record for a period with no recorded usage yet."""
        return cls(user_id=user_id, period_key=period_key)

    @property
    def is_empty(self) -> bool:
        """True when nothing has been charged, matching a missing row."""
        return self.units_consumed == 0 and self.cost_accrued == 0
