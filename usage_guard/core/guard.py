"""
Daily budget enforcement.

Admits or rejects metered operations per user against a daily cost cap.

Admission Order:
1. Validate input - malformed calls never reach storage
2. Read the current period's record
3. Compare projected cost with the cap
4. Record the charge with compare-and-swap, retrying on conflicting writers
   (a request still conflicting after max_attempts is denied)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable

from .period import period_key_for, utc_now
from .pricing import cost_of
from usage_guard.storage.models import UsageRecord
from usage_guard.storage.repository import StorageUnavailable, UsageStore

logger = logging.getLogger(__name__)

DEFAULT_DAILY_BUDGET_CAP = Decimal("8.0")
DEFAULT_UNIT_PRICE = Decimal("0.01")
DEFAULT_MAX_ATTEMPTS = 5


class InvalidInput(ValueError):
    """Raised for malformed guard calls (caller programming error)."""


@dataclass(frozen=True)
class Decision:
    """Outcome of an admission check.

    ``fail_open`` marks decisions made without consulting storage because
    the store was unavailable and the guard is configured to fail open.
    """
    allowed: bool
    remaining_budget: Decimal
    period_key: str
    fail_open: bool = False


class UsageGuard:
    """Per-user daily budget guard.

    Construct once at process start and pass to request handlers. The guard
    holds no per-user state of its own; all accounting lives in the store.
    """

    def __init__(
        self,
        store: UsageStore,
        daily_budget_cap: Decimal = DEFAULT_DAILY_BUDGET_CAP,
        unit_price: Decimal = DEFAULT_UNIT_PRICE,
        fail_open: bool = True,
        clock: Callable[[], datetime] = utc_now,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        """Initialize the guard.

        Args:
            store: Persistence backend for usage records
            daily_budget_cap: Maximum cost a user may accrue per UTC day
            unit_price: Cost per 1000 metered units
            fail_open: Allow operations when storage is unavailable
            clock: Source of the current instant (UTC)
            max_attempts: Compare-and-swap attempts before denying the request

        Raises:
            ValueError: If any limit is not positive
        """
        if daily_budget_cap <= 0:
            raise ValueError("daily_budget_cap must be > 0")
        if unit_price <= 0:
            raise ValueError("unit_price must be > 0")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.store = store
        self.daily_budget_cap = daily_budget_cap
        self.unit_price = unit_price
        self.fail_open = fail_open
        self.clock = clock
        self.max_attempts = max_attempts

    def current_period(self) -> str:
        return period_key_for(self.clock())

    def check_and_consume(self, user_id: str, estimated_units: int) -> Decision:
        """Admit an operation and record its estimated consumption.

        When the returned decision is allowed, the charge has already been
        persisted. A denied decision leaves the record untouched.

        Args:
            user_id: Identifier of the metered principal
            estimated_units: Caller's upper-bound estimate of units to consume

        Returns:
            Decision with the remaining budget for the period

        Raises:
            InvalidInput: If user_id is empty or estimated_units is negative
            StorageUnavailable: If storage fails and the guard fails closed
        """
        _validate_user_id(user_id)
        if isinstance(estimated_units, bool) or not isinstance(estimated_units, int):
            raise InvalidInput("estimated_units must be an integer")
        if estimated_units < 0:
            raise InvalidInput("estimated_units cannot be negative")

        period_key = self.current_period()

        try:
            return self._admit(user_id, period_key, estimated_units)
        except StorageUnavailable as e:
            if not self.fail_open:
                logger.error(
                    "Usage storage unavailable for %s/%s, rejecting (fail closed): %s",
                    user_id, period_key, e,
                )
                raise
            logger.error(
                "Usage storage unavailable for %s/%s, allowing (fail open): %s",
                user_id, period_key, e,
            )
            return Decision(
                allowed=True,
                remaining_budget=self.daily_budget_cap,
                period_key=period_key,
                fail_open=True,
            )

    def get_current_usage(self, user_id: str) -> UsageRecord:
        """Return the current period's record without creating one.

        Raises:
            InvalidInput: If user_id is empty
            StorageUnavailable: If the store cannot be read
        """
        _validate_user_id(user_id)
        period_key = self.current_period()
        record = self.store.get(user_id, period_key)
        if record is None:
            return UsageRecord.empty(user_id, period_key)
        return record

    def _admit(
        self,
        user_id: str,
        period_key: str,
        estimated_units: int,
    ) -> Decision:
        current = None
        for attempt in range(1, self.max_attempts + 1):
            current = self.store.get(user_id, period_key)
            if current is None:
                current = UsageRecord.empty(user_id, period_key)

            units_after = current.units_consumed + estimated_units
            projected_cost = cost_of(units_after, self.unit_price)
            if projected_cost > self.daily_budget_cap:
                remaining = max(Decimal("0"), self.daily_budget_cap - current.cost_accrued)
                logger.info(
                    "Budget exceeded for %s/%s: requested %d units, remaining $%s",
                    user_id, period_key, estimated_units, remaining,
                )
                return Decision(allowed=False, remaining_budget=remaining, period_key=period_key)

            updated = UsageRecord(
                user_id=user_id,
                period_key=period_key,
                units_consumed=units_after,
                cost_accrued=projected_cost,
            )
            if self.store.compare_and_swap(current, updated):
                remaining = self.daily_budget_cap - projected_cost
                logger.info(
                    "Admitted %d units for %s/%s, remaining $%s",
                    estimated_units, user_id, period_key, remaining,
                )
                return Decision(allowed=True, remaining_budget=remaining, period_key=period_key)

            logger.debug(
                "Concurrent usage update for %s/%s, retrying (attempt %d/%d)",
                user_id, period_key, attempt, self.max_attempts,
            )

        # Exhausted retries deny; only backend errors reach the fail-open policy
        remaining = max(Decimal("0"), self.daily_budget_cap - current.cost_accrued)
        logger.warning(
            "Rejecting %d units for %s/%s after %d conflicting attempts",
            estimated_units, user_id, period_key, self.max_attempts,
        )
        return Decision(allowed=False, remaining_budget=remaining, period_key=period_key)


def _validate_user_id(user_id: str) -> None:
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidInput("user_id is required and cannot be empty")
