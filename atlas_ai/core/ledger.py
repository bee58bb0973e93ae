"""
Token ledger: weekly refill and atomic check-then-debit.

Enforcement order for every charge:
1. Refill - an account past its refill window is reset to its tier quota
2. Check  - the post-refill balance is compared against the fixed cost
3. Debit  - exactly the cost is removed, or nothing at all

Steps 1-3 form a critical section per account. In-process callers are
serialized by a per-account lock; the debit itself is a storage-level
compare-and-swap so separate processes cannot overdraw either.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from .costs import COST_TABLE, REFILL_INTERVAL, OperationCategory, OperationCostTable, weekly_quota
from atlas_ai.storage.models import TokenAccount
from atlas_ai.storage.repository import AccountRepository

logger = logging.getLogger(__name__)


class AccountNotFoundError(LookupError):
    """Raised when a charge or refresh targets an unknown user."""
    def __init__(self, user_id: str):
        super().__init__(f"Unknown user: {user_id}")
        self.user_id = user_id


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a charge attempt.

    Insufficiency is a normal outcome, not an error: ``ok`` is False and
    ``tokens_required`` / ``tokens_available`` describe the shortfall.
    """
    ok: bool
    category: OperationCategory
    tokens_charged: int = 0
    tokens_remaining: int = 0
    tokens_required: int = 0
    tokens_available: int = 0

    @classmethod
    def success(cls, category: OperationCategory, charged: int, remaining: int) -> "ChargeResult":
        return cls(ok=True, category=category, tokens_charged=charged, tokens_remaining=remaining)

    @classmethod
    def insufficient(cls, category: OperationCategory, required: int, available: int) -> "ChargeResult":
        return cls(
            ok=False,
            category=category,
            tokens_remaining=available,
            tokens_required=required,
            tokens_available=available,
        )


def ensure_refreshed(account: TokenAccount, now: datetime) -> bool:
    """Apply the weekly refill rule to an account in place.

    If at least one refill interval has passed since ``last_refreshed_at``,
    the balance is reset to the tier quota and the timestamp moves to
    ``now``. Applying it twice in the same window has no further effect.

    Args:
        account: Account to refresh
        now: Current time

    Returns:
        True if a refill occurred
    """
    if now - account.last_refreshed_at >= REFILL_INTERVAL:
        account.balance = weekly_quota(account.tier)
        account.last_refreshed_at = now
        return True
    return False


class TokenLedger:
    """Serializes balance mutations per account."""

    def __init__(
        self,
        accounts: AccountRepository,
        cost_table: OperationCostTable = COST_TABLE,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the ledger.

        Args:
            accounts: Account storage
            cost_table: Fixed operation costs
            clock: Source of the current time
        """
        self.accounts = accounts
        self.cost_table = cost_table
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    def _load(self, user_id: str) -> TokenAccount:
        account = self.accounts.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        return account

    def _refresh_locked(self, user_id: str, now: datetime) -> Tuple[TokenAccount, bool]:
        """Load an account and persist a refill if one is due. Caller holds the lock."""
        account = self._load(user_id)
        previous = account.last_refreshed_at
        refreshed = replace(account)
        if not ensure_refreshed(refreshed, now):
            return account, False
        if self.accounts.save_refresh(refreshed, previous):
            logger.info(
                "Refilled %s to %d tokens (%s tier)",
                user_id, refreshed.balance, refreshed.tier.value,
            )
            return refreshed, True
        # Another writer refilled first; its state is authoritative
        return self._load(user_id), False

    def refresh_account(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """Refill a stored account if its window has elapsed.

        Returns:
            True if this call performed the refill
        """
        now = now or self.clock()
        with self._lock_for(user_id):
            return self._refresh_locked(user_id, now)[1]

    def balance(self, user_id: str, now: Optional[datetime] = None) -> int:
        """Current balance after applying any due refill."""
        now = now or self.clock()
        with self._lock_for(user_id):
            return self._refresh_locked(user_id, now)[0].balance

    def charge(
        self,
        user_id: str,
        category: OperationCategory,
        now: Optional[datetime] = None
    ) -> ChargeResult:
        """Check and debit the cost of an operation atomically.

        Args:
            user_id: Account to charge
            category: Operation being paid for
            now: Current time (defaults to the ledger clock)

        Returns:
            ChargeResult; on insufficiency nothing was mutated

        Raises:
            AccountNotFoundError: If the user does not exist
            sqlite3.Error: Storage faults are propagated unchanged
        """
        cost = self.cost_table.get_cost(category)
        now = now or self.clock()

        with self._lock_for(user_id):
            account, _ = self._refresh_locked(user_id, now)

            if account.balance < cost:
                logger.info(
                    "Insufficient tokens for %s: %s needs %d, has %d",
                    user_id, category.value, cost, account.balance,
                )
                return ChargeResult.insufficient(category, cost, account.balance)

            remaining = self.accounts.try_debit(user_id, cost)
            if remaining is None:
                # Balance moved underneath us (another process); report what is there now
                available = self._load(user_id).balance
                logger.info(
                    "Insufficient tokens for %s after concurrent debit: needs %d, has %d",
                    user_id, cost, available,
                )
                return ChargeResult.insufficient(category, cost, available)

        logger.info("Charged %s %d tokens for %s, %d left", user_id, cost, category.value, remaining)
        return ChargeResult.success(category, cost, remaining)

    def refresh_all(self, now: Optional[datetime] = None) -> int:
        """Weekly sweep: refill every account whose window has elapsed.

        Meant to be triggered by an external scheduler. Each account's lock
        is held only while that account is refreshed, so live requests for
        other accounts are never blocked. Uses the same refill rule as the
        inline check, so overlapping with per-request refills is harmless.

        Args:
            now: Sweep time (defaults to the ledger clock)

        Returns:
            Number of accounts refilled by this sweep
        """
        now = now or self.clock()
        refilled = 0
        for user_id in self.accounts.list_user_ids():
            try:
                if self.refresh_account(user_id, now):
                    refilled += 1
            except AccountNotFoundError:
                # Deleted between listing and refreshing
                continue
        logger.info("Token refresh sweep refilled %d accounts", refilled)
        return refilled
