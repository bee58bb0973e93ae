"""
Unit tests for the token ledger.

Tests weekly refill, atomic debit, concurrency and the refresh sweep.
"""

import os
import shutil
import tempfile
import threading
from datetime import datetime, timedelta

import pytest

from atlas_ai.core.costs import OperationCategory, SubscriptionTier
from atlas_ai.core.ledger import AccountNotFoundError, TokenLedger, ensure_refreshed
from atlas_ai.storage.models import TokenAccount
from atlas_ai.storage.repository import AccountRepository, initialize_schema


NOW = datetime(2024, 3, 11, 9, 0, 0)


class TestEnsureRefreshed:
    """Test the refill rule on an in-memory account."""

    def test_refill_after_interval(self):
        """Test an account untouched for 8 days is reset to its quota."""
        account = TokenAccount("u1", SubscriptionTier.FREE, 2, NOW - timedelta(days=8))

        assert ensure_refreshed(account, NOW) is True
        assert account.balance == 15
        assert account.last_refreshed_at == NOW

    def test_refill_at_exact_boundary(self):
        """Test exactly seven days triggers a refill."""
        account = TokenAccount("u1", SubscriptionTier.PREMIUM, 0, NOW - timedelta(days=7))

        assert ensure_refreshed(account, NOW) is True
        assert account.balance == 50

    def test_no_refill_inside_window(self):
        """Test a recent refill leaves the account untouched."""
        refreshed_at = NOW - timedelta(days=6, hours=23)
        account = TokenAccount("u1", SubscriptionTier.FREE, 4, refreshed_at)

        assert ensure_refreshed(account, NOW) is False
        assert account.balance == 4
        assert account.last_refreshed_at == refreshed_at

    def test_idempotent(self):
        """Test applying the rule twice refills once."""
        account = TokenAccount("u1", SubscriptionTier.FREE, 0, NOW - timedelta(days=9))

        assert ensure_refreshed(account, NOW) is True
        account.balance = 10
        assert ensure_refreshed(account, NOW) is False
        assert account.balance == 10

    def test_negative_balance_rejected(self):
        """Test an account can never hold a negative balance."""
        with pytest.raises(ValueError, match="negative"):
            TokenAccount("u1", SubscriptionTier.FREE, -1, NOW)


class TestTokenLedger:
    """Test charging against stored accounts."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.accounts = AccountRepository(self.db_path)
        self.ledger = TokenLedger(self.accounts, clock=lambda: NOW)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _create(self, user_id="student", balance=None, tier=SubscriptionTier.FREE, refreshed_at=NOW):
        return self.accounts.create_user(user_id, tier=tier, balance=balance, last_refreshed_at=refreshed_at)

    def test_charge_debits_exact_cost(self):
        """Test a successful charge removes exactly the category cost."""
        self._create(balance=5)

        result = self.ledger.charge("student", OperationCategory.PAST_PAPER)

        assert result.ok
        assert result.tokens_charged == 2
        assert result.tokens_remaining == 3
        assert self.accounts.get_account("student").balance == 3

    def test_insufficient_balance_mutates_nothing(self):
        """Test a charge the balance cannot cover is refused without side effects."""
        self._create(balance=1)

        result = self.ledger.charge("student", OperationCategory.PRACTICE_QUESTIONS)

        assert not result.ok
        assert result.tokens_required == 3
        assert result.tokens_available == 1
        assert result.tokens_charged == 0
        assert self.accounts.get_account("student").balance == 1

    def test_zero_cost_always_succeeds(self):
        """Test bookmark costs nothing even on an empty balance."""
        self._create(balance=0)

        result = self.ledger.charge("student", OperationCategory.BOOKMARK)

        assert result.ok
        assert result.tokens_remaining == 0

    def test_charge_refills_before_checking(self):
        """Test an expired window is refilled before the balance check."""
        self._create(balance=0, refreshed_at=NOW - timedelta(days=8))

        result = self.ledger.charge("student", OperationCategory.PRACTICE_QUESTIONS)

        assert result.ok
        assert result.tokens_remaining == 12
        account = self.accounts.get_account("student")
        assert account.balance == 12
        assert account.last_refreshed_at == NOW

    def test_balance_applies_refill(self):
        """Test reading the balance applies a due refill and persists it."""
        self._create(balance=3, tier=SubscriptionTier.PREMIUM, refreshed_at=NOW - timedelta(days=10))

        assert self.ledger.balance("student") == 50
        assert self.ledger.refresh_account("student") is False

    def test_unknown_user(self):
        """Test charging an unknown user raises."""
        with pytest.raises(AccountNotFoundError) as exc_info:
            self.ledger.charge("ghost", OperationCategory.BASIC_SEARCH)

        assert exc_info.value.user_id == "ghost"

    def test_concurrent_charges_never_overdraw(self):
        """Test two simultaneous 2-token charges against 3 tokens: exactly one succeeds."""
        self._create(balance=3)
        barrier = threading.Barrier(2)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            result = self.ledger.charge("student", OperationCategory.PAST_PAPER)
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(result.ok for result in results) == [False, True]
        assert self.accounts.get_account("student").balance == 1

    def test_separate_ledgers_share_storage_guard(self):
        """Test the storage-level debit refuses when another ledger drained the account."""
        self._create(balance=2)
        other = TokenLedger(AccountRepository(self.db_path), clock=lambda: NOW)

        assert other.charge("student", OperationCategory.PAST_PAPER).ok
        result = self.ledger.charge("student", OperationCategory.PAST_PAPER)

        assert not result.ok
        assert result.tokens_available == 0


class TestRefreshSweep:
    """Test the scheduled refresh of all accounts."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.accounts = AccountRepository(self.db_path)
        self.ledger = TokenLedger(self.accounts, clock=lambda: NOW)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_sweep_refills_only_due_accounts(self):
        """Test only accounts past their window are refilled."""
        self.accounts.create_user("due", balance=1, last_refreshed_at=NOW - timedelta(days=8))
        self.accounts.create_user("recent", balance=1, last_refreshed_at=NOW - timedelta(days=2))
        self.accounts.create_user(
            "premium", tier=SubscriptionTier.PREMIUM, balance=0, last_refreshed_at=NOW - timedelta(days=30)
        )

        assert self.ledger.refresh_all() == 2
        assert self.accounts.get_account("due").balance == 15
        assert self.accounts.get_account("recent").balance == 1
        assert self.accounts.get_account("premium").balance == 50

    def test_sweep_is_idempotent(self):
        """Test a second sweep in the same window refills nothing."""
        self.accounts.create_user("due", balance=1, last_refreshed_at=NOW - timedelta(days=8))

        assert self.ledger.refresh_all() == 1
        self.ledger.charge("due", OperationCategory.BASIC_SEARCH)

        assert self.ledger.refresh_all() == 0
        assert self.accounts.get_account("due").balance == 14

    def test_sweep_and_inline_refill_agree(self):
        """Test an inline refill before the sweep leaves nothing for the sweep to do."""
        self.accounts.create_user("due", balance=0, last_refreshed_at=NOW - timedelta(days=8))

        assert self.ledger.balance("due") == 15
        assert self.ledger.refresh_all() == 0
