"""
Unit tests for quota/wallet reconciliation.

Tests the pure split, ledger application, failure handling and
concurrent billing against one account.
"""

import logging
import os
import shutil
import sqlite3
import tempfile
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from usage_meter.core.reconciler import PricedQuantity, UsageReconciler, split_usage
from usage_meter.storage.models import EventStatus, ResourceKind
from usage_meter.storage.repository import LedgerRepository

PRICE = 500


class TestSplitUsage:
    """Test the pure quota/wallet split."""

    def test_fully_covered_by_quota(self):
        priced = split_usage(5, quota_limit=100, quota_used=10, price_per_unit=PRICE)
        assert priced == PricedQuantity(total_units=5, units_from_quota=5, units_to_pay=0, cost=0)
        assert priced.quota_exhausted is False

    def test_call_billing_scenario(self):
        """100 minute plan with 95 used, 6 minute call: 5 from plan, 1 paid."""
        priced = split_usage(6, quota_limit=100, quota_used=95, price_per_unit=PRICE)
        assert priced.units_from_quota == 5
        assert priced.units_to_pay == 1
        assert priced.cost == PRICE
        assert priced.quota_exhausted is True

    def test_no_quota_left(self):
        priced = split_usage(3, quota_limit=10, quota_used=10, price_per_unit=PRICE)
        assert priced.units_from_quota == 0
        assert priced.units_to_pay == 3
        assert priced.cost == 3 * PRICE

    def test_overdrawn_quota_treated_as_empty(self):
        priced = split_usage(3, quota_limit=10, quota_used=12, price_per_unit=PRICE)
        assert priced.units_from_quota == 0
        assert priced.units_to_pay == 3

    def test_quota_first_and_conservation(self):
        """Quota is never overused and units are always conserved."""
        for limit in range(0, 8):
            for used in range(0, limit + 1):
                for total in range(0, 12):
                    priced = split_usage(total, limit, used, PRICE)
                    assert priced.units_from_quota + priced.units_to_pay == total
                    assert priced.units_from_quota <= limit - used
                    assert priced.units_to_pay <= total
                    assert priced.cost == priced.units_to_pay * PRICE

    def test_deterministic(self):
        assert split_usage(7, 10, 6, PRICE) == split_usage(7, 10, 6, PRICE)


class TestUsageReconciler:
    """Test ledger application of the split."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repository = LedgerRepository(os.path.join(self.temp_dir, "test.db"))
        self.repository.initialize_schema()
        self.account = self.repository.create_account("Acme", balance=10_000)
        self.reconciler = UsageReconciler(self.repository)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _usage(self, kind=ResourceKind.CALL_MINUTES):
        return self.repository.get_current_usage(self.account.id, kind)

    def test_call_billing_scenario(self):
        usage = self.repository.activate_plan(self.account.id, ResourceKind.CALL_MINUTES, 100)
        self.repository.increment_used(usage.id, 95)

        result = self.reconciler.reconcile(self.account.id, ResourceKind.CALL_MINUTES, 6)

        assert result.priced.units_from_quota == 5
        assert result.priced.units_to_pay == 1
        assert result.priced.cost == 500
        assert result.status == EventStatus.COMPLETED
        assert result.new_balance == 9_500
        assert result.funds_exhausted is False
        assert self._usage().quota_used == 100

    def test_quota_only_does_not_touch_wallet(self):
        self.repository.activate_plan(self.account.id, ResourceKind.CALL_MINUTES, 100)
        result = self.reconciler.reconcile(self.account.id, ResourceKind.CALL_MINUTES, 10)
        assert result.new_balance is None
        assert result.quota_exhausted is False
        assert result.funds_exhausted is False
        assert self.repository.get_account(self.account.id).balance == 10_000

    def test_missing_plan_bills_wallet(self, caplog):
        with caplog.at_level(logging.WARNING, logger="usage_meter.core.reconciler"):
            result = self.reconciler.reconcile(self.account.id, ResourceKind.SMS_SEGMENTS, 4)
        assert result.usage_found is False
        assert result.priced.units_to_pay == 4
        assert result.new_balance == 10_000 - 4 * 500
        assert "No sms_segments plan" in caplog.text

    def test_zero_units_short_circuit(self):
        with patch.object(self.repository, "locked") as locked:
            result = self.reconciler.reconcile(self.account.id, ResourceKind.CALL_MINUTES, 0)
        locked.assert_not_called()
        assert result.priced.total_units == 0
        assert result.status == EventStatus.COMPLETED

    def test_funds_exhausted_at_zero_balance(self):
        account = self.repository.create_account("Poor", balance=500)
        result = self.reconciler.reconcile(account.id, ResourceKind.CALL_MINUTES, 1)
        assert result.new_balance == 0
        assert result.funds_exhausted is True

    def test_balance_goes_negative(self):
        account = self.repository.create_account("Poor", balance=100)
        result = self.reconciler.reconcile(account.id, ResourceKind.CALL_MINUTES, 3)
        assert result.new_balance == 100 - 1500
        assert result.charged == 1500
        assert result.funds_exhausted is True
        assert self.repository.get_account(account.id).total_spent == 1500

    def test_wallet_failure_keeps_quota_claim(self, caplog):
        self.repository.activate_plan(self.account.id, ResourceKind.CALL_MINUTES, 3)
        with patch.object(
            self.repository, "update_balance", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            with caplog.at_level(logging.ERROR):
                result = self.reconciler.reconcile(self.account.id, ResourceKind.CALL_MINUTES, 5)

        assert result.status == EventStatus.PARTIAL
        assert result.new_balance is None
        assert result.funds_exhausted is False
        assert result.charged == 0
        assert result.priced.units_from_quota == 3
        assert self._usage().quota_used == 3
        assert self.repository.get_account(self.account.id).balance == 10_000
        assert "manual reconciliation" in caplog.text

    def test_quota_failure_charges_nothing(self):
        usage = self.repository.activate_plan(self.account.id, ResourceKind.CALL_MINUTES, 10)
        with patch.object(
            self.repository, "increment_used", side_effect=sqlite3.OperationalError("locked")
        ):
            result = self.reconciler.reconcile(self.account.id, ResourceKind.CALL_MINUTES, 4)

        assert result.status == EventStatus.FAILED
        assert result.charged == 0
        assert result.priced.units_from_quota == 0
        assert result.priced.cost == 0
        assert self.repository.get_account(self.account.id).balance == 10_000
        assert self._usage().quota_used == 0
        assert usage.quota_used == 0

    def test_independent_snapshots_give_same_split(self):
        other_dir = tempfile.mkdtemp()
        try:
            other = LedgerRepository(os.path.join(other_dir, "other.db"))
            other.initialize_schema()
            results = []
            for repository in (self.repository, other):
                account = repository.create_account("Snap", balance=1000)
                usage = repository.activate_plan(account.id, ResourceKind.CALL_MINUTES, 10)
                repository.increment_used(usage.id, 7)
                results.append(
                    UsageReconciler(repository).reconcile(account.id, ResourceKind.CALL_MINUTES, 5).priced
                )
            assert results[0] == results[1]
        finally:
            shutil.rmtree(other_dir, ignore_errors=True)


class TestConcurrentReconciliation:
    """Concurrent events for one account must not lose updates."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repository = LedgerRepository(os.path.join(self.temp_dir, "test.db"))
        self.repository.initialize_schema()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @pytest.mark.parametrize("events,quota", [(20, 5), (12, 0), (8, 7)])
    def test_no_lost_updates(self, events, quota):
        initial_balance = 100_000
        account = self.repository.create_account("Busy", balance=initial_balance)
        self.repository.activate_plan(account.id, ResourceKind.CALL_MINUTES, quota)
        reconciler = UsageReconciler(self.repository)

        with ThreadPoolExecutor(max_workers=events) as pool:
            results = list(pool.map(
                lambda _: reconciler.reconcile(account.id, ResourceKind.CALL_MINUTES, 1),
                range(events),
            ))

        assert all(r.status == EventStatus.COMPLETED for r in results)
        assert sum(r.priced.units_from_quota for r in results) == quota
        assert sum(r.priced.units_to_pay for r in results) == events - quota

        usage = self.repository.get_current_usage(account.id, ResourceKind.CALL_MINUTES)
        assert usage.quota_used == quota
        final = self.repository.get_account(account.id)
        assert final.balance == initial_balance - (events - quota) * 500
        assert final.total_spent == (events - quota) * 500
