"""
Quota and wallet reconciliation.

Splits a billed quantity into the part covered by the subscription quota and
the part paid from the wallet, then applies both to the ledger.

Quota is always consumed first. The reconciler only mutates the ledger; it
never talks to the telephony provider, so callers decide what to do when
funds run out.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from usage_meter.storage.models import EventStatus, ResourceKind
from usage_meter.storage.repository import LedgerRepository, QuotaUpdateError

from .pricing import DEFAULT_PRICE_TABLE, PriceTable, units_to_cost

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricedQuantity:
    """Quota/wallet split of one billed quantity."""
    total_units: int
    units_from_quota: int
    units_to_pay: int
    cost: int

    @property
    def quota_exhausted(self) -> bool:
        """True when part of the usage had to be paid from the wallet."""
        return self.units_to_pay > 0


@dataclass(frozen=True)
class ReconciliationResult:
    """What the reconciler applied to the ledger."""
    priced: PricedQuantity
    status: EventStatus
    new_balance: Optional[int] = None
    usage_found: bool = True
    charged: int = 0  # Amount actually debited from the wallet

    @property
    def quota_exhausted(self) -> bool:
        return self.priced.quota_exhausted

    @property
    def funds_exhausted(self) -> bool:
        """True only when a wallet charge ran and left no funds."""
        return self.new_balance is not None and self.priced.units_to_pay > 0 and self.new_balance <= 0


def split_usage(
    total_units: int,
    quota_limit: int,
    quota_used: int,
    price_per_unit: int,
) -> PricedQuantity:
    """Split ``total_units`` between remaining quota and the wallet.

    Pure function: the same inputs always give the same split.

    Args:
        total_units: Billable units of the event
        quota_limit: Units granted by the plan for the period
        quota_used: Units of the plan already consumed
        price_per_unit: Wallet price of one unit in minor units

    Returns:
        PricedQuantity where units_from_quota + units_to_pay == total_units
    """
    total_units = max(0, total_units)
    available = max(0, quota_limit - quota_used)
    units_from_quota = min(total_units, available)
    units_to_pay = total_units - units_from_quota
    return PricedQuantity(
        total_units=total_units,
        units_from_quota=units_from_quota,
        units_to_pay=units_to_pay,
        cost=units_to_cost(units_to_pay, price_per_unit),
    )


class UsageReconciler:
    """Applies quota-first billing to the ledger."""

    def __init__(
        self,
        repository: LedgerRepository,
        price_table: PriceTable = DEFAULT_PRICE_TABLE,
    ):
        self.repository = repository
        self.price_table = price_table

    def reconcile(
        self,
        account_id: int,
        resource_kind: ResourceKind,
        total_units: int,
        now: Optional[datetime] = None,
    ) -> ReconciliationResult:
        """Bill ``total_units`` of ``resource_kind`` to an account.

        The quota lookup, split and quota increment run under the database
        write lock, so concurrent events for the same account see each
        other's claims. The wallet charge is a separate atomic delta update.

        If the wallet charge fails after quota was claimed, the quota claim is
        kept and the result is PARTIAL. The wallet is never charged when the
        quota claim itself fails.
        ``charged`` holds what was actually debited, so it stays 0 on PARTIAL
        and FAILED results.

        Args:
            account_id: Account to bill
            resource_kind: Resource being consumed
            total_units: Billable units, already priced from the raw quantity
            now: Reference time for the quota period lookup

        Returns:
            ReconciliationResult describing what was applied
        """
        price_per_unit = self.price_table.get_pricing(resource_kind).price_per_unit

        if total_units <= 0:
            return ReconciliationResult(
                priced=split_usage(0, 0, 0, price_per_unit),
                status=EventStatus.COMPLETED,
            )

        try:
            with self.repository.locked() as conn:
                usage = self.repository.get_current_usage(
                    account_id, resource_kind, now=now, conn=conn
                )
                if usage is None:
                    priced = split_usage(total_units, 0, 0, price_per_unit)
                else:
                    priced = split_usage(
                        total_units, usage.quota_limit, usage.quota_used, price_per_unit
                    )
                    if priced.units_from_quota > 0:
                        self.repository.increment_used(
                            usage.id, priced.units_from_quota, conn=conn
                        )
        except (sqlite3.Error, QuotaUpdateError):
            logger.exception(
                "Quota update failed for account %s (%s, %d units); nothing charged",
                account_id, resource_kind.value, total_units,
            )
            return ReconciliationResult(
                priced=PricedQuantity(total_units, 0, 0, 0),
                status=EventStatus.FAILED,
            )

        if usage is None:
            logger.warning(
                "No %s plan for account %s, billing all %d units to the wallet",
                resource_kind.value, account_id, total_units,
            )
        elif priced.units_from_quota:
            logger.info(
                "Account %s %s quota: %d/%d after using %d units",
                account_id, resource_kind.value,
                usage.quota_used + priced.units_from_quota, usage.quota_limit,
                priced.units_from_quota,
            )

        if priced.units_to_pay == 0:
            return ReconciliationResult(
                priced=priced,
                status=EventStatus.COMPLETED,
                usage_found=usage is not None,
            )

        try:
            new_balance = self.repository.update_balance(account_id, -priced.cost)
        except (sqlite3.Error, LookupError):
            logger.exception(
                "Wallet charge of %d failed for account %s after %d quota units "
                "were applied; needs manual reconciliation",
                priced.cost, account_id, priced.units_from_quota,
            )
            return ReconciliationResult(
                priced=priced,
                status=EventStatus.PARTIAL,
                usage_found=usage is not None,
            )

        logger.info(
            "Charged account %s %d for %d %s units, balance now %d",
            account_id, priced.cost, priced.units_to_pay, resource_kind.value, new_balance,
        )
        return ReconciliationResult(
            priced=priced,
            status=EventStatus.COMPLETED,
            new_balance=new_balance,
            usage_found=usage is not None,
            charged=priced.cost,
        )
