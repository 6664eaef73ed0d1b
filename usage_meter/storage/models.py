"""
Data models for storage layer.

Defines ledger entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def utc_now() -> datetime:
    """Current time in the ledger clock (naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ResourceKind(Enum):
    """Billable resources with a subscription quota."""
    CALL_MINUTES = "call_minutes"
    SMS_SEGMENTS = "sms_segments"


class EventStatus(Enum):
    """Outcome of billing one usage event."""
    COMPLETED = "completed"  # Quota and wallet updates both applied
    PARTIAL = "partial"      # Quota applied, wallet update failed
    FAILED = "failed"        # Nothing applied


@dataclass(frozen=True)
class Account:
    """A billable tenant.

    Amounts are integer minor-currency units. The balance may go negative to
    represent a payment that is due.
    """
    id: int
    name: str
    balance: int
    total_spent: int
    api_token: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class SubscriptionUsage:
    """Quota counters of one resource for one billing period."""
    id: int
    account_id: int
    resource_kind: ResourceKind
    quota_limit: int
    quota_used: int
    created_at: datetime
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @property
    def available(self) -> int:
        """Units still covered by the plan."""
        return max(0, self.quota_limit - self.quota_used)


@dataclass(frozen=True)
class PhoneNumber:
    """A provisioned number and the account that owns it."""
    number: str
    account_id: int
    sms_supported: bool = False
    sms_enabled: bool = False
    deactivated: bool = False
    can_be_used: bool = True

    @property
    def can_send_sms(self) -> bool:
        return (
            self.sms_supported
            and self.sms_enabled
            and not self.deactivated
            and self.can_be_used
        )


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one billed occurrence.

    Append-only events that create an auditable ledger of telephony spend.
    Once written, these records must never be modified. ``cost`` is the
    amount actually debited from the wallet; a partial or failed event keeps
    its billed units but records only what was charged.
    """
    timestamp: datetime
    account_id: int
    resource_kind: ResourceKind
    counterpart: str
    raw_quantity: int
    billed_units: int
    units_from_quota: int
    units_to_pay: int
    cost: int
    status: EventStatus
    source_number: Optional[str] = None
    direction: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
