"""
Ingestion handlers.

Entry points that turn provider-reported usage into ledger changes:

- call completion: price the call, reconcile, stop campaigns when funds run out
- SMS send: deliver per recipient, then bill the successful deliveries once
- balance query: report wallet balance and remaining call minutes

Handlers return a HandlerResponse instead of raising. Validation and
resolution errors map to 4xx; billing failures are absorbed into logs and the
usage event status.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from usage_meter.provider.types import ProviderError, TelephonyProvider
from usage_meter.storage.models import EventStatus, ResourceKind, UsageEvent, utc_now
from usage_meter.storage.repository import LedgerRepository

from .campaign_guard import CampaignGuard
from .errors import IngestionError, ResolutionError, ValidationError
from .payloads import SMS_MAX_LENGTH, CallCompletionPayload, SmsSendRequest
from .pricing import DEFAULT_PRICE_TABLE, PriceTable, price_quantity
from .reconciler import ReconciliationResult, UsageReconciler

logger = logging.getLogger(__name__)


@dataclass
class HandlerResponse:
    """Status code and JSON body for the HTTP layer."""
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def error(cls, error: IngestionError) -> "HandlerResponse":
        return cls(error.status_code, {"success": False, "message": error.message})


def _billing_summary(result: ReconciliationResult) -> Dict[str, Any]:
    return {
        "billed_units": result.priced.total_units,
        "units_from_quota": result.priced.units_from_quota,
        "units_to_pay": result.priced.units_to_pay,
        "cost": result.priced.cost,
        "charged": result.charged,
        "status": result.status.value,
        "balance": result.new_balance,
        "funds_exhausted": result.funds_exhausted,
    }


class CallCompletionHandler:
    """Bills a finished call reported by the provider webhook."""

    def __init__(
        self,
        repository: LedgerRepository,
        reconciler: UsageReconciler,
        guard: Optional[CampaignGuard] = None,
        price_table: PriceTable = DEFAULT_PRICE_TABLE,
    ):
        self.repository = repository
        self.reconciler = reconciler
        self.guard = guard
        self.price_table = price_table

    def handle(self, data: Any) -> HandlerResponse:
        try:
            payload = CallCompletionPayload.from_dict(data)
        except ValidationError as e:
            logger.warning("Rejected call report: %s", e.message)
            return HandlerResponse.error(e)

        try:
            number = self.repository.find_number(payload.caller)
        except sqlite3.Error:
            logger.exception("Number lookup failed for %s", payload.caller)
            return HandlerResponse(500, {"success": False, "message": "Failed to look up caller number"})

        if number is None:
            # Not in the number registry; nothing is billed
            logger.warning(
                "Unresolved caller number %s: call to %s of %ds not billed",
                payload.caller, payload.callee, payload.duration_seconds,
            )
            return HandlerResponse.error(
                ResolutionError(f"No account owns phone number {payload.caller}")
            )

        account_id = number.account_id
        minutes = price_quantity(ResourceKind.CALL_MINUTES, payload.duration_seconds, self.price_table)
        result = self.reconciler.reconcile(account_id, ResourceKind.CALL_MINUTES, minutes)

        if result.funds_exhausted:
            self._stop_spend(account_id, payload.caller)

        event = UsageEvent(
            timestamp=utc_now(),
            account_id=account_id,
            resource_kind=ResourceKind.CALL_MINUTES,
            counterpart=payload.callee,
            source_number=payload.caller,
            direction=payload.direction,
            raw_quantity=payload.duration_seconds,
            billed_units=result.priced.total_units,
            units_from_quota=result.priced.units_from_quota,
            units_to_pay=result.priced.units_to_pay,
            cost=result.charged,
            status=result.status,
            payload={
                "call_status": payload.status,
                "record_url": payload.record_url,
                "assistant_id": payload.assistant_id,
                "history": payload.history,
            },
        )
        try:
            self.repository.insert_usage_event(event)
        except sqlite3.Error:
            logger.exception(
                "Failed to record call %s -> %s for account %s (billing status %s)",
                payload.caller, payload.callee, account_id, result.status.value,
            )
            return HandlerResponse(500, {"success": False, "message": "Failed to record call"})

        logger.info(
            "Call %s -> %s recorded: %d min, %d from plan, cost %d",
            payload.caller, payload.callee, minutes,
            result.priced.units_from_quota, result.priced.cost,
        )
        return HandlerResponse(200, {
            "success": True,
            "message": "Call recorded",
            "billing": _billing_summary(result),
        })

    def _stop_spend(self, account_id: int, number: str) -> None:
        if self.guard is None:
            logger.warning("Funds exhausted for account %s but no campaign guard configured", account_id)
            return
        try:
            self.guard.trigger(account_id, number)
        except RuntimeError as e:
            logger.error("Could not schedule campaign stop for account %s: %s", account_id, e)


class SmsSendHandler:
    """Sends an SMS batch and bills the delivered messages."""

    def __init__(
        self,
        repository: LedgerRepository,
        provider: TelephonyProvider,
        reconciler: UsageReconciler,
        price_table: PriceTable = DEFAULT_PRICE_TABLE,
        max_length: int = SMS_MAX_LENGTH,
    ):
        self.repository = repository
        self.provider = provider
        self.reconciler = reconciler
        self.price_table = price_table
        self.max_length = max_length

    def handle(self, account_id: int, data: Any) -> HandlerResponse:
        try:
            request = SmsSendRequest.from_dict(data, max_length=self.max_length)
            self._check_sender(account_id, request.source)
        except ValidationError as e:
            logger.warning("Rejected SMS request from account %s: %s", account_id, e.message)
            return HandlerResponse.error(e)

        logger.info("Sending SMS from %s to %d recipients", request.source, len(request.destinations))

        results: List[Dict[str, Any]] = []
        delivered: List[str] = []
        for destination in request.destinations:
            try:
                sent = self.provider.send_message(request.source, destination, request.text)
            except ProviderError as e:
                logger.error("SMS to %s failed: %s", destination, e)
                results.append({"phone": destination, "success": False, "error": str(e)})
                continue
            delivered.append(destination)
            results.append({
                "phone": destination,
                "success": True,
                "message_id": sent.message_id,
                "segments": sent.segments,
            })

        success_count = len(delivered)
        failed_count = len(results) - success_count
        logger.info("SMS result: %d sent, %d failed", success_count, failed_count)

        body: Dict[str, Any] = {
            "success": success_count > 0,
            "message": f"SMS sent. Succeeded: {success_count}, failed: {failed_count}",
            "success_count": success_count,
            "failed_count": failed_count,
            "total_count": len(request.destinations),
            "results": results,
        }
        if delivered:
            body["billing"] = self._bill(account_id, request, delivered)
        return HandlerResponse(200 if delivered else 400, body)

    def _check_sender(self, account_id: int, source: str) -> None:
        number = self.repository.find_account_number(account_id, source)
        if number is None:
            raise ValidationError("Source number does not belong to this account or does not exist")
        if not number.sms_supported:
            raise ValidationError("Source number does not support SMS")
        if not number.sms_enabled:
            raise ValidationError("SMS is not enabled for the source number")
        if number.deactivated or not number.can_be_used:
            raise ValidationError("Source number is inactive or cannot be used")

    def _bill(self, account_id: int, request: SmsSendRequest, delivered: List[str]) -> Dict[str, Any]:
        per_message = price_quantity(ResourceKind.SMS_SEGMENTS, len(request.text), self.price_table)
        segments = per_message * len(delivered)
        result = self.reconciler.reconcile(account_id, ResourceKind.SMS_SEGMENTS, segments)

        event = UsageEvent(
            timestamp=utc_now(),
            account_id=account_id,
            resource_kind=ResourceKind.SMS_SEGMENTS,
            counterpart=",".join(delivered),
            source_number=request.source,
            direction="outbound",
            raw_quantity=len(request.text),
            billed_units=result.priced.total_units,
            units_from_quota=result.priced.units_from_quota,
            units_to_pay=result.priced.units_to_pay,
            cost=result.charged,
            status=result.status,
            payload={"recipients": delivered, "segments_per_message": per_message},
        )
        summary = _billing_summary(result)
        try:
            self.repository.insert_usage_event(event)
            summary["recorded"] = True
        except sqlite3.Error:
            # Messages are already out; report them and leave the gap to the logs
            logger.exception(
                "Failed to record %d SMS segments for account %s (billing status %s)",
                segments, account_id, result.status.value,
            )
            summary["recorded"] = False

        logger.info(
            "Billed %d SMS segments for account %s: %d from plan, %d paid",
            segments, account_id, result.priced.units_from_quota, result.priced.units_to_pay,
        )
        return summary


class BalanceQueryHandler:
    """Reports the wallet balance and remaining call minutes behind a number."""

    def __init__(self, repository: LedgerRepository):
        self.repository = repository

    def handle(self, number: str) -> HandlerResponse:
        if not number:
            return HandlerResponse.error(ValidationError("Phone number is required"))

        registered = self.repository.find_number(number)
        account = self.repository.get_account(registered.account_id) if registered else None
        if account is None:
            return HandlerResponse.error(ResolutionError(f"No account owns phone number {number}"))

        usage = self.repository.get_current_usage(account.id, ResourceKind.CALL_MINUTES)
        if usage is None:
            logger.info("Account %s has no active call plan", account.id)

        return HandlerResponse(200, {
            "success": True,
            "balance": account.balance,
            "available_minutes": usage.available if usage else 0,
        })
