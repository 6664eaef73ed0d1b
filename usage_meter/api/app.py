"""
HTTP surface for usage ingestion.

Exposes the call-completion webhook, the SMS send endpoint and the balance
query as a Flask application.
"""

import logging
from typing import Optional

from flask import Flask, jsonify, request

from usage_meter.config.loader import BillingConfig, default_config
from usage_meter.core.campaign_guard import CampaignGuard, default_strategies
from usage_meter.core.errors import AuthenticationError
from usage_meter.core.ingestion import (
    BalanceQueryHandler,
    CallCompletionHandler,
    HandlerResponse,
    SmsSendHandler,
)
from usage_meter.core.reconciler import UsageReconciler
from usage_meter.provider import HttpTelephonyProvider, TelephonyProvider
from usage_meter.storage.models import Account
from usage_meter.storage.repository import LedgerRepository

logger = logging.getLogger(__name__)


def _respond(response: HandlerResponse):
    return jsonify(response.body), response.status_code


def _server_error(message: str):
    return jsonify({"success": False, "message": message}), 500


def create_app(
    config: Optional[BillingConfig] = None,
    repository: Optional[LedgerRepository] = None,
    provider: Optional[TelephonyProvider] = None,
    guard: Optional[CampaignGuard] = None,
) -> Flask:
    """Build the Flask app and wire the billing components.

    Args:
        config: Billing configuration (defaults from the environment)
        repository: Ledger repository (defaults to config.database_path)
        provider: Telephony provider (defaults to an HTTP client from config)
        guard: Campaign guard (defaults to list termination + session sweep)
    """
    config = config or default_config()
    repository = repository or LedgerRepository(config.database_path)
    repository.initialize_schema()

    if provider is None and config.provider is not None:
        provider = HttpTelephonyProvider(
            base_url=config.provider.base_url,
            account_id=config.provider.account_id,
            api_key=config.provider.api_key,
            timeout=config.campaign_guard.timeout_seconds,
        )
    if guard is None and provider is not None:
        guard = CampaignGuard(default_strategies(
            provider,
            campaign_window=config.campaign_guard.campaign_window,
            session_window=config.campaign_guard.session_window,
        ))
    if provider is None:
        logger.warning("No telephony provider configured; SMS sending and campaign stops are disabled")

    reconciler = UsageReconciler(repository, config.pricing)
    call_handler = CallCompletionHandler(repository, reconciler, guard, config.pricing)
    balance_handler = BalanceQueryHandler(repository)
    sms_handler = (
        SmsSendHandler(repository, provider, reconciler, config.pricing, config.sms.max_length)
        if provider is not None else None
    )

    app = Flask(__name__)
    app.config["REPOSITORY"] = repository
    app.config["CAMPAIGN_GUARD"] = guard

    def authenticate() -> Account:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("Bearer token required")
        account = repository.get_account_by_token(token.strip())
        if account is None:
            raise AuthenticationError("Invalid token")
        return account

    @app.route("/health", methods=["GET"])
    def health():
        """Verify the server is running"""
        return jsonify({"status": "ok"})

    @app.route("/api/telephony/call-history", methods=["POST"])
    def call_history():
        """Handle call-completion webhooks from the provider"""
        data = request.get_json(silent=True)
        logger.info("Received call report: %s", data)
        try:
            return _respond(call_handler.handle(data))
        except Exception:
            logger.error("Error processing call report", exc_info=True)
            return _server_error("Failed to process call report")

    @app.route("/api/telephony/send-sms", methods=["POST"])
    def send_sms():
        """Send SMS on behalf of the authenticated account"""
        try:
            account = authenticate()
        except AuthenticationError as e:
            return _respond(HandlerResponse.error(e))

        if sms_handler is None:
            return jsonify({"success": False, "message": "SMS sending is not configured"}), 503

        try:
            return _respond(sms_handler.handle(account.id, request.get_json(silent=True)))
        except Exception:
            logger.error("Error sending SMS for account %s", account.id, exc_info=True)
            return _server_error("Failed to send SMS")

    @app.route("/api/telephony/balance/<number>", methods=["GET"])
    def balance(number: str):
        """Report balance and remaining call minutes for a number"""
        try:
            return _respond(balance_handler.handle(number))
        except Exception:
            logger.error("Error reading balance for %s", number, exc_info=True)
            return _server_error("Failed to read balance")

    return app
