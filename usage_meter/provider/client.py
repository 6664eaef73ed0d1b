"""
HTTP client for the telephony provider.

Every call is a form POST to ``{base_url}/{Method}`` authenticated with the
account id and API key, answering JSON with a ``result`` field on success
and an ``error`` field on failure.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from .types import CallSession, Campaign, ProviderError, SendResult, TelephonyProvider

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class HttpTelephonyProvider(TelephonyProvider):
    """Provider implementation over ``requests``.

    All requests carry a hard timeout; callers on the billing path treat any
    ProviderError as a best-effort failure.
    """

    def __init__(
        self,
        base_url: str,
        account_id: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        """Initialize provider client.

        Raises:
            ValueError: If base_url or credentials are missing
        """
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required and cannot be empty")
        if not account_id or not api_key:
            raise ValueError("provider account_id and api_key are required")

        self.base_url = base_url.rstrip("/")
        self.account_id = account_id
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _call(self, method: str, **params: Any) -> Dict[str, Any]:
        query = {"api_key": self.api_key, "account_id": self.account_id}
        query.update({k: v for k, v in params.items() if v is not None})
        try:
            response = self.session.post(
                f"{self.base_url}/{method}", params=query, timeout=self.timeout
            )
            data = response.json()
        except requests.RequestException as e:
            raise ProviderError(f"{method} request failed: {e}", method=method) from e
        except ValueError as e:
            raise ProviderError(f"{method} returned invalid JSON", method=method) from e

        if not isinstance(data, dict):
            raise ProviderError(f"{method} returned unexpected payload", method=method)
        if data.get("error"):
            error = data["error"]
            message = error.get("msg") if isinstance(error, dict) else str(error)
            raise ProviderError(f"{method} failed: {message}", method=method)
        return data

    def terminate_campaign(self, list_id: str) -> bool:
        data = self._call("StopCallListProcessing", list_id=list_id)
        return bool(data.get("result"))

    def terminate_session(self, session_id: str) -> bool:
        data = self._call("TerminateSession", session_id=session_id)
        return bool(data.get("result"))

    def find_active_campaigns(self, number: str, since: datetime) -> List[Campaign]:
        data = self._call(
            "GetCallLists",
            phone_number=number,
            from_date=since.isoformat(),
            is_active="true",
        )
        return [Campaign.from_dict(item, number) for item in data.get("result") or []]

    def find_active_sessions(self, number: str, since: datetime) -> List[CallSession]:
        data = self._call(
            "GetCallHistory",
            phone_number=number,
            from_date=since.isoformat(),
            count=100,
            with_calls="true",
            output="json",
        )
        return [CallSession.from_dict(item) for item in data.get("result") or []]

    def send_message(self, source: str, destination: str, text: str) -> SendResult:
        data = self._call(
            "SendSmsMessage",
            source=source,
            destination=destination,
            sms_body=text,
            store_body="true",
        )
        if not data.get("result"):
            raise ProviderError("SendSmsMessage was not accepted", method="SendSmsMessage")
        return SendResult(
            message_id=str(data.get("message_id", "")),
            segments=int(data.get("fragments_count") or 1),
        )
