"""
Provider-facing types.

Payloads from the telephony provider are parsed into these records at the
edge; nothing past the provider client handles raw JSON.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class ProviderError(Exception):
    """Raised when the telephony provider rejects or fails a call."""

    def __init__(self, message: str, method: Optional[str] = None):
        super().__init__(message)
        self.method = method


@dataclass(frozen=True)
class Campaign:
    """An outbound calling list running on the provider."""
    list_id: str
    number: str
    started_at: Optional[datetime] = None
    active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any], number: str) -> "Campaign":
        if "list_id" not in data:
            raise ProviderError("call list record missing list_id")
        return cls(
            list_id=str(data["list_id"]),
            number=str(data.get("phone_number") or number),
            started_at=_parse_timestamp(data.get("start_at") or data.get("created")),
            active=bool(data.get("active", True)),
        )


@dataclass(frozen=True)
class CallSession:
    """A call session on the provider."""
    session_id: str
    finished: bool
    started_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallSession":
        if "session_id" not in data:
            raise ProviderError("call session record missing session_id")
        return cls(
            session_id=str(data["session_id"]),
            finished=bool(data.get("finished", False)),
            started_at=_parse_timestamp(data.get("start_date")),
        )


@dataclass(frozen=True)
class SendResult:
    """Accepted SMS message."""
    message_id: str
    segments: int


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class TelephonyProvider(ABC):
    """Narrow view of the remote telephony service."""

    @abstractmethod
    def terminate_campaign(self, list_id: str) -> bool:
        """Stop processing an outbound call list. Returns provider's verdict."""

    @abstractmethod
    def terminate_session(self, session_id: str) -> bool:
        """Hang up one call session."""

    @abstractmethod
    def find_active_campaigns(self, number: str, since: datetime) -> List[Campaign]:
        """Call lists using ``number`` started after ``since``."""

    @abstractmethod
    def find_active_sessions(self, number: str, since: datetime) -> List[CallSession]:
        """Call sessions involving ``number`` started after ``since``."""

    @abstractmethod
    def send_message(self, source: str, destination: str, text: str) -> SendResult:
        """Send one SMS.

        Raises:
            ProviderError: If the provider does not accept the message
        """
