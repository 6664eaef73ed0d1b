"""
Inbound payload parsing.

Webhook and API bodies arrive as loose JSON. They are validated and coerced
into frozen records here, before anything reaches the reconciler.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError

SMS_MAX_LENGTH = 765

_DURATION_KEYS = ("duration", "durationSeconds", "callDuration")


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def normalize_number(number: Any) -> str:
    """Reduce a phone number to digits, adding the country prefix to 10-digit numbers."""
    digits = re.sub(r"\D", "", str(number))
    if len(digits) == 10 and not digits.startswith("7"):
        digits = "7" + digits
    return digits


def parse_duration(value: Any) -> int:
    """Coerce a reported call duration to whole seconds, rounding up.

    Raises:
        ValidationError: If the value is missing, not a number, or not positive
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"Invalid call duration: {value!r}")
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid call duration: {value!r}")
    if math.isnan(seconds) or math.isinf(seconds) or seconds <= 0:
        raise ValidationError(f"Invalid call duration: {value!r}")
    return math.ceil(seconds)


@dataclass(frozen=True)
class CallCompletionPayload:
    """A finished call reported by the provider."""
    caller: str
    callee: str
    duration_seconds: int
    direction: str
    status: str
    record_url: Optional[str] = None
    assistant_id: Optional[str] = None
    history: List[Any] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "CallCompletionPayload":
        """Validate a call-completion webhook body.

        Raises:
            ValidationError: If the body is malformed
        """
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")

        duration = parse_duration(_first(data, *_DURATION_KEYS))

        caller = _first(data, "caller", "callerNumber")
        if not caller or not str(caller).strip():
            raise ValidationError("caller is required")

        direction = data.get("direction")
        if direction is None:
            direction = "inbound" if data.get("incoming") else "outbound"
        direction = str(direction).lower()
        if direction not in ("inbound", "outbound"):
            raise ValidationError(f"Unknown call direction: {direction}")

        history = data.get("history") or []
        if not isinstance(history, list):
            raise ValidationError("history must be a list")

        assistant_id = data.get("assistantId")
        return cls(
            caller=str(caller).strip(),
            callee=str(_first(data, "callee", "calleeNumber") or "").strip(),
            duration_seconds=duration,
            direction=direction,
            status=str(data.get("status") or "unknown"),
            record_url=_first(data, "record_url", "recordUrl", "recordingUrl"),
            assistant_id=str(assistant_id) if assistant_id is not None else None,
            history=history,
        )


@dataclass(frozen=True)
class SmsSendRequest:
    """An SMS batch requested by an account."""
    source: str
    destinations: Tuple[str, ...]
    text: str

    @classmethod
    def from_dict(cls, data: Any, max_length: int = SMS_MAX_LENGTH) -> "SmsSendRequest":
        """Validate an SMS send request body.

        Raises:
            ValidationError: If the body is malformed
        """
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")

        source = _first(data, "source", "sourceNumber", "srcNumber")
        if not source or not str(source).strip():
            raise ValidationError("Source number is required")

        destinations = _first(data, "destinations", "destinationNumbers", "dstNumbers")
        if not isinstance(destinations, list) or not destinations:
            raise ValidationError("At least one destination number is required")

        text = data.get("text")
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message text is required")
        text = text.strip()
        if len(text) > max_length:
            raise ValidationError(f"Message text must not exceed {max_length} characters")

        normalized = tuple(normalize_number(d) for d in destinations)
        if not all(normalized):
            raise ValidationError("Destination numbers must contain digits")

        return cls(source=str(source).strip(), destinations=normalized, text=text)
