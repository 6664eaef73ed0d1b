"""
Telephony provider access.

Provides the provider interface the billing core depends on and its HTTP
implementation.
"""

from .client import HttpTelephonyProvider
from .types import CallSession, Campaign, ProviderError, SendResult, TelephonyProvider

__all__ = [
    "CallSession",
    "Campaign",
    "HttpTelephonyProvider",
    "ProviderError",
    "SendResult",
    "TelephonyProvider",
]
