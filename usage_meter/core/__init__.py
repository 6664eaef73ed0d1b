"""
Core modules for usage metering.

This package contains pricing, quota/wallet reconciliation, the campaign
guard and the ingestion handlers that tie them together.
"""
