"""
x402 Payment Protocol Integration Module.

This module implements an HTTP 402 payment gate: a protected resource is
withheld until the caller proves, with an on-chain transaction hash, that
the requested payment was made.

Key components:
- ledger: payment intents keyed by reference, Pending -> Paid lifecycle
- settlement: verifies a claimed transaction against an intent's terms
- gate: admit/deny decisions and 402 instruction bodies
- errors: failure taxonomy with HTTP mapping
- audit: payment event audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
