# app/x402/gate.py
"""
Access gate for the protected resource.

Decides, from the optional X-Payment-Reference header, whether a caller
gets the payload, a fresh set of payment instructions, or a "still pending"
answer, and builds the corresponding HTTP 402 bodies.

The 402 body carries a single `instructions` object: where to pay, how
much, in which asset and on which chain, the reference to put in the
transaction data, and when the intent expires. Payment is proven
afterwards through /verify with the transaction hash.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.responses import JSONResponse

from x402.encoding import safe_base64_encode

from app.core.config import settings
from app.x402.errors import IntentExpired, IntentNotFound
from app.x402.ledger import IntentLedger, PaymentIntent
from app.x402.settlement import ASSET_DECIMALS, get_asset_contract, to_atomic_units

logger = logging.getLogger(__name__)

# Header names
PAYMENT_REFERENCE_HEADER = "X-Payment-Reference"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


class GateOutcome(Enum):
    PAYMENT_REQUIRED = "payment_required"
    PAYMENT_PENDING = "payment_pending"
    GRANTED = "granted"


@dataclass
class GateDecision:
    outcome: GateOutcome
    intent: PaymentIntent
    created: bool = False


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def evaluate_access(ledger: IntentLedger, reference: Optional[str]) -> GateDecision:
    """
    Decide what a request carrying reference should receive.

    Unknown references and expired Pending references get a brand new
    intent; a known Pending one is reported as pending; a Paid one is granted.
    """
    reference = (reference or "").strip()

    if reference:
        try:
            intent = ledger.get(reference)
        except IntentNotFound:
            logger.info(f"x402: Unknown reference {reference}, issuing a new intent")
        except IntentExpired:
            logger.info(f"x402: Reference {reference} expired and was swept, issuing a new intent")
        else:
            if intent.is_paid:
                return GateDecision(GateOutcome.GRANTED, intent)
            if not ledger.is_expired(intent):
                return GateDecision(GateOutcome.PAYMENT_PENDING, intent)
            logger.info(f"x402: Reference {reference} expired, issuing a new intent")

    new_reference = ledger.create()
    return GateDecision(GateOutcome.PAYMENT_REQUIRED, ledger.get(new_reference), created=True)


def build_payment_instructions(ledger: IntentLedger, intent: PaymentIntent) -> Dict[str, Any]:
    """
    Machine-readable payment instructions for an intent.

    `asset_contract` is None for the native asset; `amount_units` is the
    amount in the asset's smallest unit, as it appears on-chain.
    """
    expires_at = ledger.expires_at(intent)
    decimals = ASSET_DECIMALS.get(intent.asset.upper(), 18)
    return {
        "message": (
            f"To access this resource, send {intent.amount} {intent.asset} "
            f"on {intent.chain} network with the reference in the transaction data."
        ),
        "destination": settings.X402_PAY_TO_ADDRESS,
        "amount": intent.amount,
        "amount_units": str(to_atomic_units(intent.amount, decimals)),
        "asset": intent.asset,
        "asset_contract": get_asset_contract(intent.asset, settings.X402_NETWORK),
        "chain": intent.chain,
        "network": settings.X402_NETWORK,
        "reference": intent.reference,
        "expiry": expires_at.isoformat(),
        "expires_in_seconds": int(ledger.expiry_window.total_seconds()),
    }


def create_402_response(ledger: IntentLedger, intent: PaymentIntent) -> JSONResponse:
    """HTTP 402 Payment Required with full payment instructions."""
    return JSONResponse(
        status_code=402,
        content={
            "error": "Payment Required",
            "instructions": build_payment_instructions(ledger, intent),
        },
    )


def create_pending_response(ledger: IntentLedger, intent: PaymentIntent) -> JSONResponse:
    """HTTP 402 for a reference that is known but not yet verified."""
    return JSONResponse(
        status_code=402,
        content={
            "error": "Payment Pending",
            "message": "Reference found but payment not yet verified.",
            "reference": intent.reference,
            "expiry": ledger.expires_at(intent).isoformat(),
        },
    )


def encode_access_response(intent: PaymentIntent) -> str:
    """
    Encode settlement details for the X-PAYMENT-RESPONSE header.

    Returns:
        Base64-encoded JSON string
    """
    response_json = json.dumps({
        "success": True,
        "transaction": intent.tx_hash,
        "network": settings.X402_NETWORK,
        "reference": intent.reference,
    })
    return safe_base64_encode(response_json.encode("utf-8"))
