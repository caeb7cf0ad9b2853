from fastapi import APIRouter, Header, Request
from starlette.responses import JSONResponse
from typing import Optional
import logging

from app.core.config import settings
from app.x402.audit import (
    log_access_granted,
    log_intent_created,
    log_payment_pending,
    log_payment_required_sent,
)
from app.x402.gate import (
    GateOutcome,
    X_PAYMENT_RESPONSE_HEADER,
    create_402_response,
    create_pending_response,
    encode_access_response,
    evaluate_access,
    get_client_ip,
)
from app.x402.ledger import get_ledger

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/resource")
async def get_protected_resource(
    request: Request,
    x_payment_reference: Optional[str] = Header(None, alias="X-Payment-Reference"),
):
    """
    The protected resource.

    Without a valid reference a new payment intent is issued and 402 is
    returned with payment instructions. A known but unverified reference
    gets 402 Payment Pending. A verified reference gets the payload.
    """
    ledger = get_ledger()
    client_ip = get_client_ip(request)
    decision = evaluate_access(ledger, x_payment_reference)
    intent = decision.intent

    if decision.outcome == GateOutcome.GRANTED:
        logger.info(f"x402: Access granted to {client_ip} for reference {intent.reference}")
        log_access_granted(intent.reference, intent.tx_hash, client_ip=client_ip)
        content = {
            "status": "success",
            "data": settings.PROTECTED_CONTENT,
            "reference": intent.reference,
        }
        if settings.PROTECTED_SECRET_CODE:
            content["secret_code"] = settings.PROTECTED_SECRET_CODE
        return JSONResponse(
            content=content,
            headers={X_PAYMENT_RESPONSE_HEADER: encode_access_response(intent)},
        )

    if decision.outcome == GateOutcome.PAYMENT_PENDING:
        logger.info(f"x402: Reference {intent.reference} still pending for {client_ip}")
        log_payment_pending(intent.reference, client_ip=client_ip)
        return create_pending_response(ledger, intent)

    log_intent_created(
        intent.reference, intent.amount, intent.asset, intent.chain, client_ip=client_ip
    )
    log_payment_required_sent(
        reference=intent.reference,
        pay_to=settings.X402_PAY_TO_ADDRESS,
        amount=intent.amount,
        asset=intent.asset,
        network=settings.X402_NETWORK,
        expiry=ledger.expires_at(intent).isoformat(),
        client_ip=client_ip,
    )
    logger.info(f"x402: Payment required from {client_ip}, issued reference {intent.reference}")
    return create_402_response(ledger, intent)
