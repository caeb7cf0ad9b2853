from fastapi import APIRouter, HTTPException, Path
import logging

from app.api.models.payment import IntentStatusResponse
from app.x402.errors import IntentExpired, IntentNotFound
from app.x402.ledger import get_ledger

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{reference}", response_model=IntentStatusResponse)
async def get_intent_status(
    reference: str = Path(..., description="Payment reference issued in a 402 response")
) -> IntentStatusResponse:
    """
    Look up a payment intent without minting a new one.

    Raises:
        HTTPException: 404 if the reference is unknown or expired and swept
    """
    ledger = get_ledger()
    try:
        intent = ledger.get(reference)
    except IntentNotFound:
        raise HTTPException(status_code=404, detail="Reference not found")
    except IntentExpired:
        raise HTTPException(status_code=404, detail="Reference expired")

    return IntentStatusResponse(
        reference=intent.reference,
        status=intent.status.value,
        amount=intent.amount,
        asset=intent.asset,
        chain=intent.chain,
        createdAt=intent.created_at.isoformat(),
        expiry=ledger.expires_at(intent).isoformat(),
        expired=ledger.is_expired(intent),
        txHash=intent.tx_hash,
        paidAt=intent.paid_at.isoformat() if intent.paid_at else None,
    )
