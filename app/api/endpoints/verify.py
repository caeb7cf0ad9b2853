from fastapi import APIRouter, Body, Request
from fastapi.exceptions import RequestValidationError
from typing import Optional
from starlette.responses import JSONResponse
import logging

from app.api.models.payment import VerifyRequest, VerifyResponse
from app.x402.audit import (
    log_error,
    log_payment_rejected,
    log_payment_verified,
    log_verification_deferred,
    log_verification_requested,
)
from app.x402.errors import (
    InvalidInput,
    PaymentGatewayError,
    PaymentMismatch,
    UpstreamUnavailable,
)
from app.x402.gate import get_client_ip
from app.x402.settlement import get_verifier

logger = logging.getLogger(__name__)

router = APIRouter()

RETRY_AFTER_SECONDS = 10


def _error_response(error: PaymentGatewayError) -> JSONResponse:
    headers = {}
    if error.retryable:
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
    return JSONResponse(status_code=error.status_code, content=error.to_dict(), headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Answer malformed request bodies with 400 Invalid input instead of 422."""
    logger.warning(f"x402: Rejected malformed request to {request.url.path}: {exc.errors()}")
    return _error_response(InvalidInput("Reference and txHash required"))


# Plain def: FastAPI runs it in the threadpool, so the blocking RPC wait
# does not stall the event loop.
@router.post("/verify", response_model=VerifyResponse)
def verify_payment(request: Request, body: Optional[VerifyRequest] = Body(None)):
    """
    Verify an on-chain payment for a reference.

    Returns 200 once the transaction is confirmed to pay the intent,
    400 for missing fields, unknown transactions, mismatched or failed
    payments and expired intents, 202 when the receipt is not available
    yet, 404 for an unknown reference and 500 when the chain RPC fails.
    """
    if body is None:
        body = VerifyRequest()
    client_ip = get_client_ip(request)
    log_verification_requested(body.reference, body.txHash, client_ip=client_ip)

    try:
        result = get_verifier().verify(body.reference, body.txHash)

    except UpstreamUnavailable as e:
        logger.error(f"x402: Upstream failure verifying {body.reference}: {e.detail}")
        log_error("upstream_unavailable", e.detail, {"tx_hash": body.txHash}, reference=body.reference, client_ip=client_ip)
        return _error_response(e)
    except PaymentGatewayError as e:
        if e.retryable:
            logger.info(f"x402: Verification of {body.reference} deferred: {e.detail}")
            log_verification_deferred(body.reference, body.txHash, e.error, e.detail, client_ip=client_ip)
        else:
            logger.warning(f"x402: Verification of {body.reference} rejected: {e.detail}")
            log_payment_rejected(
                body.reference,
                body.txHash,
                e.error,
                e.detail,
                check=e.check if isinstance(e, PaymentMismatch) else None,
                client_ip=client_ip,
            )
        return _error_response(e)
    except Exception as e:
        logger.exception(f"x402: Unexpected error verifying {body.reference}")
        log_error(type(e).__name__, str(e), reference=body.reference, client_ip=client_ip)
        return _error_response(UpstreamUnavailable(str(e)))

    log_payment_verified(
        result.reference, result.tx_hash, already_verified=result.already_verified, client_ip=client_ip
    )
    return VerifyResponse(
        status="verified",
        message="Payment confirmed. You can now access /resource with your reference header.",
        reference=result.reference,
        txHash=result.tx_hash,
        alreadyVerified=result.already_verified,
    )
