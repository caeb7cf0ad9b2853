from pydantic import BaseModel, Field
from typing import Optional


class VerifyRequest(BaseModel):
    """
    Request model for payment verification.

    Both fields are optional here so that a missing field is answered
    with 400 rather than a validation 422.
    """
    reference: Optional[str] = Field(None, description="Payment reference from the 402 instructions", example="ab12cd34ef567890")
    txHash: Optional[str] = Field(None, description="Hash of the on-chain payment transaction", example="0x5c504ed432cb51138bcf09aa5e8a410dd4a1e204ef84bfed1be16dfba1b22060")


class VerifyResponse(BaseModel):
    """Response model for a successful verification."""
    status: str = Field(..., description="Always 'verified' on success")
    message: str
    reference: str
    txHash: Optional[str] = None
    alreadyVerified: bool = Field(False, description="True when the reference had been verified by an earlier call")


class IntentStatusResponse(BaseModel):
    """Read-only view of a payment intent."""
    reference: str
    status: str = Field(..., description="'pending' or 'paid'")
    amount: str
    asset: str
    chain: str
    createdAt: str
    expiry: str
    expired: bool
    txHash: Optional[str] = None
    paidAt: Optional[str] = None
