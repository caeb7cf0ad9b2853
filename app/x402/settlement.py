# app/x402/settlement.py
"""
Settlement verification for x402 payment intents.

Given a reference and a claimed transaction hash, the verifier asks the
blockchain data source whether that transaction really pays the intent:

1. receipt status is success (not reverted)
2. the funds went to the gateway's receiving address
3. the transferred value covers the intent amount
4. the call data carries the intent's reference as a memo

Only when every check passes is the ledger asked to mark the intent Paid.
No ledger lock is held while waiting on the network.
"""
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

import requests

from app.core.config import settings
from app.services.chain_rpc import (
    ChainDataSource,
    ChainReceipt,
    ChainRpcError,
    ChainTransaction,
    JsonRpcChainSource,
    ReceiptTimeout,
)
from app.x402.errors import (
    AlreadyPaid,
    InvalidInput,
    IntentExpired,
    PaymentGatewayError,
    PaymentMismatch,
    TransactionAlreadyUsed,
    TransactionNotFound,
    UpstreamUnavailable,
    VerificationTimeout,
)
from app.x402.ledger import IntentLedger, PaymentIntent, get_ledger, normalize_tx_hash

logger = logging.getLogger(__name__)

# USDC contract addresses by network
USDC_ADDRESSES = {
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}

NATIVE_ASSETS = {"ETH"}

ASSET_DECIMALS = {
    "ETH": 18,
    "USDC": 6,
}

# keccak256("Transfer(address,address,uint256)")
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
# transfer(address,uint256)
ERC20_TRANSFER_SELECTOR = "a9059cbb"
# selector + two 32-byte words, in hex characters
ERC20_TRANSFER_CALL_HEX_LEN = 8 + 64 + 64


@dataclass
class VerificationResult:
    """Outcome of a successful verify() call."""
    reference: str
    tx_hash: str
    intent: PaymentIntent
    already_verified: bool = False


def to_atomic_units(amount: str, decimals: int) -> int:
    """Convert a decimal amount string ("1.0") to integer token units."""
    try:
        value = Decimal(amount) * (Decimal(10) ** decimals)
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount}") from e
    if value != value.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {decimals} decimals")
    return int(value)


def topic_to_address(topic: str) -> str:
    """Extract the address from a left-padded 32-byte log topic."""
    return "0x" + topic[-40:].lower()


def get_asset_contract(asset: str, network: Optional[str] = None) -> Optional[str]:
    """Token contract for asset on network, or None for the native asset."""
    if asset.upper() in NATIVE_ASSETS:
        return None
    if settings.X402_ASSET_CONTRACT:
        return settings.X402_ASSET_CONTRACT.lower()
    network = network or settings.X402_NETWORK
    contract = USDC_ADDRESSES.get(network) if asset.upper() == "USDC" else None
    if contract is None:
        raise ValueError(f"No contract address known for {asset} on {network}")
    return contract.lower()


def memo_data(tx: ChainTransaction) -> str:
    """
    The part of the call data that may carry a payment memo.

    For a plain ERC-20 transfer() call the memo is whatever follows the
    recipient and amount words; for anything else it is the whole input.
    """
    data = tx.input[2:] if tx.input.startswith("0x") else tx.input
    if data.startswith(ERC20_TRANSFER_SELECTOR) and len(data) >= ERC20_TRANSFER_CALL_HEX_LEN:
        return data[ERC20_TRANSFER_CALL_HEX_LEN:]
    return data


def hex_contains(data: str, needle: str) -> bool:
    """True if needle occurs in the hex string data on a byte boundary."""
    start = data.find(needle)
    while start != -1:
        if start % 2 == 0:
            return True
        start = data.find(needle, start + 1)
    return False


def token_transfers_to(
    receipt: ChainReceipt, contract: str, recipient: str
) -> List[int]:
    """Values of the Transfer events emitted by contract to recipient."""
    values = []
    for log in receipt.logs:
        topics = log.get("topics") or []
        if (log.get("address") or "").lower() != contract:
            continue
        if len(topics) < 3 or topics[0].lower() != ERC20_TRANSFER_TOPIC:
            continue
        if topic_to_address(topics[2]) != recipient:
            continue
        try:
            values.append(int(log.get("data") or "0x0", 16))
        except ValueError:
            logger.warning(f"x402: Skipping Transfer log with malformed data in {receipt.transaction_hash}")
    return values


class SettlementVerifier:
    """
    Confirms that a claimed transaction satisfies a payment intent.

    Verification is safe to retry: an already-Paid intent verifies
    successfully without touching the chain, and only one call ever moves
    an intent to Paid (the ledger enforces that).
    """

    def __init__(
        self,
        ledger: Optional[IntentLedger] = None,
        chain_source: Optional[ChainDataSource] = None,
        pay_to: Optional[str] = None,
        network: Optional[str] = None,
        receipt_timeout: Optional[float] = None,
    ):
        self.ledger = ledger if ledger is not None else get_ledger()
        self.chain_source = chain_source if chain_source is not None else JsonRpcChainSource()
        self._pay_to = pay_to
        self._network = network
        self._receipt_timeout = receipt_timeout

    @property
    def pay_to(self) -> str:
        return (self._pay_to or settings.X402_PAY_TO_ADDRESS).lower()

    @property
    def network(self) -> str:
        return self._network or settings.X402_NETWORK

    @property
    def receipt_timeout(self) -> float:
        if self._receipt_timeout is not None:
            return self._receipt_timeout
        return settings.X402_RECEIPT_TIMEOUT_SECONDS

    def verify(self, reference: Optional[str], tx_hash: Optional[str]) -> VerificationResult:
        """
        Verify that tx_hash pays the intent behind reference and mark it Paid.

        Raises:
            InvalidInput: Missing reference or transaction hash
            IntentNotFound: Unknown reference
            IntentExpired: Intent is Pending past its expiry window
            TransactionNotFound: Chain has no record of tx_hash (retryable)
            VerificationTimeout: Receipt not available in time (retryable)
            PaymentMismatch: Transaction does not satisfy the intent
            UpstreamUnavailable: RPC endpoint failed (retryable)
        """
        if not reference or not reference.strip():
            raise InvalidInput("Reference and txHash required", field="reference")
        if not tx_hash or not tx_hash.strip():
            raise InvalidInput("Reference and txHash required", field="txHash")

        reference = reference.strip()
        tx_hash = normalize_tx_hash(tx_hash)

        intent = self.ledger.get(reference)
        if intent.is_paid:
            logger.info(f"x402: Reference {reference} already paid, verification is a no-op")
            return VerificationResult(reference, intent.tx_hash, intent, already_verified=True)

        if self.ledger.is_expired(intent):
            raise IntentExpired(
                f"Reference {reference} expired at {self.ledger.expires_at(intent).isoformat()}"
            )

        tx, receipt = self._fetch_settlement(tx_hash)
        self.check_payment(intent, tx, receipt)

        try:
            paid = self.ledger.mark_paid(reference, tx_hash)
        except AlreadyPaid as e:
            # Another verifier won the race; the intent is settled either way
            logger.info(f"x402: Reference {reference} was settled concurrently")
            return VerificationResult(reference, e.intent.tx_hash, e.intent, already_verified=True)
        except TransactionAlreadyUsed as e:
            raise PaymentMismatch(str(e), check="unique_transaction") from e

        return VerificationResult(reference, tx_hash, paid)

    def _fetch_settlement(self, tx_hash: str) -> Tuple[ChainTransaction, ChainReceipt]:
        """Look up the transaction and wait for its receipt, classifying failures."""
        try:
            tx = self.chain_source.get_transaction(tx_hash)
            if tx is None:
                raise TransactionNotFound(
                    f"Transaction {tx_hash} not found on {self.network}; retry once it has propagated",
                    txHash=tx_hash,
                )
            receipt = self.chain_source.await_receipt(tx, timeout=self.receipt_timeout)
        except PaymentGatewayError:
            raise
        except ReceiptTimeout as e:
            logger.warning(f"x402: {e}")
            raise VerificationTimeout(
                f"Transaction {tx_hash} has no receipt yet; retry later",
                txHash=tx_hash,
            ) from e
        except (requests.RequestException, ChainRpcError) as e:
            logger.error(f"x402: Chain lookup for {tx_hash} failed: {e}")
            raise UpstreamUnavailable(str(e)) from e
        except Exception as e:
            logger.exception(f"x402: Unexpected error verifying {tx_hash}")
            raise UpstreamUnavailable(str(e)) from e

        return tx, receipt

    def check_payment(
        self, intent: PaymentIntent, tx: ChainTransaction, receipt: ChainReceipt
    ) -> None:
        """
        Check a mined transaction against the intent's terms.

        Raises:
            PaymentMismatch: With check set to the first failing check
        """
        if not receipt.succeeded:
            raise PaymentMismatch("Transaction failed on-chain", check="receipt_status")

        try:
            required = to_atomic_units(intent.amount, ASSET_DECIMALS.get(intent.asset.upper(), 18))
            contract = get_asset_contract(intent.asset, self.network)
        except ValueError as e:
            logger.error(f"x402: Cannot evaluate terms of intent {intent.reference}: {e}")
            raise PaymentMismatch(str(e), check="terms") from e

        if contract is None:
            paid = self._check_native_transfer(tx)
        else:
            paid = self._check_token_transfer(receipt, contract)

        if paid < required:
            raise PaymentMismatch(
                f"Transferred {paid} units, {required} required",
                check="amount",
            )

        memo = memo_data(tx)
        reference = intent.reference.lower()
        if not hex_contains(memo, reference) and not hex_contains(memo, reference.encode("utf-8").hex()):
            raise PaymentMismatch(
                "Transaction call data does not carry the payment reference",
                check="reference",
            )

    def _check_native_transfer(self, tx: ChainTransaction) -> int:
        if tx.to_address != self.pay_to:
            raise PaymentMismatch(
                f"Transaction destination {tx.to_address} is not the receiving address",
                check="destination",
            )
        return tx.value

    def _check_token_transfer(self, receipt: ChainReceipt, contract: str) -> int:
        values = token_transfers_to(receipt, contract, self.pay_to)
        if not values:
            raise PaymentMismatch(
                "No token transfer to the receiving address in this transaction",
                check="destination",
            )
        return sum(values)


# Global verifier instance
_verifier: Optional[SettlementVerifier] = None
_verifier_lock = threading.Lock()


def get_verifier() -> SettlementVerifier:
    """
    Get the global verifier instance.

    Returns:
        The singleton SettlementVerifier bound to the global ledger
    """
    global _verifier

    if _verifier is None:
        with _verifier_lock:
            if _verifier is None:
                _verifier = SettlementVerifier()

    return _verifier


def reset_verifier() -> None:
    """Drop the global verifier (useful for testing)."""
    global _verifier
    with _verifier_lock:
        _verifier = None
