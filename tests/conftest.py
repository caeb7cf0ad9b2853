# tests/conftest.py
"""
Shared helpers for payment gateway tests.

Transactions are built the way a wallet would submit a USDC payment on
Base: an ERC-20 transfer() call with the payment reference appended to the
call data, and a receipt carrying the matching Transfer event.
"""
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from unittest.mock import patch

import pytest

from app.services.chain_rpc import (
    ChainDataSource,
    ChainReceipt,
    ChainTransaction,
    ReceiptTimeout,
)
from app.x402.settlement import ERC20_TRANSFER_TOPIC, USDC_ADDRESSES

PAY_TO = "0x679d879f5d71e165becf5fef4aeb595e82c055e0"
PAYER = "0x1234567890abcdef1234567890abcdef12345678"
OTHER_ADDRESS = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"
USDC_BASE = USDC_ADDRESSES["base"].lower()
ONE_USDC = 1_000_000


def pad_word(value: str) -> str:
    """Left-pad a hex string (no 0x) to a 32-byte word."""
    return value.rjust(64, "0")


def make_tx_hash(n: int) -> str:
    return "0x" + pad_word(format(n, "x"))


def make_usdc_payment(
    tx_hash: str,
    reference: Optional[str],
    amount: int = ONE_USDC,
    to: str = PAY_TO,
    status: int = 1,
    contract: str = USDC_BASE,
):
    """Build a (transaction, receipt) pair for a USDC transfer() payment."""
    call_data = "a9059cbb" + pad_word(to[2:]) + pad_word(format(amount, "x"))
    if reference:
        call_data += reference
    tx = ChainTransaction(
        hash=tx_hash,
        from_address=PAYER,
        to_address=contract,
        value=0,
        input="0x" + call_data,
        block_number=100,
    )
    receipt = ChainReceipt(
        transaction_hash=tx_hash,
        status=status,
        block_number=100,
        logs=[{
            "address": contract,
            "topics": [ERC20_TRANSFER_TOPIC, "0x" + pad_word(PAYER[2:]), "0x" + pad_word(to[2:])],
            "data": "0x" + pad_word(format(amount, "x")),
        }],
    )
    return tx, receipt


class FakeChainSource(ChainDataSource):
    """In-memory chain: transactions and receipts registered by the test."""

    def __init__(self):
        self.transactions: Dict[str, ChainTransaction] = {}
        self.receipts: Dict[str, ChainReceipt] = {}
        self.error: Optional[Exception] = None
        self.get_calls = 0
        self._lock = threading.Lock()

    def add(self, tx: ChainTransaction, receipt: Optional[ChainReceipt] = None) -> None:
        self.transactions[tx.hash] = tx
        if receipt is not None:
            self.receipts[tx.hash] = receipt

    def get_transaction(self, tx_hash):
        with self._lock:
            self.get_calls += 1
        if self.error is not None:
            raise self.error
        return self.transactions.get(tx_hash)

    def await_receipt(self, tx, timeout):
        receipt = self.receipts.get(tx.hash)
        if receipt is None:
            raise ReceiptTimeout(f"No receipt for {tx.hash} after {timeout:.0f}s")
        return receipt


class MutableClock:
    """Controllable UTC clock for expiry tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def chain():
    return FakeChainSource()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture(autouse=True)
def disable_audit_log():
    """Keep tests from writing to the real audit log."""
    with patch("app.x402.audit.settings") as mock_settings:
        mock_settings.X402_AUDIT_ENABLED = False
        mock_settings.X402_AUDIT_LOG_PATH = "/nonexistent/x402_audit.jsonl"
        yield mock_settings
