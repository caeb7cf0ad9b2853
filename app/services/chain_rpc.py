# app/services/chain_rpc.py
"""
Read-only EVM JSON-RPC client used to confirm payments.

The gateway treats the chain as an untrusted, possibly slow external system:
every HTTP call carries a timeout and receipt waiting is bounded.
"""
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from app.core.config import settings

logger = logging.getLogger(__name__)


class ChainRpcError(Exception):
    """The RPC endpoint answered with an error or a malformed response."""


class ReceiptTimeout(Exception):
    """No receipt appeared before the deadline."""


@dataclass
class ChainTransaction:
    hash: str
    from_address: Optional[str]
    to_address: Optional[str]  # None for contract creation
    value: int  # wei
    input: str  # 0x-prefixed call data
    block_number: Optional[int] = None


@dataclass
class ChainReceipt:
    transaction_hash: str
    status: int  # 1 = success, 0 = reverted
    block_number: Optional[int] = None
    logs: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def _hex_to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    return int(value, 16)


def parse_transaction(data: Dict[str, Any]) -> ChainTransaction:
    """Build a ChainTransaction from an eth_getTransactionByHash result."""
    try:
        return ChainTransaction(
            hash=data["hash"].lower(),
            from_address=(data.get("from") or "").lower() or None,
            to_address=(data.get("to") or "").lower() or None,
            value=_hex_to_int(data.get("value")) or 0,
            input=(data.get("input") or "0x").lower(),
            block_number=_hex_to_int(data.get("blockNumber")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ChainRpcError(f"Malformed transaction object: {e}") from e


def parse_receipt(data: Dict[str, Any]) -> ChainReceipt:
    """Build a ChainReceipt from an eth_getTransactionReceipt result."""
    try:
        return ChainReceipt(
            transaction_hash=data["transactionHash"].lower(),
            status=_hex_to_int(data.get("status")) or 0,
            block_number=_hex_to_int(data.get("blockNumber")),
            logs=list(data.get("logs") or []),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ChainRpcError(f"Malformed receipt object: {e}") from e


class ChainDataSource(ABC):
    """Blockchain lookups needed by the settlement verifier."""

    @abstractmethod
    def get_transaction(self, tx_hash: str) -> Optional[ChainTransaction]:
        """Return the transaction, or None if the chain has no record of it."""

    @abstractmethod
    def await_receipt(self, tx: ChainTransaction, timeout: float) -> ChainReceipt:
        """
        Wait for the transaction's inclusion receipt.

        Raises:
            ReceiptTimeout: If no receipt is available within timeout seconds
        """


class JsonRpcChainSource(ChainDataSource):
    """ChainDataSource backed by an EVM JSON-RPC HTTP endpoint."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        request_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.rpc_url = rpc_url or str(settings.X402_RPC_URL)
        self.request_timeout = request_timeout or settings.X402_RPC_TIMEOUT_SECONDS
        self.poll_interval = poll_interval or settings.X402_RECEIPT_POLL_INTERVAL_SECONDS
        self._http = session or requests
        self._ids = itertools.count(1)

    def _rpc_call(self, method: str, params: List[Any]) -> Any:
        """
        Perform one JSON-RPC call.

        Raises:
            RequestException: If the HTTP request fails
            ChainRpcError: If the endpoint reports an error
        """
        response = self._http.post(
            self.rpc_url,
            json={
                "jsonrpc": "2.0",
                "method": method,
                "params": params,
                "id": next(self._ids),
            },
            timeout=self.request_timeout,
        )
        response.raise_for_status()

        try:
            result = response.json()
        except ValueError as e:
            raise ChainRpcError(f"Invalid JSON from RPC endpoint: {e}") from e

        if "error" in result:
            raise ChainRpcError(f"RPC error: {result['error']}")

        if "result" not in result:
            raise ChainRpcError("Invalid RPC response: missing 'result' field")

        return result["result"]

    def get_transaction(self, tx_hash: str) -> Optional[ChainTransaction]:
        data = self._rpc_call("eth_getTransactionByHash", [tx_hash])
        if data is None:
            logger.info(f"Transaction {tx_hash} not found at {self.rpc_url}")
            return None
        return parse_transaction(data)

    def get_receipt(self, tx_hash: str) -> Optional[ChainReceipt]:
        data = self._rpc_call("eth_getTransactionReceipt", [tx_hash])
        if data is None:
            return None
        return parse_receipt(data)

    def await_receipt(self, tx: ChainTransaction, timeout: float) -> ChainReceipt:
        deadline = time.monotonic() + timeout

        while True:
            receipt = self.get_receipt(tx.hash)
            if receipt is not None:
                return receipt

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReceiptTimeout(
                    f"No receipt for {tx.hash} after {timeout:.0f}s"
                )

            logger.debug(f"Receipt for {tx.hash} not available yet, polling again")
            time.sleep(min(self.poll_interval, remaining))
