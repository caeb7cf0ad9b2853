# tests/test_chain_rpc.py
"""
Unit tests for the EVM JSON-RPC chain data source.
"""
import pytest
from unittest.mock import patch, MagicMock

import requests

from app.services.chain_rpc import (
    ChainRpcError,
    ChainTransaction,
    JsonRpcChainSource,
    ReceiptTimeout,
    parse_receipt,
    parse_transaction,
)

RPC_URL = "https://rpc.example.org/"
TX_HASH = "0x" + "ab" * 32

TX_RESULT = {
    "hash": TX_HASH.upper().replace("0X", "0x"),
    "from": "0x1234567890ABCDEF1234567890ABCDEF12345678",
    "to": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "value": "0x0",
    "input": "0xA9059CBB",
    "blockNumber": "0x64",
}

RECEIPT_RESULT = {
    "transactionHash": TX_HASH,
    "status": "0x1",
    "blockNumber": "0x64",
    "logs": [{"address": "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913", "topics": [], "data": "0x"}],
}


def rpc_response(result=None, error=None):
    response = MagicMock()
    response.raise_for_status.return_value = None
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    response.json.return_value = body
    return response


class TestParsing:
    """Test conversion of RPC results into dataclasses."""

    def test_parse_transaction_normalizes_case(self):
        tx = parse_transaction(TX_RESULT)

        assert tx.hash == TX_HASH
        assert tx.from_address == "0x1234567890abcdef1234567890abcdef12345678"
        assert tx.to_address == "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
        assert tx.value == 0
        assert tx.input == "0xa9059cbb"
        assert tx.block_number == 100

    def test_parse_pending_transaction(self):
        """A transaction not yet mined has no block number."""
        tx = parse_transaction({**TX_RESULT, "blockNumber": None, "value": "0xde0b6b3a7640000"})

        assert tx.block_number is None
        assert tx.value == 10 ** 18

    def test_parse_contract_creation(self):
        tx = parse_transaction({**TX_RESULT, "to": None})
        assert tx.to_address is None

    def test_parse_transaction_missing_hash(self):
        with pytest.raises(ChainRpcError):
            parse_transaction({"value": "0x0"})

    def test_parse_receipt(self):
        receipt = parse_receipt(RECEIPT_RESULT)

        assert receipt.succeeded is True
        assert receipt.block_number == 100
        assert len(receipt.logs) == 1

    def test_parse_reverted_receipt(self):
        receipt = parse_receipt({**RECEIPT_RESULT, "status": "0x0"})
        assert receipt.succeeded is False

    def test_parse_receipt_bad_status(self):
        with pytest.raises(ChainRpcError):
            parse_receipt({**RECEIPT_RESULT, "status": "not-hex"})


class TestRpcCall:
    """Test the JSON-RPC request/response handling."""

    @patch("app.services.chain_rpc.requests.post")
    def test_get_transaction_sends_json_rpc(self, mock_post):
        mock_post.return_value = rpc_response(TX_RESULT)
        source = JsonRpcChainSource(rpc_url=RPC_URL, request_timeout=5)

        tx = source.get_transaction(TX_HASH)

        assert tx.hash == TX_HASH
        args, kwargs = mock_post.call_args
        assert args[0] == RPC_URL
        assert kwargs["json"]["method"] == "eth_getTransactionByHash"
        assert kwargs["json"]["params"] == [TX_HASH]
        assert kwargs["timeout"] == 5

    @patch("app.services.chain_rpc.requests.post")
    def test_unknown_transaction_returns_none(self, mock_post):
        mock_post.return_value = rpc_response(None)
        source = JsonRpcChainSource(rpc_url=RPC_URL)

        assert source.get_transaction(TX_HASH) is None

    @patch("app.services.chain_rpc.requests.post")
    def test_rpc_error_raises(self, mock_post):
        mock_post.return_value = rpc_response(error={"code": -32000, "message": "header not found"})
        source = JsonRpcChainSource(rpc_url=RPC_URL)

        with pytest.raises(ChainRpcError, match="RPC error"):
            source.get_transaction(TX_HASH)

    @patch("app.services.chain_rpc.requests.post")
    def test_missing_result_raises(self, mock_post):
        response = MagicMock()
        response.json.return_value = {"jsonrpc": "2.0", "id": 1}
        mock_post.return_value = response
        source = JsonRpcChainSource(rpc_url=RPC_URL)

        with pytest.raises(ChainRpcError, match="missing 'result'"):
            source.get_transaction(TX_HASH)

    @patch("app.services.chain_rpc.requests.post")
    def test_http_failure_propagates(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("connection refused")
        source = JsonRpcChainSource(rpc_url=RPC_URL)

        with pytest.raises(requests.RequestException):
            source.get_transaction(TX_HASH)

    @patch("app.services.chain_rpc.settings")
    def test_defaults_from_settings(self, mock_settings):
        mock_settings.X402_RPC_URL = "https://mainnet.base.org/"
        mock_settings.X402_RPC_TIMEOUT_SECONDS = 7
        mock_settings.X402_RECEIPT_POLL_INTERVAL_SECONDS = 3

        source = JsonRpcChainSource()

        assert source.rpc_url == "https://mainnet.base.org/"
        assert source.request_timeout == 7
        assert source.poll_interval == 3


class TestAwaitReceipt:
    """Test bounded receipt polling."""

    def _tx(self):
        return ChainTransaction(hash=TX_HASH, from_address=None, to_address=None, value=0, input="0x")

    @patch("app.services.chain_rpc.time.sleep")
    @patch("app.services.chain_rpc.requests.post")
    def test_receipt_available_immediately(self, mock_post, mock_sleep):
        mock_post.return_value = rpc_response(RECEIPT_RESULT)
        source = JsonRpcChainSource(rpc_url=RPC_URL)

        receipt = source.await_receipt(self._tx(), timeout=30)

        assert receipt.succeeded is True
        assert mock_post.call_args[1]["json"]["method"] == "eth_getTransactionReceipt"
        mock_sleep.assert_not_called()

    @patch("app.services.chain_rpc.time.sleep")
    @patch("app.services.chain_rpc.requests.post")
    def test_polls_until_receipt_appears(self, mock_post, mock_sleep):
        mock_post.side_effect = [rpc_response(None), rpc_response(None), rpc_response(RECEIPT_RESULT)]
        source = JsonRpcChainSource(rpc_url=RPC_URL, poll_interval=1)

        receipt = source.await_receipt(self._tx(), timeout=30)

        assert receipt.transaction_hash == TX_HASH
        assert mock_post.call_count == 3
        assert mock_sleep.call_count == 2

    @patch("app.services.chain_rpc.time.sleep")
    @patch("app.services.chain_rpc.time.monotonic")
    @patch("app.services.chain_rpc.requests.post")
    def test_times_out(self, mock_post, mock_monotonic, mock_sleep):
        mock_post.return_value = rpc_response(None)
        mock_monotonic.side_effect = [0.0, 5.0, 11.0]
        source = JsonRpcChainSource(rpc_url=RPC_URL, poll_interval=5)

        with pytest.raises(ReceiptTimeout):
            source.await_receipt(self._tx(), timeout=10)

        assert mock_post.call_count == 2
        mock_sleep.assert_called_once_with(5)
