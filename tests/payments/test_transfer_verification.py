"""On-chain USDC transfer classification."""

from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from gather.payments.chain import ChainClient, Outcome
from helpers import PAYEE, USDC, ChainStub, tx_hash, usdc_receipt


class TestVerifyTransfer:
    @pytest.mark.asyncio
    async def test_valid_transfer(self, chain_stub: ChainStub, chain: ChainClient):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(amount_units=5_000_000)
        result = await chain.verify_transfer(tx_hash(1), PAYEE, Decimal("5"))
        assert result.outcome == Outcome.VALID
        assert result.valid
        assert result.confirmed_amount == Decimal("5")

    @pytest.mark.asyncio
    async def test_overpayment_is_valid(self, chain_stub: ChainStub, chain: ChainClient):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(amount_units=7_000_000)
        result = await chain.verify_transfer(tx_hash(1), PAYEE, Decimal("5"))
        assert result.outcome == Outcome.VALID
        assert result.confirmed_amount == Decimal("7")

    @pytest.mark.asyncio
    async def test_short_transfer(self, chain_stub: ChainStub, chain: ChainClient):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(amount_units=4_990_000)
        result = await chain.verify_transfer(tx_hash(1), PAYEE, Decimal("5"))
        assert result.outcome == Outcome.INVALID
        assert result.confirmed_amount == Decimal("4.99")

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, chain: ChainClient):
        result = await chain.verify_transfer(tx_hash(404), PAYEE, Decimal("1"))
        assert result.outcome == Outcome.INVALID
        assert result.error == "Transaction not found"

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, chain_stub: ChainStub, chain: ChainClient):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(status="0x0")
        result = await chain.verify_transfer(tx_hash(1), PAYEE, Decimal("1"))
        assert result.outcome == Outcome.INVALID
        assert result.error == "Transaction reverted"

    @pytest.mark.asyncio
    async def test_transfer_to_someone_else(self, chain_stub: ChainStub, chain: ChainClient):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(to="0x3333333333333333333333333333333333333333")
        result = await chain.verify_transfer(tx_hash(1), PAYEE, Decimal("1"))
        assert result.outcome == Outcome.INVALID

    @pytest.mark.asyncio
    async def test_other_token_does_not_count(self, chain_stub: ChainStub, chain: ChainClient):
        chain_stub.receipts[tx_hash(1)] = usdc_receipt(token="0x4444444444444444444444444444444444444444")
        result = await chain.verify_transfer(tx_hash(1), PAYEE, Decimal("1"))
        assert result.outcome == Outcome.INVALID

    @pytest.mark.asyncio
    async def test_timeout_is_indeterminate(self, chain_stub: ChainStub, chain: ChainClient):
        chain_stub.unavailable = True
        result = await chain.verify_transfer(tx_hash(1), PAYEE, Decimal("1"))
        assert result.outcome == Outcome.INDETERMINATE
        assert result.error

    @pytest.mark.asyncio
    async def test_rpc_error_is_indeterminate(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "busy"}})

        client = ChainClient("https://rpc.test", USDC, transport=httpx.MockTransport(handler))
        result = await client.verify_transfer(tx_hash(1), PAYEE, Decimal("1"))
        assert result.outcome == Outcome.INDETERMINATE

    @pytest.mark.asyncio
    async def test_http_error_is_indeterminate(self):
        client = ChainClient("https://rpc.test", USDC, transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        result = await client.verify_transfer(tx_hash(1), PAYEE, Decimal("1"))
        assert result.outcome == Outcome.INDETERMINATE
