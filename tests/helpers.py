"""Test helpers: chain RPC fakes and shared constants."""

from __future__ import annotations

import json
from typing import Any

import httpx

from gather.payments.chain import TRANSFER_TOPIC, ChainClient

PAYEE = "0x1111111111111111111111111111111111111111"
SENDER = "0x2222222222222222222222222222222222222222"
USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
SERVICE_KEY = "test-service-key"
ADMIN_KEY = "test-admin-key"


def _topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def usdc_receipt(
    to: str = PAYEE,
    amount_units: int = 1_000_000,
    *,
    status: str = "0x1",
    token: str = USDC,
    sender: str = SENDER,
) -> dict[str, Any]:
    """Raw ``eth_getTransactionReceipt`` result carrying one ERC-20 Transfer."""
    return {
        "status": status,
        "blockNumber": "0x10",
        "logs": [
            {
                "address": token,
                "topics": [TRANSFER_TOPIC, _topic(sender), _topic(to)],
                "data": hex(amount_units),
            }
        ],
    }


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


class ChainStub:
    """Scripted JSON-RPC endpoint. Unknown hashes have no receipt."""

    def __init__(self) -> None:
        self.receipts: dict[str, dict[str, Any] | None] = {}
        self.unavailable = False
        self.block = 0x1234
        self.calls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.unavailable:
            raise httpx.ConnectTimeout("timed out", request=request)
        body = json.loads(request.content)
        if body["method"] == "eth_blockNumber":
            result: Any = hex(self.block)
        else:
            result = self.receipts.get(body["params"][0].lower())
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def client(self) -> ChainClient:
        return ChainClient("https://rpc.test", USDC, timeout=1.0, transport=httpx.MockTransport(self.handler))
