"""Read-only chain access: transaction receipts and USDC transfer checks.

One JSON-RPC call is used, ``eth_getTransactionReceipt``. A timeout or
transport failure is *indeterminate* (retry later); a fetched receipt that
does not carry a qualifying transfer is *invalid*.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from typing import Any

import httpx
import structlog

from gather.config import Settings
from gather.errors import DependencyUnavailable, ValidationFailure
from gather.money import from_units

logger = structlog.get_logger()

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class ChainUnavailable(DependencyUnavailable):
    """RPC endpoint timed out, was unreachable, or answered with an error."""


@dataclass(frozen=True)
class LogEntry:
    address: str
    topics: tuple[str, ...]
    data: str


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    status: int
    logs: tuple[LogEntry, ...] = field(default_factory=tuple)
    block_number: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class TransferEvent:
    token: str
    sender: str
    recipient: str
    amount_units: int

    @property
    def amount(self) -> Decimal:
        return from_units(self.amount_units)


class Outcome(StrEnum):
    VALID = "valid"
    INVALID = "invalid"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class VerificationResult:
    outcome: Outcome
    confirmed_amount: Decimal | None = None
    error: str | None = None

    @property
    def valid(self) -> bool:
        return self.outcome == Outcome.VALID


def validate_tx_hash(tx_hash: str) -> str:
    if not _TX_HASH_RE.match(tx_hash or ""):
        msg = "Invalid transaction hash"
        raise ValidationFailure(msg)
    return tx_hash.lower()


def is_address(value: str) -> bool:
    return bool(_ADDRESS_RE.match(value or ""))


def _topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def _hex_int(value: Any) -> int | None:
    if value in (None, "", "0x"):
        return None
    return int(value, 16)


def parse_receipt(tx_hash: str, raw: dict[str, Any]) -> TransactionReceipt:
    logs = tuple(
        LogEntry(
            address=str(entry.get("address", "")).lower(),
            topics=tuple(str(t).lower() for t in entry.get("topics") or ()),
            data=str(entry.get("data") or "0x"),
        )
        for entry in raw.get("logs") or ()
    )
    return TransactionReceipt(
        tx_hash=tx_hash,
        status=_hex_int(raw.get("status")) or 0,
        logs=logs,
        block_number=_hex_int(raw.get("blockNumber")),
    )


def decode_transfers(receipt: TransactionReceipt, token: str) -> list[TransferEvent]:
    """ERC-20 Transfer events emitted by ``token`` in this receipt."""
    token = token.lower()
    transfers = []
    for entry in receipt.logs:
        if entry.address != token or len(entry.topics) < 3 or entry.topics[0] != TRANSFER_TOPIC:
            continue
        transfers.append(TransferEvent(
            token=token,
            sender=_topic_to_address(entry.topics[1]),
            recipient=_topic_to_address(entry.topics[2]),
            amount_units=_hex_int(entry.data) or 0,
        ))
    return transfers


class ChainClient:
    """JSON-RPC client for receipt lookups."""

    def __init__(
        self,
        rpc_url: str,
        token: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.token = token.lower()
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> ChainClient:
        return cls(
            rpc_url=settings.chain_rpc_url,
            token=settings.usdc_contract,
            timeout=settings.chain_rpc_timeout_seconds,
        )

    async def _rpc(self, method: str, params: list[Any]) -> Any:  # noqa: ANN401
        body = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.rpc_url, json=body)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("chain_rpc_failed", method=method, params=params, error=str(exc) or type(exc).__name__)
            msg = "Chain RPC unavailable"
            raise ChainUnavailable(msg) from exc

        if payload.get("error"):
            logger.warning("chain_rpc_error", method=method, params=params, error=payload["error"])
            msg = "Chain RPC returned an error"
            raise ChainUnavailable(msg)
        return payload.get("result")

    async def block_number(self) -> int:
        """Latest block height; raises ChainUnavailable when the node cannot answer."""
        height = _hex_int(await self._rpc("eth_blockNumber", []))
        if height is None:
            msg = "Chain RPC returned no block number"
            raise ChainUnavailable(msg)
        return height

    async def get_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        """Receipt for ``tx_hash``, or None when the chain does not know the transaction."""
        raw = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        if not raw:
            return None
        return parse_receipt(tx_hash, raw)

    async def verify_transfer(self, tx_hash: str, recipient: str, min_amount: Decimal) -> VerificationResult:
        """Classify ``tx_hash`` as a USDC transfer of at least ``min_amount`` to ``recipient``."""
        try:
            receipt = await self.get_receipt(tx_hash)
        except ChainUnavailable as exc:
            return VerificationResult(Outcome.INDETERMINATE, error=exc.detail)

        if receipt is None:
            return VerificationResult(Outcome.INVALID, error="Transaction not found")
        if not receipt.succeeded:
            return VerificationResult(Outcome.INVALID, error="Transaction reverted")

        recipient = recipient.lower()
        transfer = next((t for t in decode_transfers(receipt, self.token) if t.recipient == recipient), None)
        if transfer is None:
            return VerificationResult(Outcome.INVALID, error="No USDC transfer to the payee wallet")
        if transfer.amount < min_amount:
            return VerificationResult(
                Outcome.INVALID,
                confirmed_amount=transfer.amount,
                error=f"Amount {transfer.amount} below claimed {min_amount}",
            )
        return VerificationResult(Outcome.VALID, confirmed_amount=transfer.amount)
