"""
Settlement: perform or simulate the transfer for an approved mandate.

Each mandate settles at most once per process. A failed production
transfer is recorded and surfaced, and the mandate counts as spent: there
is no automatic retry of a funds transfer.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional, Protocol, Union

import httpx
from eth_account import Account
from eth_utils import keccak, to_checksum_address

from .audit import AuditLedger, EventKind, EventStatus
from .errors import (
    DuplicateSettlement,
    EscrowError,
    MandateExpired,
    SettlementFailure,
)
from .escrow import EscrowClient, EscrowRecord
from .mandate import Mandate, normalize_address
from .money import parse_amount, to_base_units

logger = logging.getLogger(__name__)


TRANSFER_SELECTOR = keccak(text="transfer(address,uint256)")[:4]


class TransferClient(Protocol):
    def transfer(self, recipient: str, amount: Decimal, idempotency_key: str) -> str:
        """Send the transfer and return its transaction hash, or raise."""
        ...


def encode_transfer_call(recipient: str, amount_base_units: int) -> str:
    """ABI-encode ``transfer(address,uint256)`` call data."""
    if amount_base_units <= 0:
        raise ValueError("Transfer amount must be > 0")
    to = normalize_address(recipient)[2:].rjust(64, "0")
    return "0x" + TRANSFER_SELECTOR.hex() + to + format(int(amount_base_units), "064x")


class Erc20TransferClient:
    """Signs an ERC-20 transfer locally and broadcasts it over JSON-RPC."""

    def __init__(
        self,
        private_key: str,
        token_address: str,
        rpc_url: str,
        chain_id: int,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        receipt_timeout: float = 120.0,
        poll_interval: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._account = Account.from_key(private_key)
        self.token_address = to_checksum_address(token_address)
        self.rpc_url = rpc_url
        self.chain_id = int(chain_id)
        self._client = client or httpx.Client(timeout=timeout)
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._ids = itertools.count(1)

    @property
    def address(self) -> str:
        return self._account.address

    def _rpc(self, method: str, params: list) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._client.post(self.rpc_url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SettlementFailure(f"RPC {method} failed: {e}") from e
        payload = response.json()
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise SettlementFailure(f"RPC {method} error: {message}")
        return payload.get("result")

    def transfer(self, recipient: str, amount: Decimal, idempotency_key: str) -> str:
        data = encode_transfer_call(recipient, to_base_units(amount))
        nonce = int(self._rpc("eth_getTransactionCount", [self.address, "pending"]), 16)
        gas_price = int(self._rpc("eth_gasPrice", []), 16)
        gas = int(
            self._rpc("eth_estimateGas", [{"from": self.address, "to": self.token_address, "data": data}]),
            16,
        )
        tx = {
            "to": self.token_address,
            "value": 0,
            "data": data,
            "nonce": nonce,
            "gas": gas,
            "gasPrice": gas_price,
            "chainId": self.chain_id,
        }
        signed = self._account.sign_transaction(tx)
        raw = "0x" + bytes(signed.raw_transaction).hex()
        tx_hash = self._rpc("eth_sendRawTransaction", [raw])
        logger.info("Transfer broadcast: %s (key %s)", tx_hash, idempotency_key)
        self._wait_for_receipt(tx_hash)
        return tx_hash

    def _wait_for_receipt(self, tx_hash: str) -> dict:
        deadline = time.monotonic() + self.receipt_timeout
        while True:
            receipt = self._rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                if int(receipt.get("status", "0x0"), 16) != 1:
                    raise SettlementFailure(f"Transaction reverted: {tx_hash}")
                return receipt
            if time.monotonic() >= deadline:
                raise SettlementFailure(f"Timed out waiting for confirmation of {tx_hash}")
            self._sleep(self.poll_interval)


@dataclass(frozen=True)
class SettlementOutcome:
    success: bool
    reference: str
    simulated: bool
    mandate_hash: str
    recipient: Optional[str]
    amount: Decimal

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "reference": self.reference,
            "simulated": self.simulated,
            "mandate_hash": self.mandate_hash,
            "recipient": self.recipient,
            "amount": str(self.amount),
        }


class SettlementExecutor:
    """Runs the transfer for an approved mandate, exactly once."""

    def __init__(
        self,
        ledger: AuditLedger,
        transfer_client: Optional[TransferClient] = None,
        escrow: Optional[EscrowClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.transfer_client = transfer_client
        self.escrow = escrow
        self._clock = clock
        self._spent: set[str] = set()
        self._lock = threading.Lock()

    def is_spent(self, mandate: Mandate) -> bool:
        with self._lock:
            return mandate.content_hash in self._spent

    def _claim(self, mandate: Mandate) -> None:
        with self._lock:
            if mandate.content_hash in self._spent:
                raise DuplicateSettlement(f"Mandate already settled: {mandate.content_hash}")
            self._spent.add(mandate.content_hash)

    def execute(
        self,
        mandate: Mandate,
        recipient_address: Optional[str],
        amount: Union[Decimal, int, str],
        production: bool,
    ) -> SettlementOutcome:
        value = parse_amount(amount)
        if value <= 0:
            raise SettlementFailure("Settlement amount must be > 0")
        if value > mandate.max_amount:
            raise SettlementFailure(f"Amount {value} exceeds mandate limit {mandate.max_amount}")
        if mandate.is_expired(self._clock()):
            raise MandateExpired(f"Mandate expired at {mandate.expiry}")
        self._claim(mandate)

        meta = {
            "mandate_hash": mandate.content_hash,
            "nonce": str(mandate.nonce),
            "recipient": recipient_address,
            "amount": str(value),
        }

        if not production:
            reference = "sim-" + mandate.content_hash[2:18]
            self.ledger.append(
                EventKind.SETTLEMENT,
                "simulated_transfer",
                EventStatus.SUCCESS,
                {**meta, "reference": reference, "simulated": True},
            )
            logger.info("Simulated settlement %s for %s", reference, mandate.content_hash)
            return SettlementOutcome(
                success=True,
                reference=reference,
                simulated=True,
                mandate_hash=mandate.content_hash,
                recipient=recipient_address,
                amount=value,
            )

        if self.transfer_client is None:
            self.ledger.append(EventKind.SETTLEMENT, "transfer", EventStatus.FAILED, {**meta, "error": "no transfer client"})
            raise SettlementFailure("No transfer client configured for production settlement")
        if not recipient_address:
            self.ledger.append(EventKind.SETTLEMENT, "transfer", EventStatus.FAILED, {**meta, "error": "no recipient address"})
            raise SettlementFailure("Recipient has no resolved address")

        try:
            tx_hash = self.transfer_client.transfer(recipient_address, value, mandate.content_hash)
        except Exception as e:
            self.ledger.append(EventKind.SETTLEMENT, "transfer", EventStatus.FAILED, {**meta, "error": str(e)})
            logger.error("Settlement failed for %s: %s", mandate.content_hash, e)
            if isinstance(e, SettlementFailure):
                raise
            raise SettlementFailure(str(e)) from e

        self.ledger.append(EventKind.SETTLEMENT, "transfer", EventStatus.SUCCESS, {**meta, "tx_hash": tx_hash})
        logger.info("Settled %s via %s", mandate.content_hash, tx_hash)
        return SettlementOutcome(
            success=True,
            reference=tx_hash,
            simulated=False,
            mandate_hash=mandate.content_hash,
            recipient=recipient_address,
            amount=value,
        )

    def release_escrow(self, escrow_id: int, revealed_data: Union[bytes, str]) -> EscrowRecord:
        if self.escrow is None:
            raise EscrowError("No escrow client configured")
        try:
            record = self.escrow.release_funds(escrow_id, revealed_data)
        except EscrowError as e:
            self.ledger.append(
                EventKind.ESCROW, "release", EventStatus.FAILED,
                {"escrow_id": escrow_id, "error": str(e)},
            )
            raise
        self.ledger.append(
            EventKind.ESCROW, "release", EventStatus.SUCCESS,
            {"escrow_id": escrow_id, "seller": record.seller, "amount": str(record.amount)},
        )
        return record
