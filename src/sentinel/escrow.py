"""
Commit-reveal escrow interface and an in-process stand-in.

Funds move into escrow on creation and leave only through a release
(revealed data hashes to the commitment) or a refund (after the deadline).
A failed call changes nothing.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, Protocol, Union

from eth_utils import keccak

from .errors import EscrowError, EscrowMismatch
from .mandate import normalize_address, normalize_hex32
from .money import parse_amount


class EscrowStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"


@dataclass
class EscrowRecord:
    escrow_id: int
    buyer: str
    seller: str
    amount: Decimal
    commitment: str
    deadline: int
    status: EscrowStatus = EscrowStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "escrow_id": self.escrow_id,
            "buyer": self.buyer,
            "seller": self.seller,
            "amount": str(self.amount),
            "commitment": self.commitment,
            "deadline": self.deadline,
            "status": self.status.value,
        }


class EscrowClient(Protocol):
    def create_escrow(
        self, buyer: str, seller: str, amount: Decimal, proof_commitment: str, duration_seconds: int
    ) -> int: ...

    def release_funds(self, escrow_id: int, revealed_proof_data: Union[bytes, str]) -> EscrowRecord: ...

    def refund(self, escrow_id: int) -> EscrowRecord: ...


def commitment_for(data: Union[bytes, str]) -> str:
    """keccak256 commitment over the data to be revealed later."""
    raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    return "0x" + keccak(raw).hex()


class LocalEscrow:
    """In-process stand-in that tracks balances like the escrow contract."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._records: dict[int, EscrowRecord] = {}
        self._balances: dict[str, Decimal] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def deposit(self, owner: str, amount: Decimal | int | str) -> None:
        key = normalize_address(owner)
        with self._lock:
            self._balances[key] = self._balances.get(key, Decimal(0)) + parse_amount(amount)

    def balance_of(self, owner: str) -> Decimal:
        with self._lock:
            return self._balances.get(normalize_address(owner), Decimal(0))

    def get(self, escrow_id: int) -> EscrowRecord:
        with self._lock:
            return self._get(escrow_id)

    def _get(self, escrow_id: int) -> EscrowRecord:
        record = self._records.get(int(escrow_id))
        if record is None:
            raise EscrowError(f"Escrow not found: {escrow_id}")
        return record

    def create_escrow(
        self,
        buyer: str,
        seller: str,
        amount: Decimal | int | str,
        proof_commitment: str,
        duration_seconds: int,
    ) -> int:
        value = parse_amount(amount)
        if value <= 0:
            raise EscrowError("Escrow amount must be > 0")
        if int(duration_seconds) <= 0:
            raise EscrowError("Escrow duration must be > 0")
        buyer_key = normalize_address(buyer)
        commitment = normalize_hex32(proof_commitment, "proof_commitment")

        with self._lock:
            available = self._balances.get(buyer_key, Decimal(0))
            if available < value:
                raise EscrowError(f"Insufficient funds: {available} < {value}")
            self._balances[buyer_key] = available - value
            escrow_id = self._next_id
            self._next_id += 1
            self._records[escrow_id] = EscrowRecord(
                escrow_id=escrow_id,
                buyer=buyer_key,
                seller=normalize_address(seller),
                amount=value,
                commitment=commitment,
                deadline=int(self._clock()) + int(duration_seconds),
            )
        return escrow_id

    def release_funds(self, escrow_id: int, revealed_proof_data: Union[bytes, str]) -> EscrowRecord:
        with self._lock:
            record = self._get(escrow_id)
            if record.status != EscrowStatus.ACTIVE:
                raise EscrowError(f"Escrow {escrow_id} is {record.status.value}")
            if commitment_for(revealed_proof_data) != record.commitment:
                raise EscrowMismatch(f"Revealed data does not match commitment for escrow {escrow_id}")
            record.status = EscrowStatus.COMPLETED
            self._balances[record.seller] = self._balances.get(record.seller, Decimal(0)) + record.amount
            return record

    def refund(self, escrow_id: int) -> EscrowRecord:
        with self._lock:
            record = self._get(escrow_id)
            if record.status != EscrowStatus.ACTIVE:
                raise EscrowError(f"Escrow {escrow_id} is {record.status.value}")
            if int(self._clock()) <= record.deadline:
                raise EscrowError(f"Escrow {escrow_id} deadline has not passed")
            record.status = EscrowStatus.REFUNDED
            self._balances[record.buyer] = self._balances.get(record.buyer, Decimal(0)) + record.amount
            return record

    def dispute(self, escrow_id: int, sender: Optional[str] = None) -> EscrowRecord:
        with self._lock:
            record = self._get(escrow_id)
            if sender is not None and normalize_address(sender) not in {record.buyer, record.seller}:
                raise EscrowError("Only buyer or seller can dispute")
            if record.status != EscrowStatus.ACTIVE:
                raise EscrowError(f"Escrow {escrow_id} is {record.status.value}")
            record.status = EscrowStatus.DISPUTED
            return record
