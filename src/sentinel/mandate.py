"""
Mandate creation, signing, and verification.

A Mandate is a signed, time-bound authorization for the agent to move up
to ``max_amount``. It is signed as EIP-712 typed data under a domain that
names the deployment (chain id and registry address), so a mandate cannot
be replayed against another deployment.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak

from .errors import MandateExpired, MandateSignatureError
from .money import parse_amount, to_base_units

logger = logging.getLogger(__name__)


DOMAIN_NAME = "MNEESentinel"
DOMAIN_VERSION = "1"
DEFAULT_CHAIN_ID = 84532
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

MANDATE_TYPES = {
    "Mandate": [
        {"name": "agent", "type": "address"},
        {"name": "maxAmount", "type": "uint256"},
        {"name": "expiry", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "conditionsHash", "type": "bytes32"},
    ],
}

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_HEX32_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


@dataclass(frozen=True)
class Mandate:
    """A signed authorization. Never edited after creation."""

    agent: str
    max_amount: Decimal
    issued_at: int
    expiry: int
    nonce: int
    conditions: tuple[str, ...]
    chain_id: int
    verifying_contract: str
    signature: str
    content_hash: str

    @property
    def max_amount_base_units(self) -> int:
        return to_base_units(self.max_amount)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) > self.expiry

    def seconds_remaining(self, now: Optional[float] = None) -> int:
        return max(0, int(self.expiry - (time.time() if now is None else now)))

    def to_eip712_data(self) -> dict[str, Any]:
        return build_mandate_typed_data(
            agent=self.agent,
            max_amount_base_units=self.max_amount_base_units,
            expiry=self.expiry,
            nonce=self.nonce,
            conditions=self.conditions,
            chain_id=self.chain_id,
            verifying_contract=self.verifying_contract,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "max_amount": str(self.max_amount),
            "issued_at": self.issued_at,
            "expiry": self.expiry,
            "nonce": self.nonce,
            "conditions": list(self.conditions),
            "chain_id": self.chain_id,
            "verifying_contract": self.verifying_contract,
            "signature": self.signature,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Mandate":
        return cls(
            agent=normalize_address(str(d["agent"])),
            max_amount=parse_amount(d["max_amount"]),
            issued_at=int(d["issued_at"]),
            expiry=int(d["expiry"]),
            nonce=int(d["nonce"]),
            conditions=tuple(str(c) for c in d.get("conditions", [])),
            chain_id=int(d["chain_id"]),
            verifying_contract=normalize_address(str(d["verifying_contract"])),
            signature=_normalize_hex(str(d["signature"]), "signature"),
            content_hash=normalize_hex32(str(d["content_hash"]), "content_hash"),
        )


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def normalize_hex32(value: str, field_name: str) -> str:
    candidate = value.strip()
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate
    if not _HEX32_RE.match(candidate):
        raise ValueError(f"Invalid {field_name}: expected 32-byte hex")
    return candidate.lower()


def _normalize_hex(value: str, field_name: str) -> str:
    candidate = value.strip()
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate
    try:
        bytes.fromhex(candidate[2:])
    except ValueError as e:
        raise ValueError(f"Invalid {field_name}: not hex") from e
    return candidate.lower()


def canonical_json_bytes(value: Any) -> bytes:
    """Serialize JSON using deterministic ordering and no insignificant whitespace."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def canonical_json_hash(value: Any) -> str:
    """Return keccak256 hash of canonical JSON bytes."""
    return "0x" + keccak(canonical_json_bytes(value)).hex()


def conditions_hash(conditions: Sequence[str]) -> str:
    """Conditions are hashed in the given order; order is part of the mandate."""
    return canonical_json_hash([str(c) for c in conditions])


def build_mandate_typed_data(
    *,
    agent: str,
    max_amount_base_units: int,
    expiry: int,
    nonce: int,
    conditions: Sequence[str],
    chain_id: int,
    verifying_contract: str,
    domain_name: str = DOMAIN_NAME,
    domain_version: str = DOMAIN_VERSION,
) -> dict[str, Any]:
    if max_amount_base_units <= 0:
        raise ValueError("maxAmount must be > 0")
    if expiry < 0:
        raise ValueError("expiry must be >= 0")
    if nonce < 0:
        raise ValueError("nonce must be >= 0")

    return {
        "domain": {
            "name": domain_name,
            "version": domain_version,
            "chainId": int(chain_id),
            "verifyingContract": normalize_address(verifying_contract),
        },
        "types": MANDATE_TYPES,
        "primaryType": "Mandate",
        "message": {
            "agent": normalize_address(agent),
            "maxAmount": int(max_amount_base_units),
            "expiry": int(expiry),
            "nonce": int(nonce),
            "conditionsHash": conditions_hash(conditions),
        },
    }


def mandate_hash(eip712_data: dict[str, Any]) -> str:
    """Compute the EIP-712 digest used as the mandate content hash."""
    signable = encode_typed_data(
        eip712_data["domain"],
        eip712_data["types"],
        eip712_data["message"],
    )
    digest = keccak(b"\x19" + signable.version + signable.header + signable.body)
    return "0x" + digest.hex()


class MandateSigner:
    """Signs mandates with the agent's key. Nonces never repeat per signer."""

    def __init__(
        self,
        private_key: str,
        chain_id: int = DEFAULT_CHAIN_ID,
        verifying_contract: str = ZERO_ADDRESS,
        clock: Callable[[], float] = time.time,
        nonce_source: Callable[[], int] = lambda: secrets.randbits(64),
    ):
        self._account = Account.from_key(private_key)
        self.chain_id = int(chain_id)
        self.verifying_contract = normalize_address(verifying_contract)
        self._clock = clock
        self._nonce_source = nonce_source
        self._issued_nonces: set[int] = set()
        self._lock = threading.Lock()

    @property
    def address(self) -> str:
        return normalize_address(self._account.address)

    def _next_nonce(self) -> int:
        with self._lock:
            while True:
                nonce = int(self._nonce_source())
                if nonce not in self._issued_nonces:
                    self._issued_nonces.add(nonce)
                    return nonce

    def create_mandate(
        self,
        amount: Decimal | int | str,
        ttl_seconds: int,
        conditions: Optional[Sequence[str]] = None,
    ) -> Mandate:
        """Create and sign a new mandate."""
        max_amount = parse_amount(amount)
        if max_amount <= 0:
            raise ValueError("Mandate amount must be > 0")
        if int(ttl_seconds) <= 0:
            raise ValueError("ttl_seconds must be > 0")

        issued_at = int(self._clock())
        expiry = issued_at + int(ttl_seconds)
        nonce = self._next_nonce()
        conds = tuple(str(c) for c in (conditions or ()))

        typed_data = build_mandate_typed_data(
            agent=self.address,
            max_amount_base_units=to_base_units(max_amount),
            expiry=expiry,
            nonce=nonce,
            conditions=conds,
            chain_id=self.chain_id,
            verifying_contract=self.verifying_contract,
        )
        signed = Account.sign_typed_data(
            self._account.key,
            typed_data["domain"],
            typed_data["types"],
            typed_data["message"],
        )
        mandate = Mandate(
            agent=self.address,
            max_amount=max_amount,
            issued_at=issued_at,
            expiry=expiry,
            nonce=nonce,
            conditions=conds,
            chain_id=self.chain_id,
            verifying_contract=self.verifying_contract,
            signature="0x" + signed.signature.hex().removeprefix("0x"),
            content_hash=mandate_hash(typed_data),
        )
        logger.info(
            "Mandate signed: %s (max %s, expires %d, %d conditions)",
            mandate.content_hash, max_amount, expiry, len(conds),
        )
        return mandate

    def require_valid(self, mandate: Mandate, now: Optional[float] = None) -> None:
        """Raise unless the mandate verifies, is unexpired and was signed here."""
        ok, reason = verify_mandate(mandate)
        if not ok:
            raise MandateSignatureError(reason)
        if mandate.agent != self.address:
            raise MandateSignatureError(f"Mandate was signed by {mandate.agent}, not {self.address}")
        if mandate.is_expired(self._clock() if now is None else now):
            raise MandateExpired(f"Mandate expired at {mandate.expiry}")


def verify_mandate(mandate: Mandate, signature: Optional[str] = None) -> tuple[bool, str]:
    """Verify a mandate's content hash and signature.

    ``signature`` defaults to the one carried by the mandate. Expiry is not
    checked here; see ``Mandate.is_expired``.
    """
    sig = signature or mandate.signature
    if not sig:
        return False, "Mandate is unsigned"
    if mandate.expiry <= mandate.issued_at:
        return False, "Mandate expiry must be after issued_at"
    try:
        typed_data = mandate.to_eip712_data()
        if mandate_hash(typed_data) != normalize_hex32(mandate.content_hash, "content_hash"):
            return False, "Content hash mismatch: mandate was tampered with"
        signable = encode_typed_data(
            typed_data["domain"],
            typed_data["types"],
            typed_data["message"],
        )
        recovered = Account.recover_message(
            signable,
            signature=bytes.fromhex(sig.removeprefix("0x")),
        )
    except Exception as e:
        return False, f"Signature verification failed: {e}"

    if recovered.lower() != mandate.agent.lower():
        return (
            False,
            f"Signer mismatch: expected {mandate.agent}, got {recovered}",
        )
    return True, "Valid mandate"
