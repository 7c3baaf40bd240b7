"""
Intent resolution: free text to a validated PaymentIntent.

The inference response is validated at this boundary. Downstream code only
ever sees a ``PaymentIntent`` or an ``IntentRejected`` result, never the
raw response.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from .capability import CapabilityPool
from .errors import CapabilityError, CapabilityExhausted, ParseFailure
from .money import parse_amount
from .vendors import RiskTier, find_vendor

logger = logging.getLogger(__name__)


DEFAULT_TTL_HOURS = 24.0
MAX_TTL_HOURS = 168.0

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_PRICE_RE = re.compile(r"[^0-9.]")

PARSE_PROMPT = """\
You are an autonomous treasury agent. Parse the following request into a JSON object.

Request: {request}

Return ONLY raw JSON (no markdown formatting):
{{
    "recipient": "string",
    "amount": number,
    "currency": "MNEE",
    "purpose": "string",
    "ttl_hours": number,
    "requires_multisig": boolean
}}
"""

NEGOTIATE_PROMPT = """\
ROLE: You are an Autonomous Sales Agent for a Digital Services Vendor.
TASK: Negotiate a price for: {item}.
CURRENT PRICE: {price} MNEE.

INSTRUCTIONS:
1. If the item is high volume (cloud credits, software), offer a discount (5-20%).
2. If it is unique or low margin, offer a small or no discount.
3. RETURN ONLY THE FINAL PRICE NUMBER (e.g., 85).
"""


@dataclass(frozen=True)
class PaymentIntent:
    """Structured payment request produced by the resolver."""

    recipient_name: str
    amount: Decimal
    purpose: str
    ttl_hours: float = DEFAULT_TTL_HOURS
    requires_multisig: bool = False
    resolved_address: Optional[str] = None
    verified: bool = False
    risk_tier: Optional[RiskTier] = None
    category: Optional[str] = None

    @property
    def ttl_seconds(self) -> int:
        return max(1, int(self.ttl_hours * 3600))

    def with_amount(self, amount: Decimal) -> "PaymentIntent":
        """Return a copy with a lower amount. Increases are refused."""
        if amount <= 0:
            raise ValueError("Negotiated amount must be > 0")
        if amount > self.amount:
            raise ValueError(
                f"Negotiation cannot raise the amount ({amount} > {self.amount})"
            )
        return replace(self, amount=amount)

    def to_dict(self) -> dict:
        return {
            "recipient": self.recipient_name,
            "address": self.resolved_address,
            "amount": str(self.amount),
            "purpose": self.purpose,
            "ttl_hours": self.ttl_hours,
            "requires_multisig": self.requires_multisig,
            "verified": self.verified,
            "risk_tier": self.risk_tier.value if self.risk_tier else None,
            "category": self.category,
        }


class RejectionKind(str, Enum):
    CAPABILITY = "capability"
    PARSE = "parse"
    AMOUNT = "amount"


@dataclass(frozen=True)
class ParsedIntent:
    intent: PaymentIntent
    ok: bool = True


@dataclass(frozen=True)
class IntentRejected:
    kind: RejectionKind
    reason: str
    ok: bool = False


IntentResult = Union[ParsedIntent, IntentRejected]


@dataclass(frozen=True)
class NegotiationResult:
    intent: PaymentIntent
    original_amount: Decimal

    @property
    def saved(self) -> Decimal:
        return self.original_amount - self.intent.amount


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def intent_from_payload(payload: Any) -> PaymentIntent:
    """Validate a decoded inference response into a PaymentIntent.

    Raises ParseFailure on shape errors and ValueError on a non-positive
    amount so callers can tell the two apart.
    """
    if not isinstance(payload, dict):
        raise ParseFailure("Expected a JSON object")

    recipient = payload.get("recipient")
    if not isinstance(recipient, str) or not recipient.strip():
        raise ParseFailure("Missing recipient")

    raw_amount = payload.get("amount")
    if raw_amount is None or isinstance(raw_amount, bool):
        raise ParseFailure("Missing amount")
    try:
        amount = parse_amount(raw_amount)
    except ValueError as e:
        raise ParseFailure(str(e)) from e
    if amount <= 0:
        raise ValueError(f"Amount must be > 0, got {amount}")

    ttl_raw = payload.get("ttl_hours", DEFAULT_TTL_HOURS)
    try:
        ttl_hours = float(ttl_raw) if ttl_raw is not None else DEFAULT_TTL_HOURS
    except (TypeError, ValueError, OverflowError) as e:
        raise ParseFailure(f"Invalid ttl_hours: {ttl_raw!r}") from e
    if not math.isfinite(ttl_hours):
        raise ParseFailure(f"Invalid ttl_hours: {ttl_raw!r}")
    if ttl_hours <= 0:
        ttl_hours = DEFAULT_TTL_HOURS
    ttl_hours = min(ttl_hours, MAX_TTL_HOURS)

    purpose = payload.get("purpose") or ""
    requires_multisig = payload.get("requires_multisig", False)
    if not isinstance(requires_multisig, bool):
        raise ParseFailure(f"Invalid requires_multisig: {requires_multisig!r}")

    name = recipient.strip()
    vendor = find_vendor(name)
    if vendor is None:
        return PaymentIntent(
            recipient_name=name,
            amount=amount,
            purpose=str(purpose),
            ttl_hours=ttl_hours,
            requires_multisig=requires_multisig,
        )
    return PaymentIntent(
        recipient_name=vendor.name,
        amount=amount,
        purpose=str(purpose),
        ttl_hours=ttl_hours,
        requires_multisig=requires_multisig,
        resolved_address=vendor.wallet_address,
        verified=True,
        risk_tier=vendor.risk_tier,
        category=vendor.category,
    )


class IntentResolver:
    """Turns operator text into a PaymentIntent through the capability pool."""

    def __init__(self, pool: CapabilityPool, negotiation_pool: Optional[CapabilityPool] = None):
        self.pool = pool
        self.negotiation_pool = negotiation_pool or pool

    def parse(self, text: str) -> IntentResult:
        prompt = PARSE_PROMPT.format(request=json.dumps(text))
        try:
            raw = self.pool.invoke(prompt)
        except CapabilityExhausted as e:
            logger.warning("Intent parsing unavailable: %s", e)
            return IntentRejected(RejectionKind.CAPABILITY, str(e))
        except CapabilityError as e:
            logger.warning("Intent parsing failed: %s", e)
            return IntentRejected(RejectionKind.CAPABILITY, str(e))

        try:
            payload = json.loads(strip_code_fences(raw))
            intent = intent_from_payload(payload)
        except (json.JSONDecodeError, ParseFailure) as e:
            logger.warning("Unparseable intent response: %s", e)
            return IntentRejected(RejectionKind.PARSE, f"Could not parse request: {e}")
        except ValueError as e:
            logger.info("Rejected intent: %s", e)
            return IntentRejected(RejectionKind.AMOUNT, str(e))

        if intent.verified:
            logger.info("Verified vendor identified: %s (%s)", intent.recipient_name, intent.risk_tier.value)
        else:
            logger.info("Unknown vendor: %s (unverified)", intent.recipient_name)
        return ParsedIntent(intent)

    def resolve(self, text: str) -> Optional[PaymentIntent]:
        result = self.parse(text)
        if isinstance(result, ParsedIntent):
            return result.intent
        return None

    def negotiate(self, intent: PaymentIntent) -> NegotiationResult:
        """Ask the counterparty capability for a price. Never raises the amount."""
        item = intent.purpose or intent.recipient_name
        prompt = NEGOTIATE_PROMPT.format(item=json.dumps(item), price=intent.amount)
        try:
            raw = self.negotiation_pool.invoke(prompt)
        except CapabilityError as e:
            logger.warning("Negotiation unavailable, keeping %s: %s", intent.amount, e)
            return NegotiationResult(intent=intent, original_amount=intent.amount)

        cleaned = _PRICE_RE.sub("", raw).strip()
        try:
            offered = parse_amount(cleaned)
        except ValueError:
            return NegotiationResult(intent=intent, original_amount=intent.amount)

        if 0 < offered < intent.amount:
            logger.info("Negotiated price down from %s to %s", intent.amount, offered)
            return NegotiationResult(intent=intent.with_amount(offered), original_amount=intent.amount)
        return NegotiationResult(intent=intent, original_amount=intent.amount)
