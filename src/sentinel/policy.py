"""
Policy auditing: velocity control plus an external compliance review.

Gating failures never raise past this module. Every outcome, including a
velocity denial or an unavailable reviewer, is returned as a
``PolicyDecision``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .capability import CapabilityPool
from .errors import CapabilityError, CapabilityExhausted, VelocityViolation
from .intent import PaymentIntent, strip_code_fences
from .money import parse_amount
from .vendors import RiskTier

logger = logging.getLogger(__name__)


HOUR_SECONDS = 3600
DEFAULT_HOURLY_LIMIT = Decimal("1000000")
DEFAULT_FALLBACK_THRESHOLD = Decimal("100")
VELOCITY_RISK_SCORE = 90
FALLBACK_APPROVE_RISK_SCORE = 20
FALLBACK_REVIEW_RISK_SCORE = 50
FLAGGED_MARKERS = ("suspicious",)
POLICY_LOAD_ERROR = "POLICY LOAD ERROR: Default to Strict Mode."

DEFAULT_POLICY = """\
Section 1. Allowed vendors: infrastructure, cloud, payment processors and
contracted service providers. Unverified vendors require a forensic review.
Section 2. Prohibited: gambling, personal transfers, sanctioned entities,
and any purpose unrelated to business operations.
Section 3. Structuring (splitting a payment to stay under review limits) is
prohibited.
Section 4. Velocity: total approved volume per rolling hour is capped.
"""

AUDIT_PROMPT = """\
ROLE: Chief Forensic Auditor for an Autonomous Treasury.
TASK: Evaluate a transaction against the Corporate Policy.

CORPORATE POLICY:
\"\"\"
{policy}
\"\"\"

TRANSACTION METADATA:
- Recipient: {recipient}
- Verified vendor: {verified}
- Amount: {amount} MNEE
- Purpose: {purpose}
- User Context: {context}

INSTRUCTIONS:
1. Check if the Purpose violates Section 2 (Prohibited).
2. Check if the Vendor is allowed (Section 1).
3. Analyze for structuring.

OUTPUT JSON ONLY:
{{
  "approved": boolean,
  "reason": "Title: [Short 3-5 word Reason] | Explanation: [Detailed forensic explanation]",
  "riskScore": number (0-100)
}}
"""

FORENSIC_PROMPT = """\
ROLE: Forensic Intelligence Agent.
TASK: Generate a one-page forensic risk assessment for an unverified vendor.

VENDOR: {recipient}
AMOUNT: {amount} MNEE
PURPOSE: {purpose}

STRICT FORMAT:
Forensic Audit Complete
Entity: [Vendor Name]
Risk Score: [0-100] (Low/Medium/High)
Confidence: [Percentage]%
Findings:
- [Technical finding about domain or history]
- [Risk finding about AML/Sanctions]
- [Entity verification status]

USE PLAIN TEXT ONLY. NO MARKDOWN.
"""

_EMPHASIS_RE = re.compile(r"\*+")


class DecisionSource(str, Enum):
    VELOCITY = "velocity"
    POLICY = "policy"
    FALLBACK = "fallback"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class PolicyDecision:
    approved: bool
    reason: str
    risk_score: int
    privacy_handle: Optional[str] = None
    source: DecisionSource = DecisionSource.POLICY

    def to_dict(self) -> dict:
        return {
            "approved": self.approved,
            "reason": self.reason,
            "risk_score": self.risk_score,
            "privacy_handle": self.privacy_handle,
            "source": self.source.value,
        }


class VelocityWindow:
    """Approved volume within the current hour window.

    The window resets when more than an hour has passed since the last
    reset. ``reserve`` checks and adds in one step under the lock.
    """

    def __init__(
        self,
        limit: Decimal = DEFAULT_HOURLY_LIMIT,
        window_seconds: int = HOUR_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.limit = parse_amount(limit)
        self.window_seconds = window_seconds
        self._clock = clock
        self._used = Decimal(0)
        self._reset_at = clock()
        self._lock = threading.Lock()

    def _maybe_reset(self) -> None:
        now = self._clock()
        if now - self._reset_at > self.window_seconds:
            self._used = Decimal(0)
            self._reset_at = now

    @property
    def used(self) -> Decimal:
        with self._lock:
            self._maybe_reset()
            return self._used

    def set_used(self, amount: Decimal) -> None:
        with self._lock:
            self._maybe_reset()
            self._used = parse_amount(amount)

    def reserve(self, amount: Decimal) -> None:
        """Add amount to the window or raise VelocityViolation.

        ``used + amount == limit`` is allowed.
        """
        with self._lock:
            self._maybe_reset()
            if self._used + amount > self.limit:
                raise VelocityViolation(amount, self._used, self.limit)
            self._used += amount

    def release(self, amount: Decimal) -> None:
        with self._lock:
            self._used = max(Decimal(0), self._used - amount)


def strip_emphasis(text: str) -> str:
    return _EMPHASIS_RE.sub("", text).strip()


def privacy_handle(recipient: str) -> str:
    """Stable reference derived from the recipient name. Not a secret."""
    return hashlib.sha256(recipient.encode("utf-8")).hexdigest()[:16]


def load_policy_text(path: Optional[Path]) -> str:
    if path is None:
        return DEFAULT_POLICY
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("Could not load policy document %s: %s", path, e)
        return POLICY_LOAD_ERROR


def is_flagged(intent: PaymentIntent) -> bool:
    name = intent.recipient_name.lower()
    if any(marker in name for marker in FLAGGED_MARKERS):
        return True
    return intent.risk_tier == RiskTier.HIGH


class PolicyAuditor:
    """Velocity control plus external policy review with a fail-closed fallback."""

    def __init__(
        self,
        pool: CapabilityPool,
        velocity: Optional[VelocityWindow] = None,
        policy_text: str = DEFAULT_POLICY,
        fallback_threshold: Decimal = DEFAULT_FALLBACK_THRESHOLD,
        fallback_auto_approve: bool = True,
    ):
        self.pool = pool
        self.velocity = velocity or VelocityWindow()
        self.policy_text = policy_text
        self.fallback_threshold = parse_amount(fallback_threshold)
        self.fallback_auto_approve = fallback_auto_approve

    def audit(self, intent: PaymentIntent, context_text: str = "") -> PolicyDecision:
        amount = intent.amount
        try:
            self.velocity.reserve(amount)
        except VelocityViolation as e:
            logger.warning("Velocity denial for %s: %s", intent.recipient_name, e)
            return PolicyDecision(
                approved=False,
                reason=str(e),
                risk_score=VELOCITY_RISK_SCORE,
                source=DecisionSource.VELOCITY,
            )

        # The amount is held in the window while the reviewer runs and is
        # released again unless the decision is an approval.
        try:
            decision = self._review(intent, context_text)
        except Exception:
            self.velocity.release(amount)
            raise
        if not decision.approved:
            self.velocity.release(amount)
        return decision

    def _review(self, intent: PaymentIntent, context_text: str) -> PolicyDecision:
        prompt = AUDIT_PROMPT.format(
            policy=self.policy_text,
            recipient=intent.recipient_name,
            verified=intent.verified,
            amount=intent.amount,
            purpose=json.dumps(intent.purpose),
            context=json.dumps(context_text),
        )
        try:
            raw = self.pool.invoke(prompt)
        except CapabilityExhausted as e:
            logger.warning("Policy reviewer exhausted, failing closed: %s", e)
            return PolicyDecision(
                approved=False,
                reason="System busy (global rate limit). Please wait and try again.",
                risk_score=0,
                source=DecisionSource.EXHAUSTED,
            )
        except CapabilityError as e:
            logger.warning("Policy reviewer failed: %s", e)
            return self._fallback(intent)

        try:
            approved, reason, risk_score = _parse_review(raw)
        except ValueError as e:
            logger.warning("Malformed policy review: %s", e)
            return self._fallback(intent)

        if not approved:
            return PolicyDecision(approved=False, reason=reason, risk_score=risk_score)
        return PolicyDecision(
            approved=True,
            reason=reason,
            risk_score=risk_score,
            privacy_handle=privacy_handle(intent.recipient_name),
        )

    def _fallback(self, intent: PaymentIntent) -> PolicyDecision:
        if (
            self.fallback_auto_approve
            and intent.amount <= self.fallback_threshold
            and not is_flagged(intent)
        ):
            logger.warning(
                "Auto-approving %s to %s without policy review",
                intent.amount, intent.recipient_name,
            )
            return PolicyDecision(
                approved=True,
                reason="Auto-approved: Low-risk transaction (Auditor offline)",
                risk_score=FALLBACK_APPROVE_RISK_SCORE,
                privacy_handle=privacy_handle(intent.recipient_name),
                source=DecisionSource.FALLBACK,
            )
        return PolicyDecision(
            approved=False,
            reason="Transaction held for manual review (Auditor temporarily offline)",
            risk_score=FALLBACK_REVIEW_RISK_SCORE,
            source=DecisionSource.FALLBACK,
        )

    def forensic_report(self, intent: PaymentIntent) -> str:
        prompt = FORENSIC_PROMPT.format(
            recipient=intent.recipient_name,
            amount=intent.amount,
            purpose=intent.purpose,
        )
        try:
            return strip_emphasis(self.pool.invoke(prompt))
        except CapabilityError as e:
            logger.warning("Forensic report unavailable: %s", e)
            return (
                "Forensic Audit Complete\n\n"
                f"Entity: {intent.recipient_name}\n"
                "Risk Score: unknown (reviewer offline)\n\n"
                "Findings:\n"
                "- No remote intelligence available.\n"
                "- Entity is not in the trusted vendor directory.\n\n"
                "Decision: Manual review recommended."
            )


def _parse_review(raw: str) -> tuple[bool, str, int]:
    try:
        payload = json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as e:
        raise ValueError(f"Not JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("Expected a JSON object")

    approved = payload.get("approved")
    if not isinstance(approved, bool):
        raise ValueError("Missing boolean 'approved'")
    reason = strip_emphasis(str(payload.get("reason") or ""))

    raw_score = payload.get("riskScore", payload.get("risk_score", 50))
    try:
        score = float(raw_score)
    except (TypeError, ValueError, OverflowError) as e:
        raise ValueError(f"Invalid riskScore: {raw_score!r}") from e
    if not math.isfinite(score):
        raise ValueError(f"Invalid riskScore: {raw_score!r}")
    return approved, reason, max(0, min(100, int(score)))
