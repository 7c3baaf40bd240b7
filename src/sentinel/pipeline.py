"""
Payment authorization pipeline.

Flow:
1. Resolve free text to a PaymentIntent
2. Negotiate the price down (never up)
3. Velocity + policy audit
4. Attach a proof handle and sign a time-bound mandate
5. Hand the mandate to the approval state machine
6. Simulation settles immediately; production waits for PIN/multisig
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from eth_account import Account

from .approval import ApprovalResult, ApprovalStateMachine, SessionStore
from .audit import AuditLedger, EventKind, EventStatus, open_audit_store, resolve_hmac_key
from .capability import CapabilityPool, GeminiBackend, InferenceBackend
from .config import SentinelConfig
from .errors import ConfigError, PinError, RegistryError, SentinelError
from .intent import IntentRejected, IntentResolver, PaymentIntent
from .mandate import Mandate, MandateSigner
from .policy import DEFAULT_POLICY, DecisionSource, PolicyAuditor, PolicyDecision, VelocityWindow, load_policy_text
from .prover import ProofArtifact, Prover, SimulatedProver
from .registry import MandateRegistryClient
from .reputation import ReputationTracker
from .settings import UserSettings
from .settlement import Erc20TransferClient, SettlementExecutor, SettlementOutcome, TransferClient
from .voice import VoiceVerifier

logger = logging.getLogger(__name__)


class PipelineStatus(str, Enum):
    SUCCESS = "SUCCESS"
    BLOCKED = "BLOCKED"
    NEEDS_APPROVAL = "NEEDS_APPROVAL"
    ERROR = "ERROR"


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of one payment request."""

    status: PipelineStatus
    message: str
    intent: Optional[PaymentIntent] = None
    decision: Optional[PolicyDecision] = None
    mandate: Optional[Mandate] = None
    proof: Optional[ProofArtifact] = None
    settlement: Optional[SettlementOutcome] = None
    saved: Decimal = Decimal(0)
    badge: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "message": self.message,
            "intent": self.intent.to_dict() if self.intent else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "mandate": self.mandate.to_dict() if self.mandate else None,
            "proof_handle": self.proof.handle if self.proof else None,
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "saved": str(self.saved),
            "badge": self.badge,
        }


def format_block_message(reason: str) -> str:
    """Render a denial reason, splitting a ``Title: ... | Explanation: ...`` pair."""
    parts = reason.split("|", 1)
    if len(parts) == 2:
        title = parts[0].replace("Title:", "").strip()
        explanation = parts[1].replace("Explanation:", "").strip()
        return f"BLOCKED by Policy: {title}\n\n{explanation}"
    return f"BLOCKED by Policy: {reason}"


class Sentinel:
    """Wires the pipeline stages together and records each one in the ledger."""

    def __init__(
        self,
        resolver: IntentResolver,
        auditor: PolicyAuditor,
        signer: MandateSigner,
        approvals: ApprovalStateMachine,
        ledger: AuditLedger,
        prover: Optional[Prover] = None,
        reputation: Optional[ReputationTracker] = None,
        registry: Optional[MandateRegistryClient] = None,
        negotiate: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.resolver = resolver
        self.auditor = auditor
        self.signer = signer
        self.approvals = approvals
        self.ledger = ledger
        self.prover = prover or SimulatedProver()
        self.reputation = reputation or ReputationTracker()
        self.registry = registry
        self.negotiate = negotiate
        self._clock = clock

    @property
    def settings(self) -> UserSettings:
        return self.approvals.settings

    @classmethod
    def from_config(
        cls,
        config: SentinelConfig,
        backend: Optional[InferenceBackend] = None,
        transfer_client: Optional[TransferClient] = None,
        voice: Optional[VoiceVerifier] = None,
        registry: Optional[MandateRegistryClient] = None,
        seed: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> "Sentinel":
        credentials = list(config.api_keys)
        if not credentials:
            if backend is None:
                raise ConfigError("No inference credentials configured. Set GEMINI_API_KEY")
            credentials = ["local"]
        backend = backend or GeminiBackend(timeout=config.http_timeout)

        pool_kwargs = dict(
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_cap=config.backoff_cap,
            seed=seed,
            sleep=sleep,
        )
        intent_pool = CapabilityPool.from_credentials(credentials, config.model_variants, backend, name="intent", **pool_kwargs)
        audit_pool = CapabilityPool.from_credentials(credentials, config.model_variants, backend, name="auditor", **pool_kwargs)

        store = open_audit_store(config.database_url, config.sqlite_path)
        ledger = AuditLedger(
            store,
            resolve_hmac_key(config.audit_hmac_key, config.audit_key_path),
            agent_id=config.agent_id,
            clock=clock,
        )

        agent_key = config.agent_key
        if not agent_key:
            agent_key = Account.create().key.hex()
            logger.warning("No SENTINEL_AGENT_KEY set; signing mandates with an ephemeral key")
        signer = MandateSigner(agent_key, chain_id=config.chain_id, verifying_contract=config.registry_address, clock=clock)

        if transfer_client is None and config.agent_key:
            transfer_client = Erc20TransferClient(
                config.agent_key,
                token_address=config.token_address,
                rpc_url=config.rpc_url,
                chain_id=config.chain_id,
                timeout=config.http_timeout,
            )

        policy_text = load_policy_text(config.policy_path) if config.policy_path else DEFAULT_POLICY
        auditor = PolicyAuditor(
            audit_pool,
            velocity=VelocityWindow(config.hourly_limit, clock=clock),
            policy_text=policy_text,
            fallback_threshold=config.fallback_threshold,
            fallback_auto_approve=config.fallback_auto_approve,
        )
        approvals = ApprovalStateMachine(
            UserSettings(config.sqlite_path, reject_weak_pins=config.reject_weak_pins),
            ledger,
            SettlementExecutor(ledger, transfer_client=transfer_client, clock=clock),
            voice=voice,
            store=SessionStore(config.session_ttl_seconds, clock=clock),
            max_pin_attempts=config.max_pin_attempts,
            lockout_seconds=config.lockout_seconds,
            quorum=config.quorum,
            clock=clock,
        )
        return cls(
            IntentResolver(intent_pool),
            auditor,
            signer,
            approvals,
            ledger,
            registry=registry,
            clock=clock,
        )

    def pay(self, user_id: str, text: str, production: bool = False) -> PipelineResult:
        """Run one payment request through every stage up to approval."""
        parsed = self.resolver.parse(text)
        if isinstance(parsed, IntentRejected):
            self.ledger.append(
                EventKind.INTENT_RESOLUTION, "resolve", EventStatus.FAILED,
                {"user_id": user_id, "kind": parsed.kind.value, "reason": parsed.reason},
            )
            return PipelineResult(PipelineStatus.ERROR, f"Could not understand payment intent: {parsed.reason}")

        intent = parsed.intent
        self.ledger.append(
            EventKind.INTENT_RESOLUTION, "resolve", EventStatus.SUCCESS,
            {
                "user_id": user_id,
                "recipient": intent.recipient_name,
                "amount": str(intent.amount),
                "verified": intent.verified,
            },
        )

        saved = Decimal(0)
        if self.negotiate:
            negotiation = self.resolver.negotiate(intent)
            intent, saved = negotiation.intent, negotiation.saved
            if saved > 0:
                self.ledger.append(
                    EventKind.NEGOTIATION, "negotiate", EventStatus.SUCCESS,
                    {"original": str(negotiation.original_amount), "final": str(intent.amount), "saved": str(saved)},
                )

        decision = self.auditor.audit(intent, text)
        if not decision.approved:
            self.ledger.append(
                EventKind.POLICY_AUDIT, f"audit {intent.recipient_name}", EventStatus.BLOCKED,
                {"user_id": user_id, **decision.to_dict()},
            )
            if decision.source in (DecisionSource.POLICY, DecisionSource.FALLBACK):
                self.reputation.record(0, audit_passed=False)
            return PipelineResult(
                PipelineStatus.BLOCKED,
                format_block_message(decision.reason),
                intent=intent,
                decision=decision,
                saved=saved,
            )
        self.ledger.append(
            EventKind.POLICY_AUDIT, f"audit {intent.recipient_name}", EventStatus.SUCCESS,
            {"user_id": user_id, **decision.to_dict()},
        )
        badge = self.reputation.record(saved, audit_passed=True).badge

        try:
            proof = self.prover.prove({
                "amount": str(intent.amount),
                "hourly_limit": str(self.auditor.velocity.limit),
                "recipient_handle": decision.privacy_handle or "",
            })
            mandate = self._issue_mandate(intent, decision, proof)
        except (SentinelError, ValueError, ArithmeticError) as e:
            # The approval reserved volume that will never be spent.
            self.auditor.velocity.release(intent.amount)
            self.ledger.append(
                EventKind.MANDATE_CREATED, "sign", EventStatus.FAILED,
                {"user_id": user_id, "error": str(e)},
            )
            logger.error("Mandate issuance failed: %s", e)
            return PipelineResult(PipelineStatus.ERROR, f"System error: {e}", intent=intent, decision=decision)

        approval = self.approvals.begin(user_id, mandate, intent, production)
        common = dict(intent=intent, decision=decision, mandate=mandate, proof=proof, saved=saved, badge=badge)

        if production:
            return PipelineResult(PipelineStatus.NEEDS_APPROVAL, approval.message, **common)

        try:
            executed = self.approvals.approve(user_id)
        except SentinelError as e:
            return PipelineResult(PipelineStatus.ERROR, str(e), **common)
        return PipelineResult(PipelineStatus.SUCCESS, executed.message, settlement=executed.settlement, **common)

    def _issue_mandate(self, intent: PaymentIntent, decision: PolicyDecision, proof: ProofArtifact) -> Mandate:
        conditions = [
            f"recipient:{decision.privacy_handle or intent.recipient_name}",
            f"proof:{proof.handle}",
        ]
        if intent.purpose:
            conditions.append(f"purpose:{intent.purpose}")
        mandate = self.signer.create_mandate(intent.amount, intent.ttl_seconds, conditions)
        if self.registry is not None:
            try:
                self.registry.register_mandate(
                    mandate.content_hash,
                    mandate.agent,
                    mandate.max_amount_base_units,
                    mandate.expiry,
                    sender=self.signer.address,
                )
            except RegistryError as e:
                logger.warning("Mandate registry rejected %s: %s", mandate.content_hash, e)
                raise
        self.ledger.append(
            EventKind.MANDATE_CREATED, "sign", EventStatus.SUCCESS,
            {
                "mandate_hash": mandate.content_hash,
                "max_amount": str(mandate.max_amount),
                "expiry": mandate.expiry,
                "nonce": str(mandate.nonce),
                "proof_handle": proof.handle,
            },
        )
        return mandate

    # approval passthroughs

    def approve(self, user_id: str) -> ApprovalResult:
        return self.approvals.approve(user_id)

    def submit_pin(self, user_id: str, pin: str, discard: Optional[Callable[[], None]] = None) -> ApprovalResult:
        return self.approvals.submit_pin(user_id, pin, discard=discard)

    def approve_multisig(self, user_id: str, approver_id: str) -> ApprovalResult:
        return self.approvals.approve_multisig(user_id, approver_id)

    def reject(self, user_id: str) -> ApprovalResult:
        return self.approvals.reject(user_id)

    # settings

    def set_pin(self, user_id: str, pin: str) -> None:
        try:
            self.settings.set_pin(user_id, pin)
        except PinError as e:
            self.ledger.append(EventKind.SETTINGS, "set_pin", EventStatus.FAILED, {"user_id": user_id, "error": str(e)})
            raise
        self.ledger.append(EventKind.SETTINGS, "set_pin", EventStatus.SUCCESS, {"user_id": user_id})

    def change_pin(self, user_id: str, old_pin: str, new_pin: str) -> None:
        try:
            self.settings.change_pin(user_id, old_pin, new_pin)
        except PinError as e:
            self.ledger.append(EventKind.SETTINGS, "change_pin", EventStatus.FAILED, {"user_id": user_id, "error": str(e)})
            raise
        self.ledger.append(EventKind.SETTINGS, "change_pin", EventStatus.SUCCESS, {"user_id": user_id})

    def forensic_report(self, intent: PaymentIntent) -> str:
        return self.auditor.forensic_report(intent)

    def status(self) -> dict:
        reputation = self.reputation.snapshot()
        return {
            "agent": self.signer.address,
            "hourly_used": str(self.auditor.velocity.used),
            "hourly_limit": str(self.auditor.velocity.limit),
            "reputation": reputation.to_dict(),
            "audit": self.ledger.summary(),
        }
