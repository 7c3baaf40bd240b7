"""
Sentinel — mandate authorization and settlement for agent stablecoin payments.

Free-text request → policy + velocity audit → signed, time-bound mandate →
human approval (PIN, multisig, liveness) → settlement → tamper-evident audit log.
"""

__version__ = "0.1.0"

from .approval import ApprovalSession, ApprovalState, ApprovalStateMachine, SessionStore
from .audit import AuditEvent, AuditLedger, EventKind, EventStatus, open_audit_store
from .capability import CapabilityEntry, CapabilityPool, GeminiBackend
from .config import SentinelConfig
from .escrow import EscrowRecord, EscrowStatus, LocalEscrow
from .intent import IntentRejected, IntentResolver, ParsedIntent, PaymentIntent
from .mandate import Mandate, MandateSigner, verify_mandate
from .pipeline import PipelineResult, PipelineStatus, Sentinel
from .policy import PolicyAuditor, PolicyDecision, VelocityWindow
from .registry import LocalMandateRegistry
from .settings import UserSettings
from .settlement import Erc20TransferClient, SettlementExecutor, SettlementOutcome

__all__ = [
    "Sentinel", "PipelineResult", "PipelineStatus", "SentinelConfig",
    "CapabilityEntry", "CapabilityPool", "GeminiBackend",
    "IntentResolver", "PaymentIntent", "ParsedIntent", "IntentRejected",
    "PolicyAuditor", "PolicyDecision", "VelocityWindow",
    "Mandate", "MandateSigner", "verify_mandate",
    "ApprovalStateMachine", "ApprovalSession", "ApprovalState", "SessionStore",
    "SettlementExecutor", "SettlementOutcome", "Erc20TransferClient",
    "AuditLedger", "AuditEvent", "EventKind", "EventStatus", "open_audit_store",
    "LocalEscrow", "EscrowRecord", "EscrowStatus", "LocalMandateRegistry", "UserSettings",
]
