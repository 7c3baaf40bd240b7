"""
Human approval protocol for signed mandates.

States::

    IDLE -> AWAITING_APPROVAL -> AWAITING_PIN | AWAITING_MULTISIG | AWAITING_CHALLENGE
         -> EXECUTED | REJECTED | EXPIRED

Every transition runs under the user's session lock. Terminal outcomes are
written to the ledger once, after which the session is back to IDLE. PIN
attempts and lockout are kept in user settings, so they outlive the session
and the process.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterator, Optional

from .audit import AuditLedger, EventKind, EventStatus
from .errors import (
    ApprovalError,
    AuthFailure,
    LivenessFailure,
    LockedOut,
    MandateExpired,
    NoPendingMandate,
    InvalidTransition,
    PinNotConfigured,
    SettlementError,
)
from .intent import PaymentIntent
from .mandate import Mandate
from .settings import UserSettings
from .settlement import SettlementExecutor, SettlementOutcome
from .voice import MIN_CONFIDENCE, VoiceVerifier, generate_challenge_phrase, matches_challenge

logger = logging.getLogger(__name__)


DEFAULT_SESSION_TTL = 3600
MAX_PIN_ATTEMPTS = 5
LOCKOUT_SECONDS = 300
DEFAULT_QUORUM = 2


class ApprovalState(str, Enum):
    IDLE = "IDLE"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    AWAITING_PIN = "AWAITING_PIN"
    AWAITING_MULTISIG = "AWAITING_MULTISIG"
    AWAITING_CHALLENGE = "AWAITING_CHALLENGE"
    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


PENDING_STATES = frozenset({
    ApprovalState.AWAITING_APPROVAL,
    ApprovalState.AWAITING_PIN,
    ApprovalState.AWAITING_MULTISIG,
    ApprovalState.AWAITING_CHALLENGE,
})

_TERMINAL_STATUS = {
    ApprovalState.EXECUTED: EventStatus.SUCCESS,
    ApprovalState.REJECTED: EventStatus.REJECTED,
    ApprovalState.EXPIRED: EventStatus.EXPIRED,
}


@dataclass
class ApprovalSession:
    """Per-user approval state. Mutated only under ``lock``."""

    user_id: str
    state: ApprovalState = ApprovalState.IDLE
    mandate: Optional[Mandate] = None
    intent: Optional[PaymentIntent] = None
    production: bool = False
    pin_attempts: int = 0
    lockout_until: Optional[float] = None
    approvers: set[str] = field(default_factory=set)
    challenge_phrase: Optional[str] = None
    multisig_bypassed: bool = False
    last_activity: float = 0.0
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def quorum_count(self) -> int:
        return len(self.approvers)

    def is_locked_out(self, now: float) -> bool:
        return self.lockout_until is not None and now < self.lockout_until

    def clear_mandate(self) -> None:
        self.state = ApprovalState.IDLE
        self.mandate = None
        self.intent = None
        self.approvers.clear()
        self.challenge_phrase = None
        self.multisig_bypassed = False

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "state": self.state.value,
            "mandate_hash": self.mandate.content_hash if self.mandate else None,
            "production": self.production,
            "pin_attempts": self.pin_attempts,
            "lockout_until": self.lockout_until,
            "quorum_count": self.quorum_count,
            "multisig_bypassed": self.multisig_bypassed,
        }


class SessionStore:
    """Maps user id to ApprovalSession, one lock per entry, idle eviction.

    Sessions holding an unexpired mandate are never evicted. An expired one is
    handed to ``on_expire`` before it is dropped.
    """

    def __init__(self, ttl_seconds: int = DEFAULT_SESSION_TTL, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: dict[str, ApprovalSession] = {}
        self._lock = threading.Lock()
        self.on_expire: Optional[Callable[[ApprovalSession], None]] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return str(user_id) in self._sessions

    def _evict_idle_locked(self, now: float) -> int:
        evicted = 0
        for uid, s in list(self._sessions.items()):
            if now - s.last_activity <= self.ttl_seconds or s.is_locked_out(now):
                continue
            # A session busy in another thread is not idle.
            if not s.lock.acquire(blocking=False):
                continue
            try:
                if s.mandate is not None:
                    if not s.mandate.is_expired(now):
                        continue
                    if self.on_expire is not None:
                        self.on_expire(s)
                del self._sessions[uid]
                evicted += 1
            finally:
                s.lock.release()
        if evicted:
            logger.info("Evicted %d idle approval session(s)", evicted)
        return evicted

    def evict_idle(self) -> int:
        with self._lock:
            return self._evict_idle_locked(self._clock())

    def evict(self, user_id: str) -> None:
        with self._lock:
            session = self._sessions.get(str(user_id))
            if session is not None and not session.is_locked_out(self._clock()):
                del self._sessions[str(user_id)]

    @contextmanager
    def acquire(self, user_id: str) -> Iterator[ApprovalSession]:
        key = str(user_id)
        with self._lock:
            now = self._clock()
            self._evict_idle_locked(now)
            session = self._sessions.get(key)
            if session is None:
                session = ApprovalSession(user_id=key, last_activity=now)
                self._sessions[key] = session
                logger.info("Approval session created for user %s", key)
        with session.lock:
            session.last_activity = self._clock()
            yield session


@dataclass(frozen=True)
class ApprovalResult:
    state: ApprovalState
    message: str
    settlement: Optional[SettlementOutcome] = None
    quorum_count: int = 0
    challenge_phrase: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "message": self.message,
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "quorum_count": self.quorum_count,
            "challenge_phrase": self.challenge_phrase,
        }


class ApprovalStateMachine:
    """Drives PIN, multisig and liveness approval before settlement."""

    def __init__(
        self,
        settings: UserSettings,
        ledger: AuditLedger,
        executor: SettlementExecutor,
        voice: Optional[VoiceVerifier] = None,
        store: Optional[SessionStore] = None,
        max_pin_attempts: int = MAX_PIN_ATTEMPTS,
        lockout_seconds: int = LOCKOUT_SECONDS,
        quorum: int = DEFAULT_QUORUM,
        panel: Optional[set[str]] = None,
        clock: Callable[[], float] = time.time,
        challenge_source: Callable[[], str] = generate_challenge_phrase,
    ):
        if panel is not None and len(panel) < quorum:
            raise ValueError("Approval panel is smaller than the quorum")
        self.settings = settings
        self.ledger = ledger
        self.executor = executor
        self.voice = voice
        self.store = store or SessionStore(clock=clock)
        if self.store.on_expire is None:
            self.store.on_expire = self._expire_idle
        self.max_pin_attempts = max_pin_attempts
        self.lockout_seconds = lockout_seconds
        self.quorum = quorum
        self.panel = {str(p) for p in panel} if panel is not None else None
        self._clock = clock
        self._challenge_source = challenge_source

    # helpers

    def _log(self, kind: EventKind, action: str, status: EventStatus, session: ApprovalSession, **extra) -> None:
        meta = {
            "user_id": session.user_id,
            "mandate_hash": session.mandate.content_hash if session.mandate else None,
        }
        meta.update(extra)
        self.ledger.append(kind, action, status, meta)

    def _finish(self, session: ApprovalSession, terminal: ApprovalState, reason: str, **extra) -> None:
        self._log(EventKind.APPROVAL, terminal.value.lower(), _TERMINAL_STATUS[terminal], session, reason=reason, **extra)
        logger.info("Approval for user %s ended %s: %s", session.user_id, terminal.value, reason)
        session.clear_mandate()

    def _require_pending(self, session: ApprovalSession) -> Mandate:
        if session.mandate is None or session.state not in PENDING_STATES:
            raise NoPendingMandate("No mandate is awaiting approval")
        if session.mandate.is_expired(self._clock()):
            self._finish(session, ApprovalState.EXPIRED, "mandate expired before approval completed")
            self.store.evict(session.user_id)
            raise MandateExpired("Mandate expired. Please submit the request again")
        return session.mandate

    def _expire_idle(self, session: ApprovalSession) -> None:
        self._finish(session, ApprovalState.EXPIRED, "mandate expired while the session was idle")

    def _load_lockout(self, session: ApprovalSession) -> None:
        session.pin_attempts, session.lockout_until = self.settings.pin_lockout(session.user_id)

    def _save_lockout(self, session: ApprovalSession) -> None:
        self.settings.record_pin_lockout(session.user_id, session.pin_attempts, session.lockout_until)

    def _require_state(self, session: ApprovalSession, action: str, *allowed: ApprovalState) -> None:
        if session.state not in allowed:
            raise InvalidTransition(action, session.state.value)

    def _execute(self, session: ApprovalSession, via: str) -> ApprovalResult:
        mandate = session.mandate
        intent = session.intent
        try:
            outcome = self.executor.execute(
                mandate,
                intent.resolved_address if intent else None,
                intent.amount if intent else mandate.max_amount,
                session.production,
            )
        except SettlementError:
            # The executor has recorded the failure; the mandate is spent.
            session.clear_mandate()
            raise
        self._finish(session, ApprovalState.EXECUTED, via, reference=outcome.reference)
        return ApprovalResult(
            state=ApprovalState.EXECUTED,
            message=f"Payment {'simulated' if outcome.simulated else 'executed'}: {outcome.reference}",
            settlement=outcome,
        )

    # transitions

    def begin(self, user_id: str, mandate: Mandate, intent: PaymentIntent, production: bool) -> ApprovalResult:
        with self.store.acquire(user_id) as session:
            if session.mandate is not None and session.state in PENDING_STATES:
                self._finish(session, ApprovalState.REJECTED, "superseded by a new request")
            session.mandate = mandate
            session.intent = intent
            session.production = production
            session.state = ApprovalState.AWAITING_APPROVAL
            self._log(EventKind.APPROVAL, "awaiting_approval", EventStatus.PENDING, session, production=production)
            return ApprovalResult(state=session.state, message="Payment ready for approval")

    def approve(self, user_id: str) -> ApprovalResult:
        with self.store.acquire(user_id) as session:
            self._require_pending(session)
            self._require_state(session, "approve", ApprovalState.AWAITING_APPROVAL)

            if not session.production:
                return self._execute(session, "simulation approval")

            if session.intent is None or not session.intent.resolved_address:
                self._finish(session, ApprovalState.REJECTED, "recipient has no resolved address")
                raise ApprovalError("Recipient has no resolved address. Real payments need a verified recipient")

            if session.intent.requires_multisig and not session.multisig_bypassed:
                session.state = ApprovalState.AWAITING_MULTISIG
                self._log(EventKind.MULTISIG, "awaiting_quorum", EventStatus.PENDING, session, quorum=self.quorum)
                return ApprovalResult(
                    state=session.state,
                    message=f"Multisig required: 0/{self.quorum} approvals",
                )

            if not self.settings.has_pin(session.user_id):
                self._log(EventKind.PIN_VERIFICATION, "pin_required", EventStatus.BLOCKED, session)
                raise PinNotConfigured("Set a 4-digit PIN with setpin before approving real payments")

            session.state = ApprovalState.AWAITING_PIN
            return ApprovalResult(state=session.state, message="Enter your 4-digit PIN")

    def submit_pin(
        self,
        user_id: str,
        pin: str,
        discard: Optional[Callable[[], None]] = None,
    ) -> ApprovalResult:
        """Check a PIN. ``discard`` removes the raw submission from any display first."""
        if discard is not None:
            discard()

        with self.store.acquire(user_id) as session:
            now = self._clock()
            self._load_lockout(session)
            if session.is_locked_out(now):
                raise LockedOut(int(session.lockout_until - now))
            if session.lockout_until is not None:
                session.lockout_until = None
                session.pin_attempts = 0
                self._save_lockout(session)

            self._require_pending(session)
            self._require_state(session, "submit a PIN", ApprovalState.AWAITING_PIN)

            if self.settings.validate_pin(session.user_id, pin):
                session.pin_attempts = 0
                session.lockout_until = None
                self._save_lockout(session)
                self._log(EventKind.PIN_VERIFICATION, "pin_verified", EventStatus.SUCCESS, session)
                return self._execute(session, "pin verified")

            session.pin_attempts += 1
            if session.pin_attempts >= self.max_pin_attempts:
                session.lockout_until = now + self.lockout_seconds
            self._save_lockout(session)
            remaining = max(0, self.max_pin_attempts - session.pin_attempts)
            self._log(
                EventKind.PIN_VERIFICATION, "pin_rejected", EventStatus.FAILED, session,
                attempts=session.pin_attempts,
            )
            if session.lockout_until is not None:
                self._finish(session, ApprovalState.REJECTED, "too many incorrect PIN attempts")
                raise AuthFailure(attempts_remaining=0, locked_until=session.lockout_until)
            raise AuthFailure(attempts_remaining=remaining)

    def approve_multisig(self, user_id: str, approver_id: str) -> ApprovalResult:
        approver = str(approver_id)
        with self.store.acquire(user_id) as session:
            self._require_pending(session)
            self._require_state(session, "record an approval", ApprovalState.AWAITING_MULTISIG)
            if self.panel is not None and approver not in self.panel:
                raise ApprovalError(f"{approver} is not on the approval panel")

            if approver not in session.approvers:
                session.approvers.add(approver)
                self._log(
                    EventKind.MULTISIG, "approval_recorded", EventStatus.SUCCESS, session,
                    approver=approver, count=session.quorum_count,
                )
            if session.quorum_count >= self.quorum:
                return self._execute(session, f"multisig {session.quorum_count}/{self.quorum}")
            return ApprovalResult(
                state=session.state,
                message=f"Approval {session.quorum_count}/{self.quorum} recorded",
                quorum_count=session.quorum_count,
            )

    def start_challenge(self, user_id: str) -> ApprovalResult:
        if self.voice is None:
            raise ApprovalError("Voice verification is not configured")
        with self.store.acquire(user_id) as session:
            self._require_pending(session)
            self._require_state(
                session, "start a liveness challenge",
                ApprovalState.AWAITING_APPROVAL, ApprovalState.AWAITING_MULTISIG,
            )
            session.approvers.clear()
            session.challenge_phrase = self._challenge_source()
            session.state = ApprovalState.AWAITING_CHALLENGE
            self._log(EventKind.LIVENESS, "challenge_issued", EventStatus.PENDING, session)
            return ApprovalResult(
                state=session.state,
                message=f"Say the phrase: {session.challenge_phrase}",
                challenge_phrase=session.challenge_phrase,
            )

    def submit_challenge(self, user_id: str, audio: bytes) -> ApprovalResult:
        if self.voice is None:
            raise ApprovalError("Voice verification is not configured")
        with self.store.acquire(user_id) as session:
            self._require_pending(session)
            self._require_state(session, "answer a challenge", ApprovalState.AWAITING_CHALLENGE)

            transcription = self.voice.transcribe(audio)
            if not transcription.text or transcription.confidence < MIN_CONFIDENCE:
                raise ApprovalError("Could not transcribe audio clearly. Please try again")

            if transcription.verified and matches_challenge(transcription.text, session.challenge_phrase or ""):
                session.multisig_bypassed = True
                session.challenge_phrase = None
                session.state = ApprovalState.AWAITING_APPROVAL
                self._log(EventKind.LIVENESS, "challenge_passed", EventStatus.SUCCESS, session)
                return ApprovalResult(state=session.state, message="Liveness confirmed. Multisig bypassed")

            expected = session.challenge_phrase
            self._log(EventKind.LIVENESS, "challenge_failed", EventStatus.FAILED, session, heard=transcription.text)
            self._finish(session, ApprovalState.REJECTED, "liveness challenge failed")
            raise LivenessFailure(f"Liveness failed: heard {transcription.text!r}, expected {expected!r}")

    def reject(self, user_id: str) -> ApprovalResult:
        with self.store.acquire(user_id) as session:
            self._require_pending(session)
            self._finish(session, ApprovalState.REJECTED, "rejected by user")
            return ApprovalResult(state=ApprovalState.REJECTED, message="Payment rejected")

    def inspect(self, user_id: str) -> ApprovalSession:
        """Return a snapshot of the session, expiring its mandate first if it has lapsed."""
        with self.store.acquire(user_id) as session:
            if session.mandate is not None and session.mandate.is_expired(self._clock()):
                self._finish(session, ApprovalState.EXPIRED, "mandate expired before approval completed")
                self.store.evict(session.user_id)
                return replace(session, state=ApprovalState.EXPIRED, approvers=set())
            return replace(session, approvers=set(session.approvers))
