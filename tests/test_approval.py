"""Tests for the approval state machine."""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from conftest import FakeTransferClient, FakeVoice
from sentinel.approval import ApprovalState, ApprovalStateMachine, SessionStore
from sentinel.errors import (
    ApprovalError,
    AuthFailure,
    InvalidTransition,
    LivenessFailure,
    LockedOut,
    MandateExpired,
    NoPendingMandate,
    PinNotConfigured,
    SettlementFailure,
)
from sentinel.intent import PaymentIntent
from sentinel.settlement import SettlementExecutor


USER = "42"
PIN = "4821"
AWS = "0x742d35Cc6634C0532925a3b844Bc454e4438f44e"


def make_intent(amount="50", multisig=False):
    return PaymentIntent(
        recipient_name="AWS Web Services",
        amount=Decimal(amount),
        purpose="servers",
        requires_multisig=multisig,
        resolved_address=AWS,
        verified=True,
    )


@pytest.fixture
def transfer():
    return FakeTransferClient()


@pytest.fixture
def machine(settings, ledger, clock, transfer):
    executor = SettlementExecutor(ledger, transfer_client=transfer, clock=clock)
    return ApprovalStateMachine(
        settings,
        ledger,
        executor,
        voice=FakeVoice("ALPHA BRAVO"),
        store=SessionStore(3600, clock=clock),
        clock=clock,
        challenge_source=lambda: "ALPHA BRAVO",
    )


def begin(machine, signer, production=True, multisig=False, ttl=3600, amount="50"):
    mandate = signer.create_mandate(Decimal(amount), ttl)
    machine.begin(USER, mandate, make_intent(amount, multisig), production)
    return mandate


def actions(ledger, kind):
    return [e for e in ledger.export() if e["event_type"] == kind]


class TestSimulation:
    def test_approve_executes_directly(self, machine, signer, transfer, ledger):
        begin(machine, signer, production=False)
        result = machine.approve(USER)
        assert result.state == ApprovalState.EXECUTED
        assert result.settlement.simulated
        assert transfer.calls == []
        assert machine.inspect(USER).state == ApprovalState.IDLE

    def test_simulation_skips_multisig(self, machine, signer):
        begin(machine, signer, production=False, multisig=True)
        assert machine.approve(USER).state == ApprovalState.EXECUTED


class TestPin:
    def test_no_pin_configured_stays_awaiting_approval(self, machine, signer):
        begin(machine, signer)
        with pytest.raises(PinNotConfigured):
            machine.approve(USER)
        assert machine.inspect(USER).state == ApprovalState.AWAITING_APPROVAL

    def test_correct_pin_executes(self, machine, signer, settings, transfer):
        settings.set_pin(USER, PIN)
        mandate = begin(machine, signer)
        assert machine.approve(USER).state == ApprovalState.AWAITING_PIN

        result = machine.submit_pin(USER, PIN)
        assert result.state == ApprovalState.EXECUTED
        assert transfer.calls == [(AWS, Decimal("50"), mandate.content_hash)]

    def test_discard_runs_before_anything(self, machine):
        discarded = []
        with pytest.raises(NoPendingMandate):
            machine.submit_pin(USER, PIN, discard=lambda: discarded.append(True))
        assert discarded == [True]

    def test_wrong_pin_counts_down(self, machine, signer, settings):
        settings.set_pin(USER, PIN)
        begin(machine, signer)
        machine.approve(USER)
        with pytest.raises(AuthFailure) as exc:
            machine.submit_pin(USER, "0000")
        assert exc.value.attempts_remaining == 4
        assert machine.inspect(USER).state == ApprovalState.AWAITING_PIN

    def test_correct_pin_resets_attempts(self, machine, signer, settings):
        settings.set_pin(USER, PIN)
        begin(machine, signer)
        machine.approve(USER)
        for _ in range(4):
            with pytest.raises(AuthFailure):
                machine.submit_pin(USER, "0000")
        assert machine.submit_pin(USER, PIN).state == ApprovalState.EXECUTED
        assert machine.inspect(USER).pin_attempts == 0

    def test_lockout_after_five_failures(self, machine, signer, settings, ledger, clock, transfer):
        settings.set_pin(USER, PIN)
        begin(machine, signer)
        machine.approve(USER)
        for expected in (4, 3, 2, 1):
            with pytest.raises(AuthFailure) as exc:
                machine.submit_pin(USER, "0000")
            assert exc.value.attempts_remaining == expected

        with pytest.raises(AuthFailure) as exc:
            machine.submit_pin(USER, "0000")
        assert exc.value.attempts_remaining == 0
        assert exc.value.locked_until == clock() + 300

        session = machine.inspect(USER)
        assert session.state == ApprovalState.IDLE
        assert session.mandate is None
        rejected = [e for e in actions(ledger, "APPROVAL") if e["status"] == "REJECTED"]
        assert len(rejected) == 1

        # Even the correct PIN is refused during lockout, without counting.
        begin(machine, signer)
        machine.approve(USER)
        with pytest.raises(LockedOut) as locked:
            machine.submit_pin(USER, PIN)
        assert "5 minute" in str(locked.value)
        assert transfer.calls == []

        clock.advance(301)
        assert machine.submit_pin(USER, PIN).state == ApprovalState.EXECUTED

    def test_lockout_does_not_consult_hash(self, machine, signer, settings, monkeypatch):
        settings.set_pin(USER, PIN)
        begin(machine, signer)
        machine.approve(USER)
        for _ in range(5):
            with pytest.raises(AuthFailure):
                machine.submit_pin(USER, "0000")

        def boom(*args):
            raise AssertionError("hash consulted during lockout")

        monkeypatch.setattr(settings, "validate_pin", boom)
        for _ in range(3):
            with pytest.raises(LockedOut):
                machine.submit_pin(USER, "0000")

    def test_lockout_outlives_the_session_store(self, machine, signer, settings, ledger, clock, transfer):
        settings.set_pin(USER, PIN)
        begin(machine, signer)
        machine.approve(USER)
        for _ in range(5):
            with pytest.raises(AuthFailure):
                machine.submit_pin(USER, "0000")

        restarted = ApprovalStateMachine(
            settings, ledger, SettlementExecutor(ledger, transfer_client=transfer, clock=clock),
            store=SessionStore(3600, clock=clock), clock=clock,
        )
        begin(restarted, signer)
        restarted.approve(USER)
        with pytest.raises(LockedOut):
            restarted.submit_pin(USER, PIN)
        assert transfer.calls == []
        assert settings.pin_lockout(USER) == (5, clock() + 300)

    def test_failed_attempts_carry_across_restarts(self, machine, signer, settings, ledger, clock):
        settings.set_pin(USER, PIN)
        begin(machine, signer)
        machine.approve(USER)
        for _ in range(3):
            with pytest.raises(AuthFailure):
                machine.submit_pin(USER, "0000")

        restarted = ApprovalStateMachine(
            settings, ledger, SettlementExecutor(ledger, transfer_client=FakeTransferClient(), clock=clock),
            store=SessionStore(3600, clock=clock), clock=clock,
        )
        begin(restarted, signer)
        restarted.approve(USER)
        with pytest.raises(AuthFailure) as exc:
            restarted.submit_pin(USER, "0000")
        assert exc.value.attempts_remaining == 1

    def test_pin_in_wrong_state(self, machine, signer, settings):
        settings.set_pin(USER, PIN)
        begin(machine, signer)
        with pytest.raises(InvalidTransition):
            machine.submit_pin(USER, PIN)


class TestMultisig:
    def test_quorum_of_two_executes(self, machine, signer, settings, transfer):
        settings.set_pin(USER, PIN)
        begin(machine, signer, multisig=True)
        assert machine.approve(USER).state == ApprovalState.AWAITING_MULTISIG

        first = machine.approve_multisig(USER, "alice")
        assert first.state == ApprovalState.AWAITING_MULTISIG
        assert first.quorum_count == 1
        assert transfer.calls == []

        assert machine.approve_multisig(USER, "bob").state == ApprovalState.EXECUTED
        assert len(transfer.calls) == 1

    def test_repeat_approver_is_noop(self, machine, signer):
        begin(machine, signer, multisig=True)
        machine.approve(USER)
        machine.approve_multisig(USER, "alice")
        again = machine.approve_multisig(USER, "alice")
        assert again.quorum_count == 1
        assert again.state == ApprovalState.AWAITING_MULTISIG

    def test_panel_membership(self, settings, ledger, clock, signer):
        machine = ApprovalStateMachine(
            settings, ledger, SettlementExecutor(ledger, FakeTransferClient(), clock=clock),
            panel={"alice", "bob", "carol"}, clock=clock,
        )
        begin(machine, signer, multisig=True)
        machine.approve(USER)
        with pytest.raises(ApprovalError, match="panel"):
            machine.approve_multisig(USER, "mallory")

    def test_concurrent_approvals_execute_once(self, machine, signer, transfer):
        begin(machine, signer, multisig=True)
        machine.approve(USER)

        def approve(name):
            try:
                return machine.approve_multisig(USER, name).state
            except NoPendingMandate:
                return None

        with ThreadPoolExecutor(max_workers=6) as ex:
            states = list(ex.map(approve, ["a", "b", "c", "d", "e", "f"]))
        assert states.count(ApprovalState.EXECUTED) == 1
        assert len(transfer.calls) == 1


class TestChallenge:
    def test_matching_phrase_bypasses_multisig(self, machine, signer, settings):
        settings.set_pin(USER, PIN)
        begin(machine, signer, multisig=True)
        started = machine.start_challenge(USER)
        assert started.state == ApprovalState.AWAITING_CHALLENGE
        assert started.challenge_phrase == "ALPHA BRAVO"

        passed = machine.submit_challenge(USER, b"audio")
        assert passed.state == ApprovalState.AWAITING_APPROVAL
        assert machine.inspect(USER).multisig_bypassed
        assert machine.approve(USER).state == ApprovalState.AWAITING_PIN

    def test_case_insensitive_substring(self, machine, signer):
        machine.voice = FakeVoice("uh, alpha bravo please")
        begin(machine, signer, multisig=True)
        machine.start_challenge(USER)
        assert machine.submit_challenge(USER, b"").state == ApprovalState.AWAITING_APPROVAL

    def test_mismatch_discards_mandate(self, machine, signer, ledger):
        machine.voice = FakeVoice("CHARLIE DELTA")
        begin(machine, signer, multisig=True)
        machine.start_challenge(USER)
        with pytest.raises(LivenessFailure):
            machine.submit_challenge(USER, b"")
        session = machine.inspect(USER)
        assert session.state == ApprovalState.IDLE
        assert session.mandate is None
        assert any(e["status"] == "FAILED" for e in actions(ledger, "LIVENESS"))

    def test_low_confidence_asks_again(self, machine, signer):
        machine.voice = FakeVoice("ALPHA BRAVO", confidence=0.1)
        begin(machine, signer, multisig=True)
        machine.start_challenge(USER)
        with pytest.raises(ApprovalError, match="try again"):
            machine.submit_challenge(USER, b"")
        assert machine.inspect(USER).state == ApprovalState.AWAITING_CHALLENGE

    def test_requires_voice_collaborator(self, settings, ledger, clock, signer):
        machine = ApprovalStateMachine(settings, ledger, SettlementExecutor(ledger, clock=clock), clock=clock)
        begin(machine, signer)
        with pytest.raises(ApprovalError, match="not configured"):
            machine.start_challenge(USER)


class TestExpiryAndLifecycle:
    def test_expired_mandate_never_executes(self, machine, signer, settings, clock, transfer, ledger):
        settings.set_pin(USER, PIN)
        begin(machine, signer, ttl=60)
        machine.approve(USER)
        clock.advance(61)
        with pytest.raises(MandateExpired):
            machine.submit_pin(USER, PIN)
        assert transfer.calls == []
        expired = [e for e in actions(ledger, "APPROVAL") if e["status"] == "EXPIRED"]
        assert len(expired) == 1

        with pytest.raises(NoPendingMandate):
            machine.submit_pin(USER, PIN)
        assert len([e for e in actions(ledger, "APPROVAL") if e["status"] == "EXPIRED"]) == 1

    def test_inspect_expires(self, machine, signer, clock):
        begin(machine, signer, ttl=60)
        clock.advance(61)
        assert machine.inspect(USER).state == ApprovalState.EXPIRED
        assert USER not in machine.store

    def test_inspect_resets_locked_out_session(self, machine, signer, settings, clock):
        settings.set_pin(USER, PIN)
        begin(machine, signer)
        machine.approve(USER)
        for _ in range(5):
            with pytest.raises(AuthFailure):
                machine.submit_pin(USER, "0000")

        begin(machine, signer, ttl=60)
        clock.advance(61)
        assert machine.inspect(USER).state == ApprovalState.EXPIRED
        assert USER in machine.store
        assert machine.inspect(USER).state == ApprovalState.IDLE

    def test_idle_eviction_keeps_unexpired_mandate(self, machine, signer, clock, ledger):
        begin(machine, signer, ttl=24 * 3600)
        clock.advance(3601)
        machine.inspect("bob")
        assert USER in machine.store
        assert [e["status"] for e in actions(ledger, "APPROVAL")] == ["PENDING"]
        assert machine.inspect(USER).state == ApprovalState.AWAITING_APPROVAL

    def test_idle_eviction_logs_expired_mandate(self, machine, signer, clock, ledger):
        begin(machine, signer, ttl=7200)
        clock.advance(7201)
        machine.inspect("bob")
        assert USER not in machine.store
        assert [e["status"] for e in actions(ledger, "APPROVAL")] == ["PENDING", "EXPIRED"]
        with pytest.raises(NoPendingMandate):
            machine.approve(USER)

    def test_production_requires_resolved_recipient(self, machine, signer, settings, ledger, transfer):
        settings.set_pin(USER, PIN)
        mandate = signer.create_mandate(Decimal("50"), 3600)
        unresolved = PaymentIntent(recipient_name="Shady LLC", amount=Decimal("50"), purpose="servers")
        machine.begin(USER, mandate, unresolved, True)
        with pytest.raises(ApprovalError, match="no resolved address"):
            machine.approve(USER)
        assert machine.inspect(USER).state == ApprovalState.IDLE
        assert transfer.calls == []
        rejected = [e for e in actions(ledger, "APPROVAL") if e["status"] == "REJECTED"]
        assert len(rejected) == 1
        assert mandate.content_hash in rejected[0]["metadata"]

    def test_simulation_allows_unresolved_recipient(self, machine, signer):
        mandate = signer.create_mandate(Decimal("50"), 3600)
        unresolved = PaymentIntent(recipient_name="Shady LLC", amount=Decimal("50"), purpose="servers")
        machine.begin(USER, mandate, unresolved, False)
        assert machine.approve(USER).state == ApprovalState.EXECUTED

    def test_new_request_supersedes_pending(self, machine, signer, ledger):
        first = begin(machine, signer)
        second = begin(machine, signer)
        rejected = [e for e in actions(ledger, "APPROVAL") if e["status"] == "REJECTED"]
        assert len(rejected) == 1
        assert first.content_hash in rejected[0]["metadata"]
        assert machine.inspect(USER).mandate == second

    def test_reject(self, machine, signer):
        begin(machine, signer)
        assert machine.reject(USER).state == ApprovalState.REJECTED
        assert machine.inspect(USER).state == ApprovalState.IDLE
        with pytest.raises(NoPendingMandate):
            machine.reject(USER)

    def test_settlement_failure_resets_session(self, settings, ledger, clock, signer):
        executor = SettlementExecutor(ledger, FakeTransferClient(error=RuntimeError("insufficient gas")), clock=clock)
        machine = ApprovalStateMachine(settings, ledger, executor, clock=clock)
        settings.set_pin(USER, PIN)
        begin(machine, signer)
        machine.approve(USER)
        with pytest.raises(SettlementFailure, match="insufficient gas"):
            machine.submit_pin(USER, PIN)
        assert machine.inspect(USER).state == ApprovalState.IDLE

    def test_sessions_are_isolated(self, machine, signer, settings):
        settings.set_pin(USER, PIN)
        settings.set_pin("other", PIN)
        begin(machine, signer)
        machine.approve(USER)
        with pytest.raises(NoPendingMandate):
            machine.approve("other")
        assert machine.inspect(USER).state == ApprovalState.AWAITING_PIN


class TestSessionStore:
    def test_idle_sessions_evicted(self, clock):
        store = SessionStore(ttl_seconds=60, clock=clock)
        with store.acquire("a"):
            pass
        clock.advance(61)
        assert store.evict_idle() == 1
        assert len(store) == 0

    def test_locked_out_sessions_survive_eviction(self, clock):
        store = SessionStore(ttl_seconds=60, clock=clock)
        with store.acquire("a") as session:
            session.lockout_until = clock() + 300
        clock.advance(61)
        assert store.evict_idle() == 0
        assert "a" in store
