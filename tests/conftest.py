"""Shared fakes for Sentinel tests."""

import json
import threading

import pytest
from eth_account import Account

from sentinel.audit import AuditLedger, SqliteAuditStore
from sentinel.capability import CapabilityPool
from sentinel.mandate import MandateSigner
from sentinel.settings import UserSettings
from sentinel.voice import Transcription


START = 1_700_000_000.0
AGENT = Account.create()


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ScriptedBackend:
    """Returns queued responses in order. Exceptions in the queue are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, entry, prompt):
        with self._lock:
            self.calls.append((entry, prompt))
            item = self.responses.pop(0) if self.responses else "{}"
        if isinstance(item, Exception):
            raise item
        return item


class RoutingBackend:
    """Answers by prompt type: parse, negotiate, review, forensic."""

    def __init__(self, intent=None, price=None, review=None, forensic="Forensic Audit Complete"):
        self.intent = intent or {"recipient": "AWS", "amount": 50, "purpose": "servers"}
        self.price = price
        self.review = review or {"approved": True, "reason": "Title: OK | Explanation: fine", "riskScore": 10}
        self.forensic = forensic
        self.prompts = []

    def generate(self, entry, prompt):
        self.prompts.append(prompt)
        if "Parse the following request" in prompt:
            return json.dumps(self.intent)
        if "Negotiate a price" in prompt:
            if self.price is None:
                return str(self.intent["amount"])
            return str(self.price)
        if "Chief Forensic Auditor" in prompt:
            if isinstance(self.review, Exception):
                raise self.review
            return json.dumps(self.review)
        return self.forensic


class FakeTransferClient:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def transfer(self, recipient, amount, idempotency_key):
        self.calls.append((recipient, amount, idempotency_key))
        if self.error is not None:
            raise self.error
        return "0x" + "ab" * 32


class FakeVoice:
    def __init__(self, text="", confidence=1.0, verified=True):
        self.result = Transcription(text=text, verified=verified, confidence=confidence)
        self.calls = 0

    def transcribe(self, audio):
        self.calls += 1
        return self.result


def make_pool(backend, n=1, **kwargs):
    kwargs.setdefault("sleep", lambda _: None)
    kwargs.setdefault("seed", 7)
    creds = [f"key-{i}" for i in range(n)]
    return CapabilityPool.from_credentials(creds, ["variant-a"], backend, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(tmp_path, clock):
    return AuditLedger(SqliteAuditStore(tmp_path / "audit.db"), b"test-key", clock=clock)


@pytest.fixture
def settings(tmp_path):
    return UserSettings(tmp_path / "settings.db")


@pytest.fixture
def signer(clock):
    return MandateSigner(AGENT.key.hex(), clock=clock)
