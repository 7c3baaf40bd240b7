"""Tests for settlement execution and the ERC-20 transfer client."""

import json
from decimal import Decimal

import httpx
import pytest
from eth_account import Account

from conftest import AGENT, FakeTransferClient
from sentinel.errors import (
    DuplicateSettlement,
    EscrowError,
    EscrowMismatch,
    MandateExpired,
    SettlementFailure,
)
from sentinel.escrow import LocalEscrow, commitment_for
from sentinel.settlement import (
    TRANSFER_SELECTOR,
    Erc20TransferClient,
    SettlementExecutor,
    encode_transfer_call,
)


RECIPIENT = "0x742d35Cc6634C0532925a3b844Bc454e4438f44e"
TOKEN = Account.create().address


def settlement_events(ledger):
    return [e for e in ledger.export() if e["event_type"] == "SETTLEMENT"]


class TestSettlementExecutor:
    def test_simulation_never_calls_client(self, ledger, signer, clock):
        client = FakeTransferClient()
        executor = SettlementExecutor(ledger, client, clock=clock)
        mandate = signer.create_mandate(Decimal("50"), 3600)

        outcome = executor.execute(mandate, RECIPIENT, Decimal("50"), production=False)
        assert outcome.simulated
        assert outcome.reference.startswith("sim-")
        assert client.calls == []
        (event,) = settlement_events(ledger)
        assert event["status"] == "SUCCESS"
        assert json.loads(event["metadata"])["simulated"] is True

    def test_production_uses_mandate_hash_as_idempotency_key(self, ledger, signer, clock):
        client = FakeTransferClient()
        executor = SettlementExecutor(ledger, client, clock=clock)
        mandate = signer.create_mandate(Decimal("50"), 3600)

        outcome = executor.execute(mandate, RECIPIENT, "50", production=True)
        assert outcome.reference == "0x" + "ab" * 32
        assert client.calls == [(RECIPIENT, Decimal("50"), mandate.content_hash)]
        assert executor.is_spent(mandate)

    def test_mandate_settles_once(self, ledger, signer, clock):
        client = FakeTransferClient()
        executor = SettlementExecutor(ledger, client, clock=clock)
        mandate = signer.create_mandate(Decimal("50"), 3600)
        executor.execute(mandate, RECIPIENT, "50", production=True)
        with pytest.raises(DuplicateSettlement):
            executor.execute(mandate, RECIPIENT, "50", production=True)
        assert len(client.calls) == 1

    def test_failure_logged_verbatim_and_not_retried(self, ledger, signer, clock):
        client = FakeTransferClient(error=RuntimeError("insufficient funds for gas"))
        executor = SettlementExecutor(ledger, client, clock=clock)
        mandate = signer.create_mandate(Decimal("50"), 3600)

        with pytest.raises(SettlementFailure, match="insufficient funds for gas"):
            executor.execute(mandate, RECIPIENT, "50", production=True)
        (event,) = settlement_events(ledger)
        assert event["status"] == "FAILED"
        assert json.loads(event["metadata"])["error"] == "insufficient funds for gas"

        with pytest.raises(DuplicateSettlement):
            executor.execute(mandate, RECIPIENT, "50", production=True)
        assert len(client.calls) == 1

    def test_amount_over_mandate_refused(self, ledger, signer, clock):
        client = FakeTransferClient()
        executor = SettlementExecutor(ledger, client, clock=clock)
        mandate = signer.create_mandate(Decimal("50"), 3600)
        with pytest.raises(SettlementFailure, match="exceeds mandate limit"):
            executor.execute(mandate, RECIPIENT, "50.01", production=True)
        assert client.calls == []
        assert not executor.is_spent(mandate)

    def test_expired_mandate_refused(self, ledger, signer, clock):
        client = FakeTransferClient()
        executor = SettlementExecutor(ledger, client, clock=clock)
        mandate = signer.create_mandate(Decimal("50"), 60)
        clock.advance(61)
        with pytest.raises(MandateExpired):
            executor.execute(mandate, RECIPIENT, "50", production=True)
        assert client.calls == []

    def test_production_without_client(self, ledger, signer, clock):
        executor = SettlementExecutor(ledger, clock=clock)
        mandate = signer.create_mandate(Decimal("50"), 3600)
        with pytest.raises(SettlementFailure, match="No transfer client"):
            executor.execute(mandate, RECIPIENT, "50", production=True)
        assert settlement_events(ledger)[0]["status"] == "FAILED"

    def test_production_without_address(self, ledger, signer, clock):
        client = FakeTransferClient()
        executor = SettlementExecutor(ledger, client, clock=clock)
        mandate = signer.create_mandate(Decimal("50"), 3600)
        with pytest.raises(SettlementFailure, match="no resolved address"):
            executor.execute(mandate, None, "50", production=True)
        assert client.calls == []


class TestEscrowRelease:
    def make(self, ledger, clock):
        escrow = LocalEscrow(clock=clock)
        buyer = Account.create().address
        escrow.deposit(buyer, Decimal("100"))
        escrow_id = escrow.create_escrow(buyer, RECIPIENT, Decimal("40"), commitment_for(b"receipt"), 3600)
        return SettlementExecutor(ledger, escrow=escrow, clock=clock), escrow_id

    def test_release_logged(self, ledger, clock):
        executor, escrow_id = self.make(ledger, clock)
        record = executor.release_escrow(escrow_id, b"receipt")
        assert record.amount == Decimal("40")
        (event,) = [e for e in ledger.export() if e["event_type"] == "ESCROW"]
        assert event["status"] == "SUCCESS"

    def test_mismatch_logged_and_raised(self, ledger, clock):
        executor, escrow_id = self.make(ledger, clock)
        with pytest.raises(EscrowMismatch):
            executor.release_escrow(escrow_id, b"forged")
        (event,) = [e for e in ledger.export() if e["event_type"] == "ESCROW"]
        assert event["status"] == "FAILED"

    def test_no_escrow_configured(self, ledger, clock):
        with pytest.raises(EscrowError):
            SettlementExecutor(ledger, clock=clock).release_escrow(1, b"x")


class TestTransferEncoding:
    def test_encode_transfer_call(self):
        data = encode_transfer_call(RECIPIENT, 50 * 10**18)
        assert data.startswith("0x" + TRANSFER_SELECTOR.hex())
        assert TRANSFER_SELECTOR.hex() == "a9059cbb"
        assert data[10:74] == RECIPIENT[2:].lower().rjust(64, "0")
        assert int(data[74:], 16) == 50 * 10**18

    def test_zero_amount_rejected(self):
        with pytest.raises(ValueError):
            encode_transfer_call(RECIPIENT, 0)


def rpc_transport(receipt_status="0x1", error=None):
    methods = []

    def handler(request):
        body = json.loads(request.content)
        methods.append(body["method"])
        if error is not None and body["method"] == error[0]:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"message": error[1]}})
        results = {
            "eth_getTransactionCount": "0x5",
            "eth_gasPrice": "0x3b9aca00",
            "eth_estimateGas": "0xea60",
            "eth_sendRawTransaction": "0x" + "cd" * 32,
            "eth_getTransactionReceipt": {"status": receipt_status},
        }
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": results[body["method"]]})

    return httpx.MockTransport(handler), methods


def make_client(transport):
    return Erc20TransferClient(
        AGENT.key.hex(),
        TOKEN,
        "http://rpc.test",
        chain_id=11155111,
        client=httpx.Client(transport=transport),
        sleep=lambda _: None,
    )


class TestErc20TransferClient:
    def test_transfer_broadcasts_and_waits(self):
        transport, methods = rpc_transport()
        tx_hash = make_client(transport).transfer(RECIPIENT, Decimal("50"), "0xkey")
        assert tx_hash == "0x" + "cd" * 32
        assert methods == [
            "eth_getTransactionCount",
            "eth_gasPrice",
            "eth_estimateGas",
            "eth_sendRawTransaction",
            "eth_getTransactionReceipt",
        ]

    def test_reverted_transaction(self):
        transport, _ = rpc_transport(receipt_status="0x0")
        with pytest.raises(SettlementFailure, match="reverted"):
            make_client(transport).transfer(RECIPIENT, Decimal("50"), "0xkey")

    def test_rpc_error_surfaces_message(self):
        transport, methods = rpc_transport(error=("eth_sendRawTransaction", "insufficient funds for gas * price + value"))
        with pytest.raises(SettlementFailure, match="insufficient funds"):
            make_client(transport).transfer(RECIPIENT, Decimal("50"), "0xkey")
        assert "eth_getTransactionReceipt" not in methods

    def test_http_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(502))
        with pytest.raises(SettlementFailure, match="eth_getTransactionCount"):
            make_client(transport).transfer(RECIPIENT, Decimal("50"), "0xkey")
