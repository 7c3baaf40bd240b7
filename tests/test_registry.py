"""Tests for the local mandate registry."""

from concurrent.futures import ThreadPoolExecutor

import pytest
from eth_account import Account

from conftest import FakeClock
from sentinel.errors import RegistryError
from sentinel.registry import LocalMandateRegistry


OWNER = Account.create()
OTHER = Account.create()
AGENT = Account.create()


def mandate_hash(i=1):
    return "0x" + f"{i:064x}"


def make_registry(tmp_path, clock=None):
    return LocalMandateRegistry(OWNER.address, path=tmp_path / "registry.json", clock=clock or FakeClock())


class TestLocalMandateRegistry:
    def test_register_and_verify(self, tmp_path):
        registry = make_registry(tmp_path)
        tx = registry.register_mandate(mandate_hash(), AGENT.address, 10**18, 1_700_003_600, sender=OWNER.address)
        assert tx.startswith("0x") and len(tx) == 66
        assert registry.verify_mandate(mandate_hash())
        record = registry.get_mandate(mandate_hash())
        assert record.agent == AGENT.address.lower()
        assert record.max_amount == 10**18

    def test_only_owner_registers(self, tmp_path):
        registry = make_registry(tmp_path)
        with pytest.raises(RegistryError, match="owner"):
            registry.register_mandate(mandate_hash(), AGENT.address, 1, 1_700_003_600, sender=OTHER.address)

    def test_duplicate_rejected(self, tmp_path):
        registry = make_registry(tmp_path)
        registry.register_mandate(mandate_hash(), AGENT.address, 1, 1_700_003_600, sender=OWNER.address)
        with pytest.raises(RegistryError, match="already exists"):
            registry.register_mandate(mandate_hash(), AGENT.address, 1, 1_700_003_600, sender=OWNER.address)

    def test_zero_amount_rejected(self, tmp_path):
        with pytest.raises(RegistryError):
            make_registry(tmp_path).register_mandate(mandate_hash(), AGENT.address, 0, 1, sender=OWNER.address)

    def test_revoked_does_not_verify(self, tmp_path):
        registry = make_registry(tmp_path)
        registry.register_mandate(mandate_hash(), AGENT.address, 1, 1_700_003_600, sender=OWNER.address)
        registry.revoke_mandate(mandate_hash(), sender=OWNER.address)
        assert not registry.verify_mandate(mandate_hash())
        with pytest.raises(RegistryError, match="already revoked"):
            registry.revoke_mandate(mandate_hash(), sender=OWNER.address)

    def test_expired_does_not_verify(self, tmp_path):
        clock = FakeClock()
        registry = make_registry(tmp_path, clock)
        registry.register_mandate(mandate_hash(), AGENT.address, 1, int(clock()) + 60, sender=OWNER.address)
        clock.advance(61)
        assert not registry.verify_mandate(mandate_hash())

    def test_unknown_does_not_verify(self, tmp_path):
        assert not make_registry(tmp_path).verify_mandate(mandate_hash(99))

    def test_state_persists_across_instances(self, tmp_path):
        make_registry(tmp_path).register_mandate(mandate_hash(), AGENT.address, 1, 1_700_003_600, sender=OWNER.address)
        reopened = LocalMandateRegistry(OTHER.address, path=tmp_path / "registry.json", clock=FakeClock())
        assert reopened.owner == OWNER.address.lower()
        assert reopened.verify_mandate(mandate_hash())

    def test_concurrent_registrations(self, tmp_path):
        registry = make_registry(tmp_path)

        def register(i):
            return registry.register_mandate(mandate_hash(i), AGENT.address, 1, 1_700_003_600, sender=OWNER.address)

        with ThreadPoolExecutor(max_workers=8) as ex:
            list(ex.map(register, range(1, 21)))
        assert all(registry.verify_mandate(mandate_hash(i)) for i in range(1, 21))
