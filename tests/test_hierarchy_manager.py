"""Tests for hierarchy setup, discovery and teardown."""

import pytest
from cryptography import x509

from pki_hierarchy.core.exceptions import (
    CryptoProviderError,
    EmptyPassphrase,
    HierarchyAlreadyExists,
    HierarchyNotReady,
    HierarchyStateError,
    PassphraseMismatch,
)
from pki_hierarchy.schemas.ca import CaRole, HierarchyState, INTERMEDIATE_ROLES
from pki_hierarchy.schemas.certificate import LedgerStatus
from pki_hierarchy.services import ca_storage
from pki_hierarchy.services.crypto_provider import CryptographyProvider
from pki_hierarchy.services.hierarchy_manager import HierarchyManager

from conftest import PASSPHRASES, ScriptedPrompt


class FailingProvider(CryptographyProvider):
    """Provider that refuses to sign the certificate of one CA."""

    def __init__(self, fail_for: str):
        self.fail_for = fail_for

    def sign(self, csr, *args, **kwargs):
        common_name = csr.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)[0].value
        if common_name == self.fail_for:
            raise CryptoProviderError("HSM unavailable")
        return super().sign(csr, *args, **kwargs)


class TestSetup:

    def test_initial_state(self, manager):
        assert manager.state() is HierarchyState.ABSENT
        assert not manager.exists()
        with pytest.raises(HierarchyNotReady):
            manager.require_complete()

    def test_setup_completes(self, manager, hierarchy):
        status = manager.status()

        assert status.state is HierarchyState.COMPLETE
        assert set(status.created_roles) == set(CaRole)
        assert status.missing_roles == []
        for ca in hierarchy.authorities.values():
            assert ca.key_path.exists()
            assert ca.certificate_path.exists()
            assert ca.ledger_path.exists()

    def test_passphrase_asked_twice_per_ca(self, hierarchy, prompt):
        assert len(prompt.calls) == 10
        assert prompt.calls[:2] == ["Enter passphrase for ACME_CA", "Verify passphrase for ACME_CA"]
        assert prompt.calls[2] == "Enter passphrase for example.com_CA"

    def test_intermediates_signed_by_root_ledger(self, hierarchy, ledger_store):
        entries = ledger_store.entries(hierarchy.root)

        assert [e.serial for e in entries] == [1000, 1001, 1002, 1003]
        assert [e.subject_dn.split("/CN=")[1].split("/")[0] for e in entries] == [
            "example.com_CA", "servers_CA", "peoples_CA", "machines_CA",
        ]
        assert (hierarchy.root.newcerts_dir / "03E8.pem").exists()

    def test_intermediate_ledgers_start_at_offsets(self, hierarchy, ledger_store):
        starts = {role: ledger_store.next_serial(hierarchy.authority(role)) for role in INTERMEDIATE_ROLES}

        assert starts == {
            CaRole.INTERMEDIATE_DOMAIN: 1000,
            CaRole.INTERMEDIATE_GENERIC_SERVER: 1500,
            CaRole.INTERMEDIATE_PEOPLE: 2000,
            CaRole.INTERMEDIATE_DEVICE: 3000,
        }

    def test_intermediate_chain(self, hierarchy, provider):
        chain = hierarchy.chain(CaRole.INTERMEDIATE_PEOPLE)

        assert len(chain) == 2
        assert chain[1] == hierarchy.certificate(CaRole.ROOT)
        assert chain[0].extensions.get_extension_for_class(x509.BasicConstraints).value.path_length == 0
        assert provider.verify_chain(chain)

    def test_ca_keys_encrypted_with_their_passphrase(self, hierarchy, provider):
        for ca in hierarchy.authorities.values():
            pem = ca_storage.read_bytes(ca.key_path)
            provider.load_encrypted_key(pem, PASSPHRASES[ca.name].encode())

    def test_vault_seeded(self, hierarchy, vault):
        assert len(vault) == 5
        assert vault.get("peoples_CA").reveal() == b"peoples-passphrase"

    def test_rediscovered_by_new_manager(self, hierarchy, settings, names):
        other = HierarchyManager(settings=settings)
        try:
            assert other.state() is HierarchyState.COMPLETE
            assert other.load().names == names
        finally:
            other.ledger_store.close()


class TestSetupFailures:

    def test_root_passphrase_mismatch_writes_nothing(self, manager, names, settings):
        prompt = ScriptedPrompt(PASSPHRASES, {"Verify passphrase for ACME_CA": "typo"})

        with pytest.raises(PassphraseMismatch):
            manager.setup(names, prompt)

        assert not settings.pki_dir.exists()
        assert manager.state() is HierarchyState.ABSENT

    def test_blank_passphrase(self, manager, names):
        with pytest.raises(EmptyPassphrase):
            manager.setup(names, ScriptedPrompt({"ACME_CA": "  "}))

    def test_intermediate_mismatch_leaves_partial_hierarchy(self, manager, names):
        prompt = ScriptedPrompt(PASSPHRASES, {"Verify passphrase for peoples_CA": "typo"})

        with pytest.raises(PassphraseMismatch):
            manager.setup(names, prompt)

        status = manager.status()
        assert status.state is HierarchyState.INTERMEDIATES_CREATED
        assert status.missing_roles == [CaRole.INTERMEDIATE_PEOPLE, CaRole.INTERMEDIATE_DEVICE]
        assert not (manager.pki_dir / "peoples-ca").exists()
        with pytest.raises(HierarchyNotReady):
            manager.require_complete()

    def test_provider_failure_removes_ca_and_voids_serial(self, settings, ledger_store, vault, names, prompt):
        manager = HierarchyManager(
            settings=settings, provider=FailingProvider("peoples_CA"), ledger_store=ledger_store, vault=vault,
        )

        with pytest.raises(CryptoProviderError):
            manager.setup(names, prompt)

        root = manager.load().root
        statuses = [(e.serial, e.status) for e in ledger_store.entries(root)]
        assert statuses == [
            (1000, LedgerStatus.VALID),
            (1001, LedgerStatus.VALID),
            (1002, LedgerStatus.VOID),
        ]
        assert not (manager.pki_dir / "peoples-ca").exists()
        assert manager.state() is HierarchyState.INTERMEDIATES_CREATED

    def test_partial_hierarchy_requires_overwrite(self, manager, names):
        with pytest.raises(PassphraseMismatch):
            manager.setup(names, ScriptedPrompt(PASSPHRASES, {"Verify passphrase for servers_CA": "typo"}))

        with pytest.raises(HierarchyAlreadyExists):
            manager.setup(names, ScriptedPrompt(PASSPHRASES))

        hierarchy = manager.setup(names, ScriptedPrompt(PASSPHRASES), overwrite=True)
        assert manager.state() is HierarchyState.COMPLETE
        assert hierarchy.root.path.exists()


class TestRecreate:

    def test_refuses_without_overwrite(self, manager, hierarchy, names, prompt):
        root_pem = ca_storage.read_bytes(hierarchy.root.certificate_path)

        with pytest.raises(HierarchyAlreadyExists):
            manager.setup(names, prompt)

        assert ca_storage.read_bytes(hierarchy.root.certificate_path) == root_pem

    def test_overwrite_rebuilds(self, manager, hierarchy, names, prompt, ledger_store):
        old_root = hierarchy.certificate(CaRole.ROOT)

        rebuilt = manager.setup(names, prompt, overwrite=True)

        assert rebuilt.certificate(CaRole.ROOT) != old_root
        assert manager.state() is HierarchyState.COMPLETE
        assert ledger_store.next_serial(rebuilt.root) == 1004

    def test_discard(self, manager, hierarchy, vault):
        manager.discard()

        assert not manager.pki_dir.exists()
        assert len(vault) == 0
        assert manager.state() is HierarchyState.ABSENT


class TestLookup:

    @pytest.mark.parametrize("name,role", [
        ("root", CaRole.ROOT),
        ("ACME_CA", CaRole.ROOT),
        ("example.com", CaRole.INTERMEDIATE_DOMAIN),
        ("servers", CaRole.INTERMEDIATE_GENERIC_SERVER),
        ("peoples-ca", CaRole.INTERMEDIATE_PEOPLE),
        ("intermediate-device", CaRole.INTERMEDIATE_DEVICE),
        ("Machines_CA", CaRole.INTERMEDIATE_DEVICE),
    ])
    def test_find(self, hierarchy, name, role):
        assert hierarchy.find(name).role is role

    def test_find_unknown(self, hierarchy):
        with pytest.raises(HierarchyStateError):
            hierarchy.find("nope")
