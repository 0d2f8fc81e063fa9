"""Test configuration and fixtures for PKI hierarchy tests."""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import pytest

from pki_hierarchy.core.config import Settings
from pki_hierarchy.schemas.ca import CaRole, HierarchyNames
from pki_hierarchy.schemas.certificate import LedgerEntry
from pki_hierarchy.services.crypto_provider import CryptographyProvider
from pki_hierarchy.services.hierarchy_manager import HierarchyManager
from pki_hierarchy.services.issuance_engine import IssuanceEngine
from pki_hierarchy.services.ledger_store import LedgerStore
from pki_hierarchy.services.passphrase_vault import PassphraseVault
from pki_hierarchy.services.policy_catalog import PolicyCatalog

PASSPHRASES = {
    "ACME_CA": "root-passphrase",
    "example.com_CA": "domain-passphrase",
    "servers_CA": "servers-passphrase",
    "peoples_CA": "peoples-passphrase",
    "machines_CA": "machines-passphrase",
}


class ScriptedPrompt:
    """
    Answers passphrase prompts from a table keyed by CA name.

    ``overrides`` maps a full prompt text to a different answer, e.g. to make
    the verification entry differ.
    """

    def __init__(self, answers: Dict[str, str], overrides: Optional[Dict[str, str]] = None):
        self.answers = answers
        self.overrides = overrides or {}
        self.calls = []

    def __call__(self, text: str) -> str:
        self.calls.append(text)
        if text in self.overrides:
            return self.overrides[text]
        return self.answers[text.rsplit(" for ", 1)[1]]


def make_entry(serial: int, common_name: str = "alice", days: int = 30) -> LedgerEntry:
    now = datetime.now(timezone.utc)
    return LedgerEntry(
        serial=serial,
        subject_dn=f"/C=DE/O=ACME/CN={common_name}",
        artifact_name=common_name,
        issued_at=now,
        expires_at=now + timedelta(days=days),
    )


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment, rooted in a temporary directory."""
    return Settings(pki_dir=tmp_path / "pki", _env_file=None)


@pytest.fixture
def names():
    return HierarchyNames(root_name="ACME", domain_name="example.com")


@pytest.fixture
def catalog(names, settings):
    return PolicyCatalog(names, settings)


@pytest.fixture
def provider():
    return CryptographyProvider()


@pytest.fixture
def ledger_store():
    store = LedgerStore()
    yield store
    store.close()


@pytest.fixture
def vault():
    vault = PassphraseVault()
    yield vault
    vault.clear_all()


@pytest.fixture
def people_ca(catalog, tmp_path):
    """People CA description, used for ledger tests without a full hierarchy."""
    return catalog.authority(CaRole.INTERMEDIATE_PEOPLE, tmp_path / "ledgers")


@pytest.fixture
def prompt():
    return ScriptedPrompt(PASSPHRASES)


@pytest.fixture
def manager(settings, provider, ledger_store, vault):
    return HierarchyManager(
        settings=settings, provider=provider, ledger_store=ledger_store, vault=vault,
    )


@pytest.fixture
def hierarchy(manager, names, prompt):
    """A complete hierarchy for ACME / example.com."""
    return manager.setup(names, prompt)


@pytest.fixture
def engine(manager):
    return IssuanceEngine(manager)
