"""
Hierarchy setup, issuance and the components they are built on.
"""

from .policy_catalog import PolicyCatalog
from .ledger_store import LedgerStore
from .passphrase_vault import PassphraseVault, Secret
from .crypto_provider import CryptoProvider, CryptographyProvider
from .hierarchy_manager import Hierarchy, HierarchyManager
from .issuance_engine import IssuanceEngine

__all__ = [
    "PolicyCatalog",
    "LedgerStore",
    "PassphraseVault",
    "Secret",
    "CryptoProvider",
    "CryptographyProvider",
    "Hierarchy",
    "HierarchyManager",
    "IssuanceEngine",
]
