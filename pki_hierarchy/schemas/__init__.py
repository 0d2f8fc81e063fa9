"""
Pydantic schemas for CA identities, profiles, requests and ledger entries.
"""

from .ca import (
    CaRole,
    INTERMEDIATE_ROLES,
    SERVER_ROLES,
    SubjectInfo,
    HierarchyNames,
    HierarchyManifest,
    CaPolicy,
    CertificateAuthority,
    HierarchyState,
    HierarchyStatus,
)
from .certificate import (
    PrincipalClass,
    LedgerStatus,
    LedgerEntry,
    IssuanceProfile,
    CertificateRequest,
    ArtifactPaths,
    IssuedCertificateBundle,
)

__all__ = [
    # CA schemas
    "CaRole",
    "INTERMEDIATE_ROLES",
    "SERVER_ROLES",
    "SubjectInfo",
    "HierarchyNames",
    "HierarchyManifest",
    "CaPolicy",
    "CertificateAuthority",
    "HierarchyState",
    "HierarchyStatus",
    # Certificate schemas
    "PrincipalClass",
    "LedgerStatus",
    "LedgerEntry",
    "IssuanceProfile",
    "CertificateRequest",
    "ArtifactPaths",
    "IssuedCertificateBundle",
]
