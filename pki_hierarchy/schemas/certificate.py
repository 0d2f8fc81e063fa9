"""
Pydantic schemas for certificate issuance and the issuance ledger.
"""

from enum import Enum
from pathlib import Path
from typing import Optional, List, Tuple
from datetime import datetime

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pki_hierarchy.schemas.ca import CaRole, SubjectInfo


class PrincipalClass(str, Enum):
    SERVER = "server"
    USER = "user"
    DEVICE = "device"


class LedgerStatus(str, Enum):
    VALID = "valid"
    REVOKED = "revoked"
    RESERVED = "reserved"  # allocated, signing in progress
    VOID = "void"  # allocated, never issued


class LedgerEntry(BaseModel):
    """One row of a CA's issuance ledger."""
    model_config = ConfigDict(from_attributes=True)

    serial: int
    subject_dn: str
    issued_at: datetime
    expires_at: Optional[datetime] = None
    status: LedgerStatus = LedgerStatus.VALID
    artifact_name: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None


class IssuanceProfile(BaseModel):
    """Extensions and naming defaults a CA applies to what it signs."""
    model_config = ConfigDict(frozen=True)

    name: str
    ca_role: CaRole
    principal_class: Optional[PrincipalClass] = None
    is_ca: bool = False
    path_length: Optional[int] = None
    key_usage: Tuple[str, ...] = ("digital_signature", "key_encipherment")
    extended_key_usage: Tuple[str, ...] = ()
    default_organizational_unit: Optional[str] = None
    default_email: Optional[str] = None
    accepts_san: bool = False
    validity_days: int = Field(..., ge=1)
    digest: str = "sha256"


class CertificateRequest(BaseModel):
    """
    Request for an end-entity certificate.

    The subject is deliberately not length-validated here; the issuance
    engine rejects blank subjects before any key material is produced.
    """
    principal_class: PrincipalClass
    subject: str = Field(..., description="Common name: host name, full name or device name")
    organizational_unit: Optional[str] = Field(None, description="Overrides the profile's OU")
    email: Optional[str] = Field(None, description="Overrides the profile's e-mail address")
    alt_names: List[str] = Field(default_factory=list, description="Additional DNS names (server only)")
    server_ca: Optional[CaRole] = Field(None, description="Issuing CA for server requests")

    @field_validator('alt_names', mode='before')
    @classmethod
    def split_alt_names(cls, v):
        """Accept a comma-separated string as well as a list."""
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [name.strip() for name in v if name and name.strip()]


class ArtifactPaths(BaseModel):
    """Files making up one issued bundle."""
    model_config = ConfigDict(frozen=True)

    key: Path
    certificate: Path
    csr: Path
    fullchain: Path

    def all(self) -> List[Path]:
        return [self.key, self.certificate, self.csr, self.fullchain]

    def existing(self) -> List[Path]:
        return [path for path in self.all() if path.exists()]


class IssuedCertificateBundle(BaseModel):
    """Result of a successful issuance."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    artifact_name: str
    ca_name: str
    ca_role: CaRole
    serial: int
    subject: SubjectInfo
    san: List[str] = Field(default_factory=list)
    private_key: PrivateKeyTypes
    certificate: x509.Certificate
    csr: x509.CertificateSigningRequest
    chain: List[x509.Certificate] = Field(..., description="Leaf, intermediate, root")
    paths: ArtifactPaths

    @property
    def subject_dn(self) -> str:
        return self.subject.distinguished_name

    @property
    def fullchain_pem(self) -> bytes:
        return b"".join(cert.public_bytes(serialization.Encoding.PEM) for cert in self.chain)
