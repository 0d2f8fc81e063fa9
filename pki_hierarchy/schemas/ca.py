"""
Pydantic schemas for Certificate Authority identities.
"""

from enum import Enum
from pathlib import Path
from typing import Optional, List, Tuple
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

RESERVED_CA_NAMES = ("root", "servers", "peoples", "machines")


class CaRole(str, Enum):
    ROOT = "root"
    INTERMEDIATE_DOMAIN = "intermediate-domain"
    INTERMEDIATE_GENERIC_SERVER = "intermediate-generic-server"
    INTERMEDIATE_PEOPLE = "intermediate-people"
    INTERMEDIATE_DEVICE = "intermediate-device"

    @property
    def is_root(self) -> bool:
        return self is CaRole.ROOT


# Fixed creation order of the intermediates
INTERMEDIATE_ROLES: Tuple[CaRole, ...] = (
    CaRole.INTERMEDIATE_DOMAIN,
    CaRole.INTERMEDIATE_GENERIC_SERVER,
    CaRole.INTERMEDIATE_PEOPLE,
    CaRole.INTERMEDIATE_DEVICE,
)

SERVER_ROLES: Tuple[CaRole, ...] = (
    CaRole.INTERMEDIATE_DOMAIN,
    CaRole.INTERMEDIATE_GENERIC_SERVER,
)


class SubjectInfo(BaseModel):
    """Certificate subject information."""
    model_config = ConfigDict(frozen=True)

    common_name: str = Field(..., min_length=1, description="Common Name (CN)")
    country: Optional[str] = Field(None, min_length=2, max_length=2, description="Country code (C)")
    state: Optional[str] = Field(None, description="State or Province (ST)")
    locality: Optional[str] = Field(None, description="Locality or City (L)")
    organization: Optional[str] = Field(None, description="Organization (O)")
    organizational_unit: Optional[str] = Field(None, description="Organizational Unit (OU)")
    email: Optional[str] = Field(None, description="Email address")

    def components(self) -> List[Tuple[str, str]]:
        """Populated (attribute, value) pairs in C, ST, L, O, OU, CN, emailAddress order."""
        pairs = [
            ("C", self.country),
            ("ST", self.state),
            ("L", self.locality),
            ("O", self.organization),
            ("OU", self.organizational_unit),
            ("CN", self.common_name),
            ("emailAddress", self.email),
        ]
        return [(attr, value) for attr, value in pairs if value]

    @property
    def distinguished_name(self) -> str:
        """OpenSSL one-line form, e.g. ``/C=DE/O=ACME/CN=ACME_CA``."""
        return "".join(f"/{attr}={value}" for attr, value in self.components())


class HierarchyNames(BaseModel):
    """Operator-chosen names and location of a hierarchy."""
    model_config = ConfigDict(frozen=True)

    root_name: str = Field(..., description="Root CA name, also the O= of every subject")
    domain_name: str = Field(..., description="Name of the domain-server intermediate CA")
    country: str = Field("DE", description="Two-letter country code")
    state: str = Field("Bavaria")
    locality: str = Field("Munich")

    @field_validator('root_name', 'domain_name', 'state', 'locality')
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator('domain_name')
    @classmethod
    def validate_domain_name(cls, v: str) -> str:
        if "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("domain CA name must be usable as a directory name")
        if v.lower() in RESERVED_CA_NAMES:
            raise ValueError(f"'{v}' is reserved for a built-in CA")
        return v

    @field_validator('country')
    @classmethod
    def validate_country(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 2 or not v.isalpha():
            raise ValueError("country must be a two-letter code")
        return v

    @property
    def root_slug(self) -> str:
        """Root name as used in contact e-mail addresses."""
        return "".join(self.root_name.lower().split())


class HierarchyManifest(BaseModel):
    """Persisted description of a hierarchy (``hierarchy.json``)."""
    names: HierarchyNames
    created_at: datetime
    tool_version: str


class CaPolicy(BaseModel):
    """Static per-role policy used to create and operate a CA."""
    model_config = ConfigDict(frozen=True)

    role: CaRole
    directory_name: str
    certificate_filename: str
    subject: SubjectInfo
    validity_days: int = Field(..., ge=1, description="Validity of the CA's own certificate")
    digest: str
    key_curve: str
    serial_start: int = Field(..., ge=1)


class CertificateAuthority(BaseModel):
    """A CA of the hierarchy and the on-disk layout it owns."""
    model_config = ConfigDict(frozen=True)

    name: str
    role: CaRole
    path: Path
    certificate_filename: str
    subject: SubjectInfo
    validity_days: int
    digest: str
    key_curve: str
    serial_start: int

    @property
    def is_root(self) -> bool:
        return self.role.is_root

    @property
    def private_dir(self) -> Path:
        return self.path / "private"

    @property
    def key_path(self) -> Path:
        return self.private_dir / "ca_key.key"

    @property
    def certs_dir(self) -> Path:
        return self.path / "certs"

    @property
    def certificate_path(self) -> Path:
        return self.certs_dir / self.certificate_filename

    @property
    def chain_path(self) -> Path:
        """Trust chain ``[this CA, root]``; the root's chain is its own certificate."""
        if self.is_root:
            return self.certificate_path
        return self.certs_dir / "ca-chain.crt"

    @property
    def csr_path(self) -> Path:
        return self.path / "csr" / "ca.csr"

    @property
    def newcerts_dir(self) -> Path:
        return self.path / "newcerts"

    @property
    def crl_dir(self) -> Path:
        return self.path / "crl"

    @property
    def ledger_path(self) -> Path:
        return self.path / "index.db"

    def __str__(self) -> str:
        return self.name


class HierarchyState(str, Enum):
    ABSENT = "absent"
    ROOT_CREATED = "root-created"
    INTERMEDIATES_CREATED = "intermediates-created"
    COMPLETE = "complete"


class HierarchyStatus(BaseModel):
    """Lifecycle state of a hierarchy as found on disk."""
    state: HierarchyState
    names: Optional[HierarchyNames] = None
    created_roles: List[CaRole] = Field(default_factory=list)

    @property
    def missing_roles(self) -> List[CaRole]:
        return [role for role in CaRole if role not in self.created_roles]
