"""
Policy Catalog - static issuance rules of every CA in the hierarchy.

Per-role policy is built in code from the hierarchy names and settings; no
configuration text is templated.
"""

from pathlib import Path
from typing import Dict, Optional, Union

from pki_hierarchy.core.config import Settings, get_settings
from pki_hierarchy.core.exceptions import UnknownProfile
from pki_hierarchy.schemas.ca import (
    CaRole,
    CaPolicy,
    CertificateAuthority,
    HierarchyNames,
    SubjectInfo,
    SERVER_ROLES,
)
from pki_hierarchy.schemas.certificate import IssuanceProfile, PrincipalClass

# Serial offsets keep serials of different CAs apart at a glance
SERIAL_STARTS: Dict[CaRole, int] = {
    CaRole.ROOT: 1000,
    CaRole.INTERMEDIATE_DOMAIN: 1000,
    CaRole.INTERMEDIATE_GENERIC_SERVER: 1500,
    CaRole.INTERMEDIATE_PEOPLE: 2000,
    CaRole.INTERMEDIATE_DEVICE: 3000,
}

CA_KEY_USAGE = ("digital_signature", "crl_sign", "key_cert_sign")
LEAF_KEY_USAGE = ("digital_signature", "key_encipherment")

_PRINCIPAL_ROLES: Dict[PrincipalClass, CaRole] = {
    PrincipalClass.USER: CaRole.INTERMEDIATE_PEOPLE,
    PrincipalClass.DEVICE: CaRole.INTERMEDIATE_DEVICE,
}


class PolicyCatalog:
    """
    Lookup of CA policies and issuance profiles for one hierarchy.

    Handles:
    - The policy of each CA (names, directory, validity, serial start)
    - The profile each CA applies when signing
    - Profile resolution for a principal class
    """

    def __init__(self, names: HierarchyNames, settings: Optional[Settings] = None):
        self.names = names
        self.settings = settings or get_settings()
        self._policies = self._build_policies()
        self._profiles = self._build_profiles()

    def ca_policy(self, role: CaRole) -> CaPolicy:
        """Policy of the CA holding ``role``."""
        return self._policies[CaRole(role)]

    def profile_for_role(self, role: CaRole) -> IssuanceProfile:
        """
        Profile applied by the CA holding ``role``.

        The root signs intermediates only, so its profile is the
        intermediate-CA profile.
        """
        return self._profiles[CaRole(role)]

    def self_signed_profile(self) -> IssuanceProfile:
        """Profile of the root's own, self-signed certificate."""
        return IssuanceProfile(
            name="root_ca",
            ca_role=CaRole.ROOT,
            is_ca=True,
            path_length=None,
            key_usage=CA_KEY_USAGE,
            validity_days=self.settings.root_ca_validity_days,
            digest=self.settings.ca_digest,
        )

    def profile_for(
        self,
        principal_class: Union[PrincipalClass, str],
        ca_role: Optional[CaRole] = None,
    ) -> IssuanceProfile:
        """
        Resolve the issuance profile for a principal class.

        Args:
            principal_class: server, user or device
            ca_role: For servers, which server CA issues (domain-server by default)

        Returns:
            IssuanceProfile: The matching profile

        Raises:
            UnknownProfile: If the principal class is unknown, or ``ca_role``
                cannot issue for it
        """
        try:
            principal_class = PrincipalClass(principal_class)
        except ValueError:
            raise UnknownProfile(f"Unknown principal class: {principal_class!r}")

        if principal_class is PrincipalClass.SERVER:
            role = CaRole(ca_role) if ca_role is not None else CaRole.INTERMEDIATE_DOMAIN
            if role not in SERVER_ROLES:
                raise UnknownProfile(f"{role.value} does not issue server certificates")
            return self._profiles[role]

        return self._profiles[_PRINCIPAL_ROLES[principal_class]]

    def authority(self, role: CaRole, pki_dir: Path) -> CertificateAuthority:
        """Describe the CA holding ``role`` under ``pki_dir``."""
        policy = self.ca_policy(role)
        return CertificateAuthority(
            name=policy.subject.common_name,
            role=policy.role,
            path=Path(pki_dir) / policy.directory_name,
            certificate_filename=policy.certificate_filename,
            subject=policy.subject,
            validity_days=policy.validity_days,
            digest=policy.digest,
            key_curve=policy.key_curve,
            serial_start=policy.serial_start,
        )

    def authorities(self, pki_dir: Path) -> Dict[CaRole, CertificateAuthority]:
        return {role: self.authority(role, pki_dir) for role in CaRole}

    def _subject(self, common_name: str, organizational_unit: str, email: str) -> SubjectInfo:
        return SubjectInfo(
            country=self.names.country,
            state=self.names.state,
            locality=self.names.locality,
            organization=self.names.root_name,
            organizational_unit=organizational_unit,
            common_name=common_name,
            email=email,
        )

    def _root_email(self, local_part: str) -> str:
        return f"{local_part}@{self.names.root_slug}.{self.settings.email_tld}"

    def _build_policies(self) -> Dict[CaRole, CaPolicy]:
        s = self.settings
        root = self.names.root_name
        domain = self.names.domain_name

        def policy(role, directory, filename, subject, validity_days):
            return CaPolicy(
                role=role,
                directory_name=directory,
                certificate_filename=filename,
                subject=subject,
                validity_days=validity_days,
                digest=s.ca_digest,
                key_curve=s.ca_key_curve,
                serial_start=SERIAL_STARTS[role],
            )

        return {
            CaRole.ROOT: policy(
                CaRole.ROOT, "root-ca", "root_ca.crt",
                self._subject(f"{root}_CA", "IT Security", self._root_email("admin")),
                s.root_ca_validity_days,
            ),
            CaRole.INTERMEDIATE_DOMAIN: policy(
                CaRole.INTERMEDIATE_DOMAIN, f"{domain}-ca", f"{domain}_ca.crt",
                self._subject(f"{domain}_CA", domain, f"admin@{domain.lower()}.{s.email_tld}"),
                s.intermediate_ca_validity_days,
            ),
            CaRole.INTERMEDIATE_GENERIC_SERVER: policy(
                CaRole.INTERMEDIATE_GENERIC_SERVER, "servers-ca", "servers_ca.crt",
                self._subject("servers_CA", "Servers Division", self._root_email("servers")),
                s.intermediate_ca_validity_days,
            ),
            CaRole.INTERMEDIATE_PEOPLE: policy(
                CaRole.INTERMEDIATE_PEOPLE, "peoples-ca", "peoples_ca.crt",
                self._subject("peoples_CA", "Peoples Division", self._root_email("people")),
                s.intermediate_ca_validity_days,
            ),
            CaRole.INTERMEDIATE_DEVICE: policy(
                CaRole.INTERMEDIATE_DEVICE, "machines-ca", "machines_ca.crt",
                self._subject("machines_CA", "Machines Division", self._root_email("machines")),
                s.intermediate_ca_validity_days,
            ),
        }

    def _build_profiles(self) -> Dict[CaRole, IssuanceProfile]:
        s = self.settings
        domain = self.names.domain_name

        return {
            CaRole.ROOT: IssuanceProfile(
                name="intermediate_ca",
                ca_role=CaRole.ROOT,
                is_ca=True,
                path_length=0,
                key_usage=CA_KEY_USAGE,
                validity_days=s.intermediate_ca_validity_days,
                digest=s.ca_digest,
            ),
            CaRole.INTERMEDIATE_DOMAIN: IssuanceProfile(
                name="domain_server_cert",
                ca_role=CaRole.INTERMEDIATE_DOMAIN,
                principal_class=PrincipalClass.SERVER,
                key_usage=LEAF_KEY_USAGE,
                extended_key_usage=("server_auth",),
                default_organizational_unit=domain,
                default_email=f"admin@{domain}",
                accepts_san=True,
                validity_days=s.domain_server_cert_validity_days,
                digest=s.leaf_digest,
            ),
            CaRole.INTERMEDIATE_GENERIC_SERVER: IssuanceProfile(
                name="generic_server_cert",
                ca_role=CaRole.INTERMEDIATE_GENERIC_SERVER,
                principal_class=PrincipalClass.SERVER,
                key_usage=LEAF_KEY_USAGE,
                extended_key_usage=("server_auth",),
                default_organizational_unit="Servers Division",
                default_email=self._root_email("servers"),
                accepts_san=True,
                validity_days=s.generic_server_cert_validity_days,
                digest=s.leaf_digest,
            ),
            CaRole.INTERMEDIATE_PEOPLE: IssuanceProfile(
                name="user_cert",
                ca_role=CaRole.INTERMEDIATE_PEOPLE,
                principal_class=PrincipalClass.USER,
                key_usage=("digital_signature", "non_repudiation", "key_encipherment"),
                extended_key_usage=("client_auth", "email_protection"),
                default_organizational_unit="Peoples Division",
                default_email=self._root_email("people"),
                validity_days=s.user_cert_validity_days,
                digest=s.leaf_digest,
            ),
            CaRole.INTERMEDIATE_DEVICE: IssuanceProfile(
                name="device_cert",
                ca_role=CaRole.INTERMEDIATE_DEVICE,
                principal_class=PrincipalClass.DEVICE,
                key_usage=LEAF_KEY_USAGE,
                extended_key_usage=("server_auth", "client_auth"),
                default_organizational_unit="Machines Division",
                default_email=self._root_email("machines"),
                validity_days=s.device_cert_validity_days,
                digest=s.leaf_digest,
            ),
        }
