"""
Issuance Engine - end-entity certificate issuance against a complete hierarchy.

Issuing a certificate:
1. Validate the request and pick the issuing CA and profile
2. Resolve name collisions with existing artifacts
3. Generate the leaf key and CSR
4. Sign under a ledger reservation and record the serial
5. Write the key, CSR, certificate and full chain
"""

import re
from typing import Callable, List, Optional

import structlog
from cryptography import x509

from pki_hierarchy.core.config import Settings
from pki_hierarchy.core.exceptions import (
    InvalidPassphrase,
    PassphraseRequired,
    UnknownSerial,
    EmptySubject,
    ValidationError,
)
from pki_hierarchy.schemas.ca import CaRole, CertificateAuthority, SubjectInfo
from pki_hierarchy.schemas.certificate import (
    ArtifactPaths,
    CertificateRequest,
    IssuanceProfile,
    IssuedCertificateBundle,
    LedgerEntry,
    PrincipalClass,
)
from pki_hierarchy.services import ca_storage
from pki_hierarchy.services.ca_storage import CERT_FILE_MODE, KEY_FILE_MODE
from pki_hierarchy.services.crypto_provider import certificate_pem, csr_pem
from pki_hierarchy.services.hierarchy_manager import Hierarchy, HierarchyManager, PassphrasePrompt
from pki_hierarchy.services.passphrase_vault import Secret

logger = structlog.get_logger()

# Called with the artifact name and its existing files; True replaces them
ConfirmOverwrite = Callable[[str, ArtifactPaths], bool]

SUPERSEDED_REASON = "superseded"

_UNSAFE_CHARS = re.compile(r"[\s/\\]+")


def artifact_name_for(subject: str) -> str:
    """
    File-system safe artifact name for a subject.

    Lower-cased, with whitespace and path separators replaced by ``_``:
    ``"Fritz Meier"`` becomes ``"fritz_meier"``.
    """
    return _UNSAFE_CHARS.sub("_", subject.strip().lower())


def artifact_paths(ca: CertificateAuthority, artifact_name: str) -> ArtifactPaths:
    base = ca.certs_dir
    return ArtifactPaths(
        key=base / f"{artifact_name}.key",
        certificate=base / f"{artifact_name}.crt",
        csr=base / f"{artifact_name}.csr",
        fullchain=base / f"{artifact_name}-fullchain.crt",
    )


class IssuanceEngine:
    """
    Issues server, user and device certificates.

    The CA passphrase is taken from the session vault; if it is not cached
    yet, ``passphrase_prompt`` is asked once and the answer is cached.
    """

    def __init__(self, manager: HierarchyManager, settings: Optional[Settings] = None):
        self.manager = manager
        self.settings = settings or manager.settings
        self.provider = manager.provider
        self.ledger_store = manager.ledger_store
        self.vault = manager.vault

    def issue(
        self,
        request: CertificateRequest,
        passphrase_prompt: Optional[PassphrasePrompt] = None,
        confirm_overwrite: Optional[ConfirmOverwrite] = None,
    ) -> Optional[IssuedCertificateBundle]:
        """
        Issue an end-entity certificate.

        Args:
            request: What to issue
            passphrase_prompt: Asked for the CA passphrase if the vault has none
            confirm_overwrite: Asked whether to replace an existing bundle of
                the same name; without it, existing bundles are never replaced

        Returns:
            IssuedCertificateBundle, or None if the operator declined to
            overwrite an existing bundle

        Raises:
            EmptySubject: If the subject is blank
            HierarchyNotReady: If the hierarchy is not complete
            PassphraseRequired: If no passphrase is cached and no prompt is given
            InvalidPassphrase: If the CA key cannot be decrypted
        """
        subject_cn = (request.subject or "").strip()
        if not subject_cn:
            raise EmptySubject("Certificate subject must not be empty")

        hierarchy = self.manager.require_complete()
        profile = hierarchy.catalog.profile_for(request.principal_class, self._server_role(request))
        ca = hierarchy.authority(profile.ca_role)
        subject = self._resolve_subject(hierarchy, profile, subject_cn, request)
        name = artifact_name_for(subject_cn)
        paths = artifact_paths(ca, name)

        log = logger.bind(ca=ca.name, artifact=name, profile=profile.name)

        if paths.existing():
            if confirm_overwrite is None or not confirm_overwrite(name, paths):
                log.info("Existing bundle kept, nothing issued")
                return None
            self._supersede(ca, subject, paths)

        san = self._subject_alt_names(profile, subject_cn, request.alt_names)

        key = self.provider.generate_key_pair(self.settings.leaf_key_curve)
        csr = self.provider.build_csr(key, subject, san, profile.digest)

        issuer_cert = ca_storage.read_certificate(ca.certificate_path)
        issuer_key_pem = ca_storage.read_bytes(ca.key_path)
        secret = self._ca_passphrase(ca, passphrase_prompt)

        try:
            with self.ledger_store.reserve(ca) as reservation:
                cert = self.provider.sign(
                    csr,
                    issuer_key_pem,
                    secret.reveal(),
                    issuer_cert,
                    profile,
                    profile.validity_days,
                    reservation.serial,
                )
                reservation.record(LedgerEntry(
                    serial=reservation.serial,
                    subject_dn=subject.distinguished_name,
                    artifact_name=name,
                    issued_at=cert.not_valid_before_utc,
                    expires_at=cert.not_valid_after_utc,
                ))
        except InvalidPassphrase:
            self.vault.clear(ca)
            log.warning("CA passphrase rejected, cached passphrase cleared")
            raise

        chain = [cert] + hierarchy.chain(ca.role)
        self._write_artifacts(ca, paths, key, csr, chain)

        log.info(
            "Certificate issued",
            serial=cert.serial_number,
            subject=subject.distinguished_name,
            san=san,
            expires=cert.not_valid_after_utc.isoformat(),
        )

        return IssuedCertificateBundle(
            artifact_name=name,
            ca_name=ca.name,
            ca_role=ca.role,
            serial=cert.serial_number,
            subject=subject,
            san=san,
            private_key=key,
            certificate=cert,
            csr=csr,
            chain=chain,
            paths=paths,
        )

    def revoke(self, ca_name: str, serial: int, reason: str = "unspecified") -> LedgerEntry:
        """Mark a certificate issued by ``ca_name`` as revoked in its ledger."""
        hierarchy = self.manager.require_complete()
        ca = hierarchy.find(ca_name)
        return self.ledger_store.mark_revoked(ca, serial, reason)

    # -- steps ------------------------------------------------------------

    @staticmethod
    def _server_role(request: CertificateRequest) -> Optional[CaRole]:
        if request.principal_class is not PrincipalClass.SERVER:
            return None
        if request.server_ca is None:
            raise ValidationError("Server requests must select the domain or the generic server CA")
        return request.server_ca

    @staticmethod
    def _resolve_subject(
        hierarchy: Hierarchy,
        profile: IssuanceProfile,
        common_name: str,
        request: CertificateRequest,
    ) -> SubjectInfo:
        names = hierarchy.names
        return SubjectInfo(
            country=names.country,
            state=names.state,
            locality=names.locality,
            organization=names.root_name,
            organizational_unit=(request.organizational_unit or "").strip() or profile.default_organizational_unit,
            common_name=common_name,
            email=(request.email or "").strip() or profile.default_email,
        )

    @staticmethod
    def _subject_alt_names(profile: IssuanceProfile, common_name: str, alt_names: List[str]) -> List[str]:
        if not profile.accepts_san:
            if alt_names:
                logger.warning(
                    "Alternate names ignored for this certificate type",
                    profile=profile.name,
                    alt_names=alt_names,
                )
            return []

        # DNS names compare case-insensitively
        san = [common_name]
        seen = {common_name.lower()}
        for name in alt_names:
            if name.lower() not in seen:
                seen.add(name.lower())
                san.append(name)
        return san

    def _ca_passphrase(self, ca: CertificateAuthority, prompt: Optional[PassphrasePrompt]) -> Secret:
        secret = self.vault.get(ca)
        if secret is not None:
            return secret
        if prompt is None:
            raise PassphraseRequired(f"Passphrase for {ca.name} is not cached and cannot be prompted for")
        return self.vault.set(ca, prompt(f"Enter passphrase for {ca.name}"))

    def _supersede(self, ca: CertificateAuthority, subject: SubjectInfo, paths: ArtifactPaths) -> None:
        """Remove an existing bundle and apply the overwrite policy to its ledger entry."""
        serial = None
        if paths.certificate.exists():
            serial = ca_storage.read_certificate(paths.certificate).serial_number
        else:
            previous = self.ledger_store.lookup_by_subject(ca, subject.distinguished_name)
            if previous is not None:
                serial = previous.serial

        removed = ca_storage.remove_files(paths.all())
        logger.info(
            "Existing bundle removed",
            ca=ca.name,
            files=[path.name for path in removed],
            superseded_serial=serial,
        )

        if serial is None or self.settings.overwrite_policy != "revoke":
            return
        try:
            self.ledger_store.mark_revoked(ca, serial, SUPERSEDED_REASON)
        except UnknownSerial:
            logger.warning("Superseded certificate not in ledger", ca=ca.name, serial=serial)

    def _write_artifacts(
        self,
        ca: CertificateAuthority,
        paths: ArtifactPaths,
        key,
        csr: x509.CertificateSigningRequest,
        chain: List[x509.Certificate],
    ) -> None:
        leaf_pem = certificate_pem(chain[0])
        files = [
            (paths.key, self.provider.export_key(key), KEY_FILE_MODE),
            (paths.csr, csr_pem(csr), CERT_FILE_MODE),
            (paths.certificate, leaf_pem, CERT_FILE_MODE),
            (paths.fullchain, b"".join(certificate_pem(cert) for cert in chain), CERT_FILE_MODE),
            (ca_storage.newcerts_path(ca, chain[0].serial_number), leaf_pem, CERT_FILE_MODE),
        ]

        written = []
        try:
            for path, data, mode in files:
                ca_storage.write_file(path, data, mode)
                written.append(path)
        except Exception:
            logger.error("Writing certificate bundle failed", ca=ca.name, written=[p.name for p in written])
            ca_storage.remove_files(written)
            raise
