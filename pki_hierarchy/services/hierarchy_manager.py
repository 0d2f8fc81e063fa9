"""
CA Hierarchy Manager - creation, discovery and teardown of a CA hierarchy.

Setup runs as a state machine: Absent -> RootCreated -> IntermediatesCreated
-> Complete. The current state is always derived from what is on disk, so an
interrupted setup is detected by the next session.
"""

import hmac
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog
from cryptography import x509

from pki_hierarchy.core.config import Settings, get_settings
from pki_hierarchy.core.exceptions import (
    EmptyPassphrase,
    HierarchyAlreadyExists,
    HierarchyNotReady,
    HierarchyStateError,
    PassphraseMismatch,
)
from pki_hierarchy.schemas.ca import (
    CaRole,
    CertificateAuthority,
    HierarchyManifest,
    HierarchyNames,
    HierarchyState,
    HierarchyStatus,
    INTERMEDIATE_ROLES,
)
from pki_hierarchy.schemas.certificate import LedgerEntry
from pki_hierarchy.services import ca_storage
from pki_hierarchy.services.ca_storage import CERT_FILE_MODE, KEY_FILE_MODE
from pki_hierarchy.services.crypto_provider import (
    CryptoProvider,
    CryptographyProvider,
    certificate_pem,
    csr_pem,
)
from pki_hierarchy.services.ledger_store import LedgerStore
from pki_hierarchy.services.passphrase_vault import PassphraseVault, Secret
from pki_hierarchy.services.policy_catalog import PolicyCatalog

logger = structlog.get_logger()

# Called with a prompt text, returns what the operator typed
PassphrasePrompt = Callable[[str], str]

_TRANSITIONS: Dict[HierarchyState, tuple] = {
    HierarchyState.ABSENT: (HierarchyState.ROOT_CREATED,),
    HierarchyState.ROOT_CREATED: (HierarchyState.INTERMEDIATES_CREATED,),
    HierarchyState.INTERMEDIATES_CREATED: (
        HierarchyState.INTERMEDIATES_CREATED,
        HierarchyState.COMPLETE,
    ),
    HierarchyState.COMPLETE: (),
}


class Hierarchy:
    """The CAs of one hierarchy and their on-disk trust material."""

    def __init__(self, names: HierarchyNames, catalog: PolicyCatalog, pki_dir: Path):
        self.names = names
        self.catalog = catalog
        self.pki_dir = Path(pki_dir)
        self.authorities: Dict[CaRole, CertificateAuthority] = catalog.authorities(self.pki_dir)

    @property
    def root(self) -> CertificateAuthority:
        return self.authorities[CaRole.ROOT]

    def authority(self, role: CaRole) -> CertificateAuthority:
        return self.authorities[CaRole(role)]

    def find(self, name: str) -> CertificateAuthority:
        """
        Look up a CA by name, role or directory.

        ``"root"``, ``"ACME_CA"``, ``"intermediate-people"`` and
        ``"peoples-ca"`` all resolve as expected.
        """
        wanted = name.strip().lower()
        for ca in self.authorities.values():
            directory = ca.path.name.lower()
            candidates = {ca.name.lower(), ca.role.value, directory, directory[:-len("-ca")]}
            if wanted in candidates:
                return ca
        raise HierarchyStateError(f"No CA named '{name}' in this hierarchy")

    def certificate(self, role: CaRole) -> x509.Certificate:
        return ca_storage.read_certificate(self.authority(role).certificate_path)

    def chain(self, role: CaRole) -> List[x509.Certificate]:
        """Trust chain of the CA holding ``role``: ``[CA, root]``, or ``[root]``."""
        return ca_storage.read_chain(self.authority(role).chain_path)


class HierarchyManager:
    """
    Builds and discovers the CA hierarchy under a PKI directory.

    Handles:
    - State detection from the manifest and CA directories
    - Root and intermediate creation with double-entered passphrases
    - Recreate (discard and rebuild) on explicit request
    """

    def __init__(
        self,
        pki_dir: Optional[Path] = None,
        settings: Optional[Settings] = None,
        provider: Optional[CryptoProvider] = None,
        ledger_store: Optional[LedgerStore] = None,
        vault: Optional[PassphraseVault] = None,
    ):
        self.settings = settings or get_settings()
        self.pki_dir = Path(pki_dir or self.settings.pki_dir)
        self.provider = provider or CryptographyProvider()
        self.ledger_store = ledger_store or LedgerStore()
        self.vault = vault if vault is not None else PassphraseVault()

    # -- discovery --------------------------------------------------------

    def status(self) -> HierarchyStatus:
        """Inspect the PKI directory and report the lifecycle state."""
        manifest = ca_storage.read_manifest(self.pki_dir)
        if manifest is None:
            return HierarchyStatus(state=HierarchyState.ABSENT)

        hierarchy = Hierarchy(manifest.names, PolicyCatalog(manifest.names, self.settings), self.pki_dir)
        # The chain file is the last thing written for a CA
        created = [role for role, ca in hierarchy.authorities.items() if ca.chain_path.exists()]

        if CaRole.ROOT not in created:
            state = HierarchyState.ABSENT
        elif all(role in created for role in INTERMEDIATE_ROLES):
            state = HierarchyState.COMPLETE
        elif any(role in created for role in INTERMEDIATE_ROLES):
            state = HierarchyState.INTERMEDIATES_CREATED
        else:
            state = HierarchyState.ROOT_CREATED

        return HierarchyStatus(state=state, names=manifest.names, created_roles=created)

    def state(self) -> HierarchyState:
        return self.status().state

    def exists(self) -> bool:
        """True if setup would have to discard something."""
        if self.state() is not HierarchyState.ABSENT:
            return True
        return self.pki_dir.exists() and any(self.pki_dir.iterdir())

    def load(self) -> Hierarchy:
        """
        Load the hierarchy described by the manifest.

        Raises:
            HierarchyNotReady: If no hierarchy has been set up
        """
        manifest = ca_storage.read_manifest(self.pki_dir)
        if manifest is None:
            raise HierarchyNotReady(f"No PKI hierarchy found in {self.pki_dir}; run setup first")
        return Hierarchy(manifest.names, PolicyCatalog(manifest.names, self.settings), self.pki_dir)

    def require_complete(self) -> Hierarchy:
        status = self.status()
        if status.state is not HierarchyState.COMPLETE:
            missing = ", ".join(role.value for role in status.missing_roles)
            raise HierarchyNotReady(
                f"PKI hierarchy in {self.pki_dir} is not complete ({status.state.value}; missing: {missing})"
            )
        return self.load()

    # -- lifecycle --------------------------------------------------------

    def setup(
        self,
        names: HierarchyNames,
        passphrase_prompt: PassphrasePrompt,
        overwrite: bool = False,
    ) -> Hierarchy:
        """
        Create the root CA and the four intermediate CAs.

        Args:
            names: Root name, domain CA name and location
            passphrase_prompt: Asked twice per CA for its key passphrase
            overwrite: Discard an existing (complete or partial) hierarchy first

        Returns:
            Hierarchy: The complete hierarchy

        Raises:
            HierarchyAlreadyExists: If something exists and ``overwrite`` is False
            PassphraseMismatch: If the two passphrase entries differ
        """
        state = self.state()
        if self.exists():
            if not overwrite:
                raise HierarchyAlreadyExists(
                    f"{self.pki_dir} already contains a PKI hierarchy ({state.value}); "
                    "confirm recreation to discard it"
                )
            self.discard()
            state = HierarchyState.ABSENT

        hierarchy = Hierarchy(names, PolicyCatalog(names, self.settings), self.pki_dir)
        log = logger.bind(root=names.root_name, domain=names.domain_name)
        log.info("Setting up PKI hierarchy", pki_dir=str(self.pki_dir))

        root_secret = self._obtain_passphrase(hierarchy.root, passphrase_prompt)
        self.pki_dir.mkdir(parents=True, exist_ok=True)
        ca_storage.write_manifest(self.pki_dir, HierarchyManifest(
            names=names,
            created_at=datetime.now(timezone.utc),
            tool_version=self.settings.app_version,
        ))
        try:
            self._create_root(hierarchy, root_secret)
        except Exception:
            ca_storage.remove_files([self.pki_dir / ca_storage.MANIFEST_FILENAME])
            root_secret.wipe()
            raise
        self._seed_vault(hierarchy.root, root_secret)
        state = self._advance(state, HierarchyState.ROOT_CREATED)

        for index, role in enumerate(INTERMEDIATE_ROLES):
            ca = hierarchy.authority(role)
            secret = self._obtain_passphrase(ca, passphrase_prompt)
            try:
                self._create_intermediate(hierarchy, ca, secret, root_secret)
            except Exception:
                secret.wipe()
                raise
            self._seed_vault(ca, secret)
            target = (
                HierarchyState.COMPLETE
                if index == len(INTERMEDIATE_ROLES) - 1
                else HierarchyState.INTERMEDIATES_CREATED
            )
            state = self._advance(state, target)

        log.info("PKI hierarchy complete", cas=[ca.name for ca in hierarchy.authorities.values()])
        return hierarchy

    def discard(self) -> None:
        """Remove the whole PKI directory and forget all cached passphrases."""
        self.ledger_store.close()
        self.vault.clear_all()
        ca_storage.remove_tree(self.pki_dir)
        logger.warning("PKI hierarchy discarded", pki_dir=str(self.pki_dir))

    # -- internals --------------------------------------------------------

    @staticmethod
    def _advance(current: HierarchyState, target: HierarchyState) -> HierarchyState:
        if target not in _TRANSITIONS[current]:
            raise HierarchyStateError(f"Invalid hierarchy transition {current.value} -> {target.value}")
        logger.debug("Hierarchy state changed", state=target.value)
        return target

    @staticmethod
    def _obtain_passphrase(ca: CertificateAuthority, prompt: PassphrasePrompt) -> Secret:
        first = prompt(f"Enter passphrase for {ca.name}")
        if not first or not first.strip():
            raise EmptyPassphrase(f"Passphrase for {ca.name} must not be empty")
        second = prompt(f"Verify passphrase for {ca.name}")
        if not hmac.compare_digest(first.encode("utf-8"), (second or "").encode("utf-8")):
            raise PassphraseMismatch(f"Passphrases for {ca.name} do not match")
        return Secret(first)

    def _seed_vault(self, ca: CertificateAuthority, secret: Secret) -> None:
        self.vault.clear(ca)
        self.vault.set(ca, secret)

    def _create_root(self, hierarchy: Hierarchy, secret: Secret) -> None:
        root = hierarchy.root
        try:
            ca_storage.ensure_ca_dirs(root)
            key = self.provider.generate_key_pair(root.key_curve)
            cert = self.provider.self_sign(
                key, root.subject, hierarchy.catalog.self_signed_profile(), root.validity_days,
            )
            ca_storage.write_file(
                root.key_path, self.provider.export_encrypted_key(key, secret.reveal()), KEY_FILE_MODE,
            )
            self.ledger_store.initialize(root)
            ca_storage.write_file(root.certificate_path, certificate_pem(cert), CERT_FILE_MODE)
        except Exception:
            logger.error("Root CA creation failed", ca=root.name)
            self.ledger_store.close(root)
            ca_storage.remove_tree(root.path)
            raise

        logger.info("Root CA created", ca=root.name, expires=cert.not_valid_after_utc.isoformat())

    def _create_intermediate(
        self,
        hierarchy: Hierarchy,
        ca: CertificateAuthority,
        secret: Secret,
        root_secret: Secret,
    ) -> None:
        root = hierarchy.root
        profile = hierarchy.catalog.profile_for_role(CaRole.ROOT)
        try:
            ca_storage.ensure_ca_dirs(ca)
            key = self.provider.generate_key_pair(ca.key_curve)
            csr = self.provider.build_csr(key, ca.subject, digest=ca.digest)
            root_cert = ca_storage.read_certificate(root.certificate_path)
            root_key_pem = ca_storage.read_bytes(root.key_path)

            with self.ledger_store.reserve(root) as reservation:
                cert = self.provider.sign(
                    csr,
                    root_key_pem,
                    root_secret.reveal(),
                    root_cert,
                    profile,
                    profile.validity_days,
                    reservation.serial,
                )
                reservation.record(LedgerEntry(
                    serial=reservation.serial,
                    subject_dn=ca.subject.distinguished_name,
                    artifact_name=ca.path.name,
                    issued_at=cert.not_valid_before_utc,
                    expires_at=cert.not_valid_after_utc,
                ))

            pem = certificate_pem(cert)
            ca_storage.write_file(ca_storage.newcerts_path(root, cert.serial_number), pem, CERT_FILE_MODE)
            ca_storage.write_file(
                ca.key_path, self.provider.export_encrypted_key(key, secret.reveal()), KEY_FILE_MODE,
            )
            ca_storage.write_file(ca.csr_path, csr_pem(csr), CERT_FILE_MODE)
            ca_storage.write_file(ca.certificate_path, pem, CERT_FILE_MODE)
            self.ledger_store.initialize(ca)
            ca_storage.write_file(ca.chain_path, pem + certificate_pem(root_cert), CERT_FILE_MODE)
        except Exception:
            logger.error("Intermediate CA creation failed", ca=ca.name, role=ca.role.value)
            self.ledger_store.close(ca)
            ca_storage.remove_tree(ca.path)
            raise

        logger.info(
            "Intermediate CA created",
            ca=ca.name,
            role=ca.role.value,
            serial=cert.serial_number,
            issuer=root.name,
        )
