"""
Crypto Provider - key generation, CSRs, signing and chain verification.

The abstract interface keeps the hierarchy and issuance logic independent of
the cryptographic backend; :class:`CryptographyProvider` implements it with
the ``cryptography`` package.
"""

import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

from pki_hierarchy.core.exceptions import (
    CryptoProviderError,
    CSRValidationError,
    InvalidKeyType,
    InvalidPassphrase,
)
from pki_hierarchy.schemas.ca import SubjectInfo
from pki_hierarchy.schemas.certificate import IssuanceProfile

CURVES = {
    "prime256v1": ec.SECP256R1,
    "secp256r1": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
    "secp521r1": ec.SECP521R1,
}

DIGESTS = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

_NAME_OIDS = {
    "C": NameOID.COUNTRY_NAME,
    "ST": NameOID.STATE_OR_PROVINCE_NAME,
    "L": NameOID.LOCALITY_NAME,
    "O": NameOID.ORGANIZATION_NAME,
    "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "CN": NameOID.COMMON_NAME,
    "emailAddress": NameOID.EMAIL_ADDRESS,
}

_EKU_OIDS = {
    "server_auth": ExtendedKeyUsageOID.SERVER_AUTH,
    "client_auth": ExtendedKeyUsageOID.CLIENT_AUTH,
    "email_protection": ExtendedKeyUsageOID.EMAIL_PROTECTION,
    "code_signing": ExtendedKeyUsageOID.CODE_SIGNING,
    "time_stamping": ExtendedKeyUsageOID.TIME_STAMPING,
    "ocsp_signing": ExtendedKeyUsageOID.OCSP_SIGNING,
}

# Backdate notBefore to tolerate clock skew between signer and relying party
_CLOCK_SKEW = timedelta(minutes=5)


class CryptoProvider(ABC):
    """Abstract base class for cryptographic backends."""

    @abstractmethod
    def generate_key_pair(self, curve: str) -> PrivateKeyTypes:
        """
        Generate a new EC key pair.

        Args:
            curve: Curve name (prime256v1, secp384r1, secp521r1)

        Raises:
            InvalidKeyType: If the curve is not supported
        """
        pass

    @abstractmethod
    def build_csr(
        self,
        private_key: PrivateKeyTypes,
        subject: SubjectInfo,
        san_list: Optional[Sequence[str]] = None,
        digest: str = "sha256",
    ) -> x509.CertificateSigningRequest:
        """Create a CSR for ``subject`` signed by ``private_key``."""
        pass

    @abstractmethod
    def self_sign(
        self,
        private_key: PrivateKeyTypes,
        subject: SubjectInfo,
        profile: IssuanceProfile,
        validity_days: int,
    ) -> x509.Certificate:
        """Create the self-signed root certificate."""
        pass

    @abstractmethod
    def sign(
        self,
        csr: x509.CertificateSigningRequest,
        issuer_key_pem: bytes,
        issuer_passphrase: bytes,
        issuer_certificate: x509.Certificate,
        profile: IssuanceProfile,
        validity_days: int,
        serial: int,
    ) -> x509.Certificate:
        """
        Sign a CSR with an issuer key.

        Raises:
            CSRValidationError: If the CSR signature does not verify
            InvalidPassphrase: If the issuer key cannot be decrypted
        """
        pass

    @abstractmethod
    def export_encrypted_key(self, private_key: PrivateKeyTypes, passphrase: bytes) -> bytes:
        """Serialize a private key as passphrase-protected PKCS#8 PEM."""
        pass

    @abstractmethod
    def export_key(self, private_key: PrivateKeyTypes) -> bytes:
        """Serialize a private key as unencrypted PKCS#8 PEM."""
        pass

    @abstractmethod
    def load_encrypted_key(self, key_pem: bytes, passphrase: bytes) -> PrivateKeyTypes:
        pass

    @abstractmethod
    def verify_chain(self, chain: Sequence[x509.Certificate]) -> bool:
        """
        Verify a chain ordered leaf first, ending with a self-signed root.

        Returns:
            bool: True if every certificate is signed by the next one
        """
        pass


class CryptographyProvider(CryptoProvider):
    """
    Crypto provider backed by the ``cryptography`` package.

    Handles:
    - EC key pair generation
    - CSR creation with optional DNS subject alternative names
    - Root self-signing and CSR signing with profile extensions
    - PKCS#8 key export and import
    - Chain verification
    """

    def generate_key_pair(self, curve: str) -> PrivateKeyTypes:
        curve_cls = CURVES.get(curve)
        if curve_cls is None:
            raise InvalidKeyType(f"Unsupported curve: {curve}")
        try:
            return ec.generate_private_key(curve_cls())
        except UnsupportedAlgorithm as e:
            raise InvalidKeyType(f"Curve {curve} not supported by this backend") from e

    def build_csr(
        self,
        private_key: PrivateKeyTypes,
        subject: SubjectInfo,
        san_list: Optional[Sequence[str]] = None,
        digest: str = "sha256",
    ) -> x509.CertificateSigningRequest:
        try:
            builder = x509.CertificateSigningRequestBuilder().subject_name(self.build_name(subject))
            if san_list:
                builder = builder.add_extension(
                    x509.SubjectAlternativeName([x509.DNSName(name) for name in san_list]),
                    critical=False,
                )
            return builder.sign(private_key, self._hash(digest))
        except (ValueError, TypeError) as e:
            raise CryptoProviderError(f"Failed to build CSR: {e}") from e

    def self_sign(
        self,
        private_key: PrivateKeyTypes,
        subject: SubjectInfo,
        profile: IssuanceProfile,
        validity_days: int,
    ) -> x509.Certificate:
        try:
            name = self.build_name(subject)
            public_key = private_key.public_key()
            now = datetime.now(timezone.utc)

            builder = (
                x509.CertificateBuilder()
                .subject_name(name)
                .issuer_name(name)
                .public_key(public_key)
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - _CLOCK_SKEW)
                .not_valid_after(now + timedelta(days=validity_days))
            )
            builder = self._add_profile_extensions(builder, profile)
            builder = builder.add_extension(
                x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False,
            )
            builder = builder.add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key), critical=False,
            )
            return builder.sign(private_key, self._hash(profile.digest))
        except (ValueError, TypeError) as e:
            raise CryptoProviderError(f"Failed to create self-signed certificate: {e}") from e

    def sign(
        self,
        csr: x509.CertificateSigningRequest,
        issuer_key_pem: bytes,
        issuer_passphrase: bytes,
        issuer_certificate: x509.Certificate,
        profile: IssuanceProfile,
        validity_days: int,
        serial: int,
    ) -> x509.Certificate:
        if not csr.is_signature_valid:
            raise CSRValidationError("CSR signature is invalid")

        issuer_key = self.load_encrypted_key(issuer_key_pem, issuer_passphrase)

        try:
            now = datetime.now(timezone.utc)
            not_after = now + timedelta(days=validity_days)
            # A certificate never outlives its issuer
            not_after = min(not_after, issuer_certificate.not_valid_after_utc)

            builder = (
                x509.CertificateBuilder()
                .subject_name(csr.subject)
                .issuer_name(issuer_certificate.subject)
                .public_key(csr.public_key())
                .serial_number(serial)
                .not_valid_before(now - _CLOCK_SKEW)
                .not_valid_after(not_after)
            )

            if profile.accepts_san:
                try:
                    san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
                    builder = builder.add_extension(san.value, critical=False)
                except x509.ExtensionNotFound:
                    pass

            builder = self._add_profile_extensions(builder, profile)
            builder = builder.add_extension(
                x509.SubjectKeyIdentifier.from_public_key(csr.public_key()), critical=False,
            )

            try:
                issuer_ski = issuer_certificate.extensions.get_extension_for_class(
                    x509.SubjectKeyIdentifier
                ).value
                aki = x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(issuer_ski)
            except x509.ExtensionNotFound:
                aki = x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key())
            builder = builder.add_extension(aki, critical=False)

            return builder.sign(issuer_key, self._hash(profile.digest))
        except (ValueError, TypeError) as e:
            raise CryptoProviderError(f"Failed to sign certificate: {e}") from e

    def export_encrypted_key(self, private_key: PrivateKeyTypes, passphrase: bytes) -> bytes:
        if not passphrase:
            raise CryptoProviderError("Refusing to export a CA key without a passphrase")
        return private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(passphrase),
        )

    def export_key(self, private_key: PrivateKeyTypes) -> bytes:
        return private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def load_encrypted_key(self, key_pem: bytes, passphrase: bytes) -> PrivateKeyTypes:
        try:
            return serialization.load_pem_private_key(key_pem, password=passphrase)
        except (ValueError, TypeError) as e:
            # Wrong password and malformed key are indistinguishable here
            raise InvalidPassphrase("Unable to decrypt CA key: wrong passphrase or damaged key file") from e
        except UnsupportedAlgorithm as e:
            raise InvalidKeyType(f"Unsupported CA key: {e}") from e

    def verify_chain(self, chain: Sequence[x509.Certificate]) -> bool:
        if not chain:
            return False

        now = datetime.now(timezone.utc)
        for cert in chain:
            if not cert.not_valid_before_utc <= now <= cert.not_valid_after_utc:
                return False

        links = list(zip(chain, chain[1:])) + [(chain[-1], chain[-1])]
        for cert, issuer in links:
            try:
                cert.verify_directly_issued_by(issuer)
            except (ValueError, TypeError, InvalidSignature):
                return False

        # Every issuer in the chain must be a CA
        for issuer in chain[1:]:
            try:
                constraints = issuer.extensions.get_extension_for_class(x509.BasicConstraints).value
            except x509.ExtensionNotFound:
                return False
            if not constraints.ca:
                return False
        return True

    @staticmethod
    def build_name(subject: SubjectInfo) -> x509.Name:
        """X.509 name in C, ST, L, O, OU, CN, emailAddress order."""
        return x509.Name([
            x509.NameAttribute(_NAME_OIDS[attr], value) for attr, value in subject.components()
        ])

    @staticmethod
    def _hash(digest: str) -> hashes.HashAlgorithm:
        digest_cls = DIGESTS.get(digest.lower())
        if digest_cls is None:
            raise CryptoProviderError(f"Unsupported digest: {digest}")
        return digest_cls()

    @staticmethod
    def _add_profile_extensions(builder: x509.CertificateBuilder, profile: IssuanceProfile) -> x509.CertificateBuilder:
        builder = builder.add_extension(
            x509.BasicConstraints(ca=profile.is_ca, path_length=profile.path_length if profile.is_ca else None),
            critical=True,
        )

        usage = set(profile.key_usage)
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature="digital_signature" in usage,
                content_commitment="non_repudiation" in usage or "content_commitment" in usage,
                key_encipherment="key_encipherment" in usage,
                data_encipherment="data_encipherment" in usage,
                key_agreement="key_agreement" in usage,
                key_cert_sign="key_cert_sign" in usage,
                crl_sign="crl_sign" in usage,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )

        if profile.extended_key_usage:
            try:
                eku = [_EKU_OIDS[name] for name in profile.extended_key_usage]
            except KeyError as e:
                raise CryptoProviderError(f"Unknown extended key usage: {e.args[0]}") from e
            builder = builder.add_extension(x509.ExtendedKeyUsage(eku), critical=False)

        return builder


def load_certificate(pem: bytes) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(pem)
    except ValueError as e:
        raise CryptoProviderError(f"Invalid certificate: {e}") from e


def load_certificates(pem: bytes) -> List[x509.Certificate]:
    """All certificates of a PEM bundle, in file order."""
    try:
        return x509.load_pem_x509_certificates(pem)
    except ValueError as e:
        raise CryptoProviderError(f"Invalid certificate bundle: {e}") from e


def load_csr(pem: bytes) -> x509.CertificateSigningRequest:
    try:
        return x509.load_pem_x509_csr(pem)
    except ValueError as e:
        raise CSRValidationError(f"Invalid CSR: {e}") from e


def certificate_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def csr_pem(csr: x509.CertificateSigningRequest) -> bytes:
    return csr.public_bytes(serialization.Encoding.PEM)
