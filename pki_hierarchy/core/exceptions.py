"""
Exception hierarchy for PKI hierarchy operations.

Every error carries an ``exit_code`` so the CLI can map failures to a process
status without inspecting messages.
"""


class PkiError(Exception):
    """Base exception for all PKI hierarchy operations."""
    exit_code = 1


# Validation

class ValidationError(PkiError):
    """Request or input rejected before any state was touched."""
    exit_code = 2


class EmptySubject(ValidationError):
    """Certificate subject is empty or blank."""
    pass


class UnknownProfile(ValidationError):
    """Principal class or CA role has no issuance profile."""
    pass


class EmptyPassphrase(ValidationError):
    """A blank passphrase was entered."""
    pass


# Passphrases

class PassphraseMismatch(PkiError):
    """The two passphrase entries did not match."""
    exit_code = 3


class PassphraseAlreadySet(PkiError):
    """The vault already holds a passphrase for this CA."""
    exit_code = 3


class PassphraseRequired(PkiError):
    """A CA passphrase is needed but none is cached and no prompt is available."""
    exit_code = 3


# Ledger

class LedgerError(PkiError):
    """Base exception for ledger operations."""
    exit_code = 4


class DuplicateSerial(LedgerError):
    """Serial number already present in the ledger."""
    pass


class UnknownSerial(LedgerError):
    """Serial number not present in the ledger."""
    pass


class LedgerNotInitialized(LedgerError):
    """The CA ledger database has not been initialized."""
    pass


# Crypto provider

class CryptoProviderError(PkiError):
    """Failure reported by the cryptographic provider."""
    exit_code = 5


class InvalidKeyType(CryptoProviderError):
    """Unsupported key type or curve."""
    pass


class InvalidPassphrase(CryptoProviderError):
    """Private key could not be decrypted with the given passphrase."""
    pass


class CSRValidationError(CryptoProviderError):
    """Certificate signing request is malformed or its signature is invalid."""
    pass


# Hierarchy lifecycle

class HierarchyStateError(PkiError):
    """Operation not allowed in the current hierarchy state."""
    exit_code = 6


class HierarchyAlreadyExists(HierarchyStateError):
    """Setup refused because a (possibly partial) hierarchy already exists."""
    pass


class HierarchyNotReady(HierarchyStateError):
    """The hierarchy has not been completely set up."""
    pass


# Artifacts

class ArtifactError(PkiError):
    """Artifact files could not be written or removed."""
    exit_code = 7
