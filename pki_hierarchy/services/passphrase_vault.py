"""
Passphrase Vault - in-memory cache of CA key passphrases for one session.

Secrets are held in mutable buffers so they can be overwritten when the
session ends, the process exits, or the operator re-enters a passphrase.
"""

import atexit
import hmac
import signal
import threading
from typing import Dict, Optional, Union

import structlog

from pki_hierarchy.core.exceptions import EmptyPassphrase, PassphraseAlreadySet

logger = structlog.get_logger()


class Secret:
    """A passphrase that can be wiped from memory."""

    __slots__ = ("_buffer",)

    def __init__(self, value: Union[str, bytes, bytearray]):
        if isinstance(value, str):
            value = value.encode("utf-8")
        self._buffer = bytearray(value)

    def reveal(self) -> bytes:
        """Return the passphrase bytes for a single use."""
        return bytes(self._buffer)

    def wipe(self) -> None:
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._buffer = bytearray()

    @property
    def is_wiped(self) -> bool:
        return not self._buffer

    def __len__(self) -> int:
        return len(self._buffer)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Secret):
            return NotImplemented
        return hmac.compare_digest(bytes(self._buffer), bytes(other._buffer))

    __hash__ = None

    def __repr__(self) -> str:
        return "Secret('***')"


def _ca_key(ca) -> str:
    return ca if isinstance(ca, str) else ca.name


class PassphraseVault:
    """
    Session-scoped CA passphrase cache.

    Keys are CA names; a :class:`~pki_hierarchy.schemas.ca.CertificateAuthority`
    may be passed wherever a name is expected.
    """

    def __init__(self):
        self._secrets: Dict[str, Secret] = {}
        self._lock = threading.Lock()
        self._hooks_installed = False

    def get(self, ca) -> Optional[Secret]:
        """Cached passphrase of ``ca``, or None."""
        with self._lock:
            return self._secrets.get(_ca_key(ca))

    def set(self, ca, passphrase: Union[str, bytes, bytearray, Secret]) -> Secret:
        """
        Cache the passphrase of ``ca``.

        Raises:
            EmptyPassphrase: If the passphrase is empty or blank
            PassphraseAlreadySet: If ``ca`` already has a cached passphrase
        """
        secret = passphrase if isinstance(passphrase, Secret) else Secret(passphrase)
        if not secret.reveal().strip():
            raise EmptyPassphrase(f"Passphrase for {_ca_key(ca)} must not be empty")

        name = _ca_key(ca)
        with self._lock:
            if name in self._secrets:
                raise PassphraseAlreadySet(f"A passphrase for {name} is already cached")
            self._secrets[name] = secret

        logger.debug("Passphrase cached", ca=name)
        return secret

    def contains(self, ca) -> bool:
        with self._lock:
            return _ca_key(ca) in self._secrets

    def clear(self, ca) -> None:
        """Wipe and forget the passphrase of ``ca`` (no-op if absent)."""
        with self._lock:
            secret = self._secrets.pop(_ca_key(ca), None)
        if secret is not None:
            secret.wipe()
            logger.debug("Passphrase cleared", ca=_ca_key(ca))

    def clear_all(self) -> None:
        with self._lock:
            secrets = list(self._secrets.values())
            self._secrets.clear()
        for secret in secrets:
            secret.wipe()
        if secrets:
            logger.debug("Passphrase vault cleared", count=len(secrets))

    def __len__(self) -> int:
        with self._lock:
            return len(self._secrets)

    def __enter__(self) -> "PassphraseVault":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.clear_all()

    def install_exit_hooks(self) -> None:
        """
        Clear the vault on interpreter exit and on SIGTERM/SIGHUP.

        Signal handlers are only installed from the main thread; previously
        installed handlers are chained.
        """
        if self._hooks_installed:
            return
        atexit.register(self.clear_all)

        if threading.current_thread() is threading.main_thread():
            for name in ("SIGTERM", "SIGHUP"):
                signum = getattr(signal, name, None)
                if signum is None:
                    continue
                previous = signal.getsignal(signum)
                signal.signal(signum, self._make_handler(previous))

        self._hooks_installed = True

    def _make_handler(self, previous):
        def handler(signum, frame):
            self.clear_all()
            if callable(previous):
                previous(signum, frame)
            elif previous != signal.SIG_IGN:
                raise SystemExit(128 + signum)
        return handler
