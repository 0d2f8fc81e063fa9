"""
Ledger Store - per-CA issuance database and serial counter.

Each CA owns one SQLite database (``index.db``) holding its serial counter and
every serial it ever handed out. Allocating a serial advances the counter and
stores a ``reserved`` row in the same transaction; recording the issued
certificate later settles that row as ``valid``, a failed issuance settles it
as ``void``. A process that dies in between leaves the ``reserved`` row
behind, so no allocated serial is ever unaccounted for or reused.
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from pki_hierarchy.core.database import Base, create_ledger_engine
from pki_hierarchy.core.exceptions import (
    DuplicateSerial,
    LedgerError,
    LedgerNotInitialized,
    UnknownSerial,
)
from pki_hierarchy.models.ledger import LedgerEntryRecord, LedgerState
from pki_hierarchy.schemas.ca import CertificateAuthority
from pki_hierarchy.schemas.certificate import LedgerEntry, LedgerStatus

logger = structlog.get_logger()

_STATE_ROW_ID = 1

# Statuses of serials that were actually signed
_ISSUED = (LedgerStatus.VALID.value, LedgerStatus.REVOKED.value)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _openssl_time(value: datetime) -> str:
    return _utc(value).strftime("%y%m%d%H%M%SZ")


def _ledger_error(ca: CertificateAuthority, error: OperationalError) -> LedgerError:
    if "no such table" in str(error.orig):
        return LedgerNotInitialized(f"Ledger of {ca.name} has not been initialized")
    return LedgerError(f"Ledger of {ca.name} is not usable: {error.orig}")


class SerialReservation:
    """A serial allocated inside :meth:`LedgerStore.reserve`."""

    def __init__(self, store: "LedgerStore", ca: CertificateAuthority, serial: int):
        self._store = store
        self._ca = ca
        self.serial = serial
        self.recorded = False

    def record(self, entry: LedgerEntry) -> LedgerEntry:
        """Record the issued certificate under the reserved serial."""
        if entry.serial != self.serial:
            raise LedgerError(
                f"Entry serial {entry.serial} does not match reserved serial {self.serial}"
            )
        recorded = self._store.record_issued(self._ca, self.serial, entry)
        self.recorded = True
        return recorded


class LedgerStore:
    """
    Issuance ledgers of all CAs in a hierarchy.

    Handles:
    - Ledger initialization with the CA's starting serial
    - Atomic serial allocation (single writer per CA)
    - Recording, voiding and revoking entries
    - Subject and serial lookups
    - OpenSSL ``index.txt`` export
    """

    def __init__(self, echo: bool = False):
        self.echo = echo
        self._engines: Dict[Path, Engine] = {}
        self._locks: Dict[Path, threading.RLock] = {}
        self._guard = threading.Lock()

    # -- infrastructure -------------------------------------------------

    def _key(self, ca: CertificateAuthority) -> Path:
        return Path(ca.ledger_path).resolve()

    def _engine(self, ca: CertificateAuthority, create: bool = False) -> Engine:
        """
        Engine of ``ca``'s ledger database.

        Only :meth:`initialize` may create the database file; every other
        operation on a missing ledger raises ``LedgerNotInitialized``.
        """
        key = self._key(ca)
        with self._guard:
            engine = self._engines.get(key)
            if engine is None:
                if not create and not key.exists():
                    raise LedgerNotInitialized(f"Ledger of {ca.name} has not been initialized")
                engine = create_ledger_engine(key, echo=self.echo)
                self._engines[key] = engine
            return engine

    def lock_for(self, ca: CertificateAuthority) -> threading.RLock:
        """Mutual-exclusion scope for writers of ``ca``'s ledger."""
        key = self._key(ca)
        with self._guard:
            return self._locks.setdefault(key, threading.RLock())

    @contextmanager
    def _session(self, ca: CertificateAuthority) -> Iterator[Session]:
        """Session running a single transaction, committed on success."""
        with Session(self._engine(ca), expire_on_commit=False) as session:
            with session.begin():
                yield session

    def _require_state(self, session: Session, ca: CertificateAuthority) -> LedgerState:
        try:
            state = session.get(LedgerState, _STATE_ROW_ID)
        except OperationalError as e:
            raise _ledger_error(ca, e) from e
        if state is None:
            raise LedgerNotInitialized(f"Ledger of {ca.name} has not been initialized")
        return state

    def close(self, ca: Optional[CertificateAuthority] = None) -> None:
        """Dispose engines (all, or only the one of ``ca``)."""
        with self._guard:
            keys = [self._key(ca)] if ca is not None else list(self._engines)
            for key in keys:
                engine = self._engines.pop(key, None)
                if engine is not None:
                    engine.dispose()

    # -- writes -----------------------------------------------------------

    def initialize(self, ca: CertificateAuthority, start_serial: Optional[int] = None) -> None:
        """
        Create the ledger of ``ca`` with its configured starting serial.

        Initializing an existing ledger is a no-op; the counter is never reset.

        Args:
            ca: Certificate Authority owning the ledger
            start_serial: First serial to hand out (defaults to ``ca.serial_start``)
        """
        start = start_serial if start_serial is not None else ca.serial_start
        Path(ca.ledger_path).parent.mkdir(parents=True, exist_ok=True)
        engine = self._engine(ca, create=True)
        Base.metadata.create_all(engine)

        with self.lock_for(ca):
            with self._session(ca) as session:
                if session.get(LedgerState, _STATE_ROW_ID) is not None:
                    return
                session.add(LedgerState(
                    id=_STATE_ROW_ID,
                    ca_name=ca.name,
                    start_serial=start,
                    next_serial=start,
                    created_at=datetime.now(timezone.utc),
                ))

        logger.info("Ledger initialized", ca=ca.name, start_serial=start)

    def allocate_serial(self, ca: CertificateAuthority) -> int:
        """
        Hand out the next serial of ``ca`` and advance the counter by one.

        The counter increment and the ``reserved`` row of the new serial are
        committed together. The increment is issued before the read so the
        database write lock is held for the whole transaction; concurrent
        allocators never observe the same value.

        Returns:
            int: The allocated serial

        Raises:
            LedgerNotInitialized: If the ledger does not exist
        """
        with self.lock_for(ca):
            with self._session(ca) as session:
                try:
                    result = session.execute(
                        update(LedgerState)
                        .where(LedgerState.id == _STATE_ROW_ID)
                        .values(next_serial=LedgerState.next_serial + 1)
                        .execution_options(synchronize_session=False)
                    )
                except OperationalError as e:
                    raise _ledger_error(ca, e) from e
                if result.rowcount != 1:
                    raise LedgerNotInitialized(f"Ledger of {ca.name} has not been initialized")
                serial = session.scalar(
                    select(LedgerState.next_serial).where(LedgerState.id == _STATE_ROW_ID)
                ) - 1
                session.add(LedgerEntryRecord(
                    serial=serial,
                    subject_dn="",
                    status=LedgerStatus.RESERVED.value,
                    issued_at=datetime.now(timezone.utc),
                ))

        logger.debug("Serial allocated", ca=ca.name, serial=serial)
        return serial

    def _settle(self, ca: CertificateAuthority, serial: int, entry: LedgerEntry) -> LedgerEntry:
        """Replace the ``reserved`` row of ``serial`` with ``entry``."""
        with self.lock_for(ca):
            with self._session(ca) as session:
                state = self._require_state(session, ca)
                record = session.get(LedgerEntryRecord, serial)
                if record is None or not state.start_serial <= serial < state.next_serial:
                    raise UnknownSerial(f"Serial {serial} was never allocated by {ca.name}")
                if record.status != LedgerStatus.RESERVED.value:
                    raise DuplicateSerial(f"Serial {serial} already recorded by {ca.name}")

                record.subject_dn = entry.subject_dn
                record.artifact_name = entry.artifact_name
                record.status = entry.status.value
                record.issued_at = entry.issued_at
                record.expires_at = entry.expires_at
                record.revoked_at = entry.revoked_at
                record.revocation_reason = entry.revocation_reason
        return self._to_entry(record)

    def record_issued(self, ca: CertificateAuthority, serial: int, entry: LedgerEntry) -> LedgerEntry:
        """
        Record the certificate issued under an allocated serial.

        Args:
            ca: Issuing CA
            serial: Serial returned by :meth:`allocate_serial`
            entry: Subject and validity of the certificate

        Returns:
            LedgerEntry: The stored entry

        Raises:
            DuplicateSerial: If the serial is already recorded or voided
            UnknownSerial: If the serial was never allocated
        """
        try:
            recorded = self._settle(ca, serial, entry)
        except IntegrityError as e:
            raise DuplicateSerial(f"Serial {serial} already recorded by {ca.name}") from e

        logger.info(
            "Ledger entry recorded",
            ca=ca.name,
            serial=serial,
            subject=entry.subject_dn,
            status=entry.status.value,
        )
        return recorded

    def void_serial(self, ca: CertificateAuthority, serial: int, reason: str = "not issued") -> LedgerEntry:
        """Mark an allocated but unrecorded serial as void."""
        entry = LedgerEntry(
            serial=serial,
            subject_dn="",
            issued_at=datetime.now(timezone.utc),
            status=LedgerStatus.VOID,
            revocation_reason=reason,
        )
        voided = self._settle(ca, serial, entry)
        logger.warning("Serial voided", ca=ca.name, serial=serial, reason=reason)
        return voided

    @contextmanager
    def reserve(self, ca: CertificateAuthority) -> Iterator[SerialReservation]:
        """
        Allocate a serial and hold ``ca``'s writer lock until it is recorded.

        If the block exits with an exception before
        :meth:`SerialReservation.record` succeeded, the serial is voided and
        the exception propagates.

        Example::

            with ledger_store.reserve(ca) as reservation:
                cert = provider.sign(..., serial=reservation.serial)
                reservation.record(entry)
        """
        with self.lock_for(ca):
            reservation = SerialReservation(self, ca, self.allocate_serial(ca))
            try:
                yield reservation
            except BaseException as exc:
                if not reservation.recorded:
                    try:
                        self.void_serial(ca, reservation.serial, reason=type(exc).__name__)
                    except LedgerError as void_error:
                        logger.error(
                            "Failed to void serial",
                            ca=ca.name,
                            serial=reservation.serial,
                            error=str(void_error),
                        )
                raise
            if not reservation.recorded:
                self.void_serial(ca, reservation.serial, reason="abandoned")

    def mark_revoked(
        self,
        ca: CertificateAuthority,
        serial: int,
        reason: str = "unspecified",
    ) -> LedgerEntry:
        """
        Transition an entry to revoked. Revoking twice is a no-op.

        Raises:
            UnknownSerial: If no issued certificate carries ``serial``
        """
        with self.lock_for(ca):
            with self._session(ca) as session:
                self._require_state(session, ca)
                record = session.get(LedgerEntryRecord, serial)
                if record is None or record.status not in _ISSUED:
                    raise UnknownSerial(f"No certificate with serial {serial} issued by {ca.name}")
                if record.status == LedgerStatus.REVOKED.value:
                    return self._to_entry(record)
                record.status = LedgerStatus.REVOKED.value
                record.revoked_at = datetime.now(timezone.utc)
                record.revocation_reason = reason

        logger.warning("Certificate revoked", ca=ca.name, serial=serial, reason=reason)
        return self._to_entry(record)

    # -- reads ------------------------------------------------------------

    def next_serial(self, ca: CertificateAuthority) -> int:
        with self._session(ca) as session:
            return self._require_state(session, ca).next_serial

    def lookup_by_serial(self, ca: CertificateAuthority, serial: int) -> Optional[LedgerEntry]:
        with self._session(ca) as session:
            self._require_state(session, ca)
            record = session.get(LedgerEntryRecord, serial)
            return self._to_entry(record) if record is not None else None

    def lookup_by_subject(self, ca: CertificateAuthority, subject_dn: str) -> Optional[LedgerEntry]:
        """Most recent issued (valid or revoked) entry of ``subject_dn``."""
        with self._session(ca) as session:
            self._require_state(session, ca)
            record = session.scalars(
                select(LedgerEntryRecord)
                .where(
                    LedgerEntryRecord.subject_dn == subject_dn,
                    LedgerEntryRecord.status.in_(_ISSUED),
                )
                .order_by(LedgerEntryRecord.serial.desc())
                .limit(1)
            ).first()
            return self._to_entry(record) if record is not None else None

    def entries(self, ca: CertificateAuthority, include_void: bool = True) -> List[LedgerEntry]:
        """
        All entries in serial (issuance) order.

        With ``include_void=False`` only issued certificates are returned;
        void and still-reserved serials are left out.
        """
        with self._session(ca) as session:
            self._require_state(session, ca)
            query = select(LedgerEntryRecord).order_by(LedgerEntryRecord.serial)
            if not include_void:
                query = query.where(LedgerEntryRecord.status.in_(_ISSUED))
            return [self._to_entry(record) for record in session.scalars(query)]

    def render_openssl_index(self, ca: CertificateAuthority) -> str:
        """Ledger as an OpenSSL CA database (``index.txt``)."""
        lines = []
        for entry in self.entries(ca, include_void=False):
            flag = "R" if entry.status is LedgerStatus.REVOKED else "V"
            expires = _openssl_time(entry.expires_at) if entry.expires_at else ""
            revoked = _openssl_time(entry.revoked_at) if entry.revoked_at else ""
            lines.append("\t".join([flag, expires, revoked, f"{entry.serial:04X}", "unknown", entry.subject_dn]))
        return "".join(f"{line}\n" for line in lines)

    @staticmethod
    def _to_entry(record: LedgerEntryRecord) -> LedgerEntry:
        entry = LedgerEntry.model_validate(record)
        return entry.model_copy(update={
            "issued_at": _utc(entry.issued_at),
            "expires_at": _utc(entry.expires_at),
            "revoked_at": _utc(entry.revoked_at),
        })
