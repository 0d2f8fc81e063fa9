"""Tests for the per-CA ledger store."""

import threading

import pytest

from pki_hierarchy.core.exceptions import (
    DuplicateSerial,
    LedgerError,
    LedgerNotInitialized,
    UnknownSerial,
)
from pki_hierarchy.schemas.certificate import LedgerStatus
from pki_hierarchy.services.ledger_store import LedgerStore

from conftest import make_entry


class TestSerialAllocation:

    def test_allocation_before_initialize(self, ledger_store, people_ca):
        with pytest.raises(LedgerNotInitialized):
            ledger_store.allocate_serial(people_ca)

    def test_reads_before_initialize(self, ledger_store, people_ca):
        people_ca.path.mkdir(parents=True)

        with pytest.raises(LedgerNotInitialized):
            ledger_store.lookup_by_subject(people_ca, "/CN=fritz")
        with pytest.raises(LedgerNotInitialized):
            ledger_store.next_serial(people_ca)
        assert not people_ca.ledger_path.exists()

    def test_ledger_file_without_tables(self, ledger_store, people_ca):
        people_ca.path.mkdir(parents=True)
        people_ca.ledger_path.touch()

        with pytest.raises(LedgerNotInitialized):
            ledger_store.entries(people_ca)
        with pytest.raises(LedgerNotInitialized):
            ledger_store.allocate_serial(people_ca)

    def test_allocation_is_recorded_as_reserved(self, ledger_store, people_ca):
        ledger_store.initialize(people_ca)

        serial = ledger_store.allocate_serial(people_ca)

        entry = ledger_store.lookup_by_serial(people_ca, serial)
        assert entry.status == LedgerStatus.RESERVED
        assert ledger_store.entries(people_ca, include_void=False) == []

    def test_reservation_survives_crash(self, ledger_store, people_ca):
        ledger_store.initialize(people_ca)
        serial = ledger_store.allocate_serial(people_ca)
        ledger_store.close()

        reopened = LedgerStore()
        try:
            assert reopened.next_serial(people_ca) == 2001
            assert reopened.lookup_by_serial(people_ca, serial).status == LedgerStatus.RESERVED
            assert [e.serial for e in reopened.entries(people_ca)] == [2000]

            reopened.void_serial(people_ca, serial, reason="interrupted")
            assert reopened.lookup_by_serial(people_ca, serial).status == LedgerStatus.VOID
        finally:
            reopened.close()

    def test_serials_strictly_increase_from_start(self, ledger_store, people_ca):
        ledger_store.initialize(people_ca)

        serials = [ledger_store.allocate_serial(people_ca) for _ in range(5)]

        assert serials == [2000, 2001, 2002, 2003, 2004]
        assert ledger_store.next_serial(people_ca) == 2005

    def test_initialize_is_idempotent(self, ledger_store, people_ca):
        ledger_store.initialize(people_ca)
        ledger_store.allocate_serial(people_ca)
        ledger_store.initialize(people_ca)

        assert ledger_store.next_serial(people_ca) == 2001

    def test_counter_survives_restart(self, ledger_store, people_ca):
        ledger_store.initialize(people_ca)
        ledger_store.allocate_serial(people_ca)
        ledger_store.close()

        reopened = LedgerStore()
        try:
            assert reopened.allocate_serial(people_ca) == 2001
        finally:
            reopened.close()

    def test_concurrent_allocations_are_unique(self, ledger_store, people_ca):
        ledger_store.initialize(people_ca)
        results = []
        lock = threading.Lock()

        def worker():
            for _ in range(10):
                serial = ledger_store.allocate_serial(people_ca)
                with lock:
                    results.append(serial)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == list(range(2000, 2040))


class TestRecording:

    @pytest.fixture(autouse=True)
    def initialized(self, ledger_store, people_ca):
        ledger_store.initialize(people_ca)

    def test_lookup_by_subject(self, ledger_store, people_ca):
        serial = ledger_store.allocate_serial(people_ca)
        entry = make_entry(serial, "fritz")

        assert ledger_store.lookup_by_subject(people_ca, entry.subject_dn) is None

        ledger_store.record_issued(people_ca, serial, entry)
        found = ledger_store.lookup_by_subject(people_ca, entry.subject_dn)

        assert found is not None
        assert found.serial == serial
        assert found.status == LedgerStatus.VALID
        assert found.issued_at.tzinfo is not None

    def test_lookup_returns_latest_entry(self, ledger_store, people_ca):
        for _ in range(2):
            serial = ledger_store.allocate_serial(people_ca)
            ledger_store.record_issued(people_ca, serial, make_entry(serial, "fritz"))

        assert ledger_store.lookup_by_subject(people_ca, make_entry(0, "fritz").subject_dn).serial == 2001

    def test_duplicate_serial(self, ledger_store, people_ca):
        serial = ledger_store.allocate_serial(people_ca)
        ledger_store.record_issued(people_ca, serial, make_entry(serial, "fritz"))

        with pytest.raises(DuplicateSerial):
            ledger_store.record_issued(people_ca, serial, make_entry(serial, "hans"))

    def test_voided_serial_cannot_be_recorded(self, ledger_store, people_ca):
        serial = ledger_store.allocate_serial(people_ca)
        ledger_store.void_serial(people_ca, serial)

        with pytest.raises(DuplicateSerial):
            ledger_store.record_issued(people_ca, serial, make_entry(serial, "fritz"))

    def test_unallocated_serial(self, ledger_store, people_ca):
        with pytest.raises(UnknownSerial):
            ledger_store.record_issued(people_ca, 2000, make_entry(2000))

    def test_entries_in_serial_order(self, ledger_store, people_ca):
        for name in ("a", "b", "c"):
            serial = ledger_store.allocate_serial(people_ca)
            ledger_store.record_issued(people_ca, serial, make_entry(serial, name))

        entries = ledger_store.entries(people_ca)

        assert [e.serial for e in entries] == [2000, 2001, 2002]
        assert ledger_store.lookup_by_serial(people_ca, 2001).artifact_name == "b"
        assert ledger_store.lookup_by_serial(people_ca, 2999) is None


class TestRevocation:

    @pytest.fixture
    def issued(self, ledger_store, people_ca):
        ledger_store.initialize(people_ca)
        serial = ledger_store.allocate_serial(people_ca)
        return ledger_store.record_issued(people_ca, serial, make_entry(serial, "fritz"))

    def test_mark_revoked(self, ledger_store, people_ca, issued):
        revoked = ledger_store.mark_revoked(people_ca, issued.serial, "keyCompromise")

        assert revoked.status == LedgerStatus.REVOKED
        assert revoked.revocation_reason == "keyCompromise"
        assert revoked.revoked_at is not None

    def test_revoking_twice_is_a_noop(self, ledger_store, people_ca, issued):
        first = ledger_store.mark_revoked(people_ca, issued.serial)
        second = ledger_store.mark_revoked(people_ca, issued.serial, "other")

        assert second.revoked_at == first.revoked_at
        assert second.revocation_reason == first.revocation_reason

    def test_unknown_serial(self, ledger_store, people_ca, issued):
        with pytest.raises(UnknownSerial):
            ledger_store.mark_revoked(people_ca, 4242)

    def test_openssl_index(self, ledger_store, people_ca, issued):
        serial = ledger_store.allocate_serial(people_ca)
        ledger_store.record_issued(people_ca, serial, make_entry(serial, "hans"))
        ledger_store.mark_revoked(people_ca, serial)

        lines = ledger_store.render_openssl_index(people_ca).splitlines()

        assert len(lines) == 2
        valid = lines[0].split("\t")
        assert valid[0] == "V"
        assert valid[1].endswith("Z") and len(valid[1]) == 13
        assert valid[2] == ""
        assert valid[3] == "07D0"
        assert valid[4] == "unknown"
        assert valid[5] == "/C=DE/O=ACME/CN=fritz"
        revoked = lines[1].split("\t")
        assert revoked[0] == "R"
        assert revoked[2].endswith("Z")
        assert revoked[3] == "07D1"


class TestReservation:

    @pytest.fixture(autouse=True)
    def initialized(self, ledger_store, people_ca):
        ledger_store.initialize(people_ca)

    def test_recorded_reservation(self, ledger_store, people_ca):
        with ledger_store.reserve(people_ca) as reservation:
            reservation.record(make_entry(reservation.serial, "fritz"))

        assert ledger_store.lookup_by_serial(people_ca, 2000).status == LedgerStatus.VALID

    def test_failure_voids_serial(self, ledger_store, people_ca):
        with pytest.raises(RuntimeError):
            with ledger_store.reserve(people_ca) as reservation:
                assert reservation.serial == 2000
                raise RuntimeError("signing failed")

        voided = ledger_store.lookup_by_serial(people_ca, 2000)
        assert voided.status == LedgerStatus.VOID
        assert voided.revocation_reason == "RuntimeError"
        assert ledger_store.allocate_serial(people_ca) == 2001

    def test_void_entries_are_not_issued(self, ledger_store, people_ca):
        with pytest.raises(RuntimeError):
            with ledger_store.reserve(people_ca):
                raise RuntimeError("boom")

        assert ledger_store.entries(people_ca, include_void=False) == []
        assert ledger_store.render_openssl_index(people_ca) == ""
        with pytest.raises(UnknownSerial):
            ledger_store.mark_revoked(people_ca, 2000)

    def test_abandoned_reservation_is_voided(self, ledger_store, people_ca):
        with ledger_store.reserve(people_ca):
            pass

        assert ledger_store.lookup_by_serial(people_ca, 2000).status == LedgerStatus.VOID

    def test_record_with_wrong_serial(self, ledger_store, people_ca):
        with pytest.raises(LedgerError):
            with ledger_store.reserve(people_ca) as reservation:
                reservation.record(make_entry(reservation.serial + 1))

        assert ledger_store.lookup_by_serial(people_ca, 2000).status == LedgerStatus.VOID
