"""
Ledger models: the issuance database and serial counter of one CA.
"""

from typing import Optional
from datetime import datetime
from sqlalchemy import String, DateTime, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column

from pki_hierarchy.core.database import Base


class LedgerState(Base):
    """Serial counter of a CA. Exactly one row per ledger database."""

    __tablename__ = "ledger_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ca_name: Mapped[str] = mapped_column(String(255), nullable=False)
    start_serial: Mapped[int] = mapped_column(Integer, nullable=False)
    next_serial: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<LedgerState(ca_name='{self.ca_name}', next_serial={self.next_serial})>"


class LedgerEntryRecord(Base):
    """One allocated serial of a CA and what became of it."""

    __tablename__ = "ledger_entries"

    serial: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    subject_dn: Mapped[str] = mapped_column(String(1024), nullable=False)
    artifact_name: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="valid")  # reserved, valid, revoked, void

    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    revocation_reason: Mapped[Optional[str]] = mapped_column(String(100))

    __table_args__ = (
        Index("ix_ledger_entries_subject_dn", "subject_dn"),
        Index("ix_ledger_entries_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<LedgerEntryRecord(serial={self.serial}, status='{self.status}')>"
