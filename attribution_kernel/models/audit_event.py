"""
Module: attribution_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM listeners in
      db/immutability.py).
    - Hash chain integrity: hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash).  Validated by AuditorService.
    - seq is monotonically increasing, allocated by SequenceService.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a hash mismatch.

Audit relevance:
    AuditEvent IS the audit trail.  Every payment ingestion, attribution
    run (successful or failed), manual allocation, ledger posting, refund
    and bank reconciliation produces an AuditEvent.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from attribution_kernel.db.base import Base, EnumString, UUIDString


class AuditAction(str, Enum):
    """Types of auditable actions.

    Contract: Every member represents one class of state change that
    MUST be recorded in the audit chain.
    """

    # Payment lifecycle
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_DUPLICATE_IGNORED = "payment_duplicate_ignored"
    PAYMENT_ATTRIBUTED = "payment_attributed"
    ATTRIBUTION_FAILED = "attribution_failed"
    PAYMENT_MANUALLY_ALLOCATED = "payment_manually_allocated"
    PAYMENT_REFUNDED = "payment_refunded"
    PAYMENT_RECONCILED = "payment_reconciled"

    # Enrollment ledger
    LEDGER_POSTING_APPLIED = "ledger_posting_applied"
    LEDGER_POSTING_ADJUSTED = "ledger_posting_adjusted"
    LEDGER_POSTING_REVERSED = "ledger_posting_reversed"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Contract:
        Append-only, never updated or deleted.  Each row's hash includes the
        previous row's hash, creating a tamper-evident chain.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - prev_hash is None only for the genesis event.

    Non-goals:
        - This model does NOT enforce hash correctness at INSERT time;
          that is the responsibility of AuditorService.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_seq", "seq"),
    )

    seq: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
    )

    # e.g. "Payment", "Enrollment"
    entity_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    entity_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    action: Mapped[AuditAction] = mapped_column(
        EnumString(AuditAction, 50),
        nullable=False,
    )

    actor_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    payload: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )

    payload_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    prev_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None

    def __repr__(self) -> str:
        return f"<AuditEvent {AuditAction(self.action).value} on {self.entity_type}:{self.entity_id}>"
