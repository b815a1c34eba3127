"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for every significant
    state change: payment ingestion, attribution runs (successful or
    failed), manual allocations, ledger postings, refunds and bank
    reconciliation.  Provides chain validation for tamper detection and
    trace queries for review.

Architecture position:
    Kernel > Services -- imperative shell, called by the ingestion service,
    the ledger service, the orchestrator, the manual allocation handler and
    the refund and reconciliation services.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never raw SQL max+1).
    - Audit chain integrity: ``hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash)``.
    - Append-only: audit events are never modified or deleted (ORM
      listeners on the AuditEvent model).

Failure modes:
    - AuditChainBrokenError: recomputed hash does not match stored hash,
      or prev_hash does not match the predecessor's hash.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from attribution_kernel.domain.clock import Clock, SystemClock
from attribution_kernel.domain.values import to_cents
from attribution_kernel.exceptions import AuditChainBrokenError
from attribution_kernel.logging_config import get_logger
from attribution_kernel.models.audit_event import AuditAction, AuditEvent
from attribution_kernel.services.sequence_service import SequenceService
from attribution_kernel.utils.hashing import hash_audit_event, hash_payload

logger = get_logger("services.auditor")


def _money(amount: Decimal) -> str:
    return str(to_cents(amount))


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """Complete audit trace for an entity, in chronological order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(e.action for e in self.entries)

    @property
    def last_action(self) -> AuditAction | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Contract:
        Accepts domain-specific recording requests and creates append-only
        ``AuditEvent`` rows with hash chain linkage.

    Non-goals:
        - Does NOT call ``session.commit()``; the caller controls boundaries.
        - Does NOT interpret or act on audit events.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        """Get the hash of the most recent audit event."""
        last_event = self._session.execute(
            select(AuditEvent)
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

        return last_event.hash if last_event else None

    def _create_audit_event(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Create a new audit event with hash chain linkage.

        Payload values must already be JSON-native (amounts as strings).

        Postconditions:
            - A new ``AuditEvent`` row is flushed with a monotonically
              increasing ``seq`` and a valid hash chain link.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)

        prev_hash = self._get_last_hash()

        payload_data = payload or {}
        computed_payload_hash = hash_payload(payload_data)

        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )

        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )

        return audit_event

    # Payment lifecycle

    def record_payment_received(
        self,
        payment_id: UUID,
        source: str,
        external_transaction_id: str | None,
        gross_amount: Decimal,
        fees: Decimal,
        net_amount: Decimal,
        actor_id: UUID,
    ) -> AuditEvent:
        """Record that a payment notification was accepted as a new payment."""
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=AuditAction.PAYMENT_RECEIVED,
            actor_id=actor_id,
            payload={
                "source": source,
                "external_transaction_id": external_transaction_id,
                "gross_amount": _money(gross_amount),
                "fees": _money(fees),
                "net_amount": _money(net_amount),
            },
        )

    def record_payment_duplicate_ignored(
        self,
        payment_id: UUID,
        source: str,
        external_transaction_id: str,
        actor_id: UUID,
    ) -> AuditEvent:
        """Record that a re-delivered notification matched an existing payment."""
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=AuditAction.PAYMENT_DUPLICATE_IGNORED,
            actor_id=actor_id,
            payload={
                "source": source,
                "external_transaction_id": external_transaction_id,
            },
        )

    def record_payment_attributed(
        self,
        payment_id: UUID,
        attribution_status: str,
        attribution_method: str | None,
        confidence: Decimal,
        strategy: str | None,
        anchor_period: str,
        allocations: list[dict],
        allocations_hash: str,
        allocation_count: int,
        ledger_write_count: int,
        actor_id: UUID,
    ) -> AuditEvent:
        """
        Record the outcome of one automatic attribution run.

        Written for every completed run, including unmatched and
        needs-review outcomes.  ``allocations`` is the full allocation list
        (``Payment.allocation_snapshot()``); allocation rows are replaced
        wholesale, so this event is where a superseded list survives.
        """
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=AuditAction.PAYMENT_ATTRIBUTED,
            actor_id=actor_id,
            payload={
                "attribution_status": attribution_status,
                "attribution_method": attribution_method,
                "confidence": str(confidence),
                "strategy": strategy,
                "anchor_period": anchor_period,
                "allocations": allocations,
                "allocations_hash": allocations_hash,
                "allocation_count": allocation_count,
                "ledger_write_count": ledger_write_count,
            },
        )

    def record_attribution_failed(
        self,
        payment_id: UUID,
        error_type: str,
        error_code: str | None,
        error_message: str,
        actor_id: UUID,
    ) -> AuditEvent:
        """Record that an attribution run failed and was rolled back."""
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=AuditAction.ATTRIBUTION_FAILED,
            actor_id=actor_id,
            payload={
                "error_type": error_type,
                "error_code": error_code,
                "error_message": error_message,
            },
        )

    def record_manual_allocation(
        self,
        payment_id: UUID,
        reviewer_id: UUID,
        previous_status: str,
        previous_allocations: list[dict],
        allocations: list[dict],
        allocated_total: Decimal,
        allocations_hash: str,
        reversed_posting_count: int,
    ) -> AuditEvent:
        """Record a staff override, with both the replaced and the new list."""
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=AuditAction.PAYMENT_MANUALLY_ALLOCATED,
            actor_id=reviewer_id,
            payload={
                "previous_attribution_status": previous_status,
                "previous_allocations": previous_allocations,
                "allocations": allocations,
                "allocation_count": len(allocations),
                "allocated_total": _money(allocated_total),
                "allocations_hash": allocations_hash,
                "reversed_posting_count": reversed_posting_count,
            },
        )

    def record_refund(
        self,
        payment_id: UUID,
        amount: Decimal,
        reason: str,
        full_refund: bool,
        reversed_posting_count: int,
        actor_id: UUID,
    ) -> AuditEvent:
        """Record a refund of all or part of a payment."""
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=AuditAction.PAYMENT_REFUNDED,
            actor_id=actor_id,
            payload={
                "amount": _money(amount),
                "reason": reason,
                "full_refund": full_refund,
                "reversed_posting_count": reversed_posting_count,
            },
        )

    def record_reconciliation(
        self,
        payment_id: UUID,
        reconciled_date: date,
        net_amount: Decimal,
        actor_id: UUID,
    ) -> AuditEvent:
        """Record that a settled payment was matched to a bank deposit."""
        return self._create_audit_event(
            entity_type="Payment",
            entity_id=payment_id,
            action=AuditAction.PAYMENT_RECONCILED,
            actor_id=actor_id,
            payload={
                "reconciled_date": reconciled_date.isoformat(),
                "net_amount": _money(net_amount),
            },
        )

    # Enrollment ledger

    def record_ledger_posting(
        self,
        enrollment_id: UUID,
        action: AuditAction,
        posting_key: str,
        payment_id: UUID,
        amount: Decimal,
        previous_amount: Decimal,
        actor_id: UUID,
    ) -> AuditEvent:
        """Record an applied, adjusted or reversed ledger slot."""
        if action not in (
            AuditAction.LEDGER_POSTING_APPLIED,
            AuditAction.LEDGER_POSTING_ADJUSTED,
            AuditAction.LEDGER_POSTING_REVERSED,
        ):
            raise ValueError(f"Not a ledger posting action: {action}")
        return self._create_audit_event(
            entity_type="Enrollment",
            entity_id=enrollment_id,
            action=action,
            actor_id=actor_id,
            payload={
                "posting_key": posting_key,
                "payment_id": str(payment_id),
                "amount": _money(amount),
                "previous_amount": _money(previous_amount),
                "delta": _money(amount - previous_amount),
            },
        )

    # Validation

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Postconditions:
            - Returns ``True`` only if every event's stored ``hash`` matches
              the recomputed value and every ``prev_hash`` matches its
              predecessor's ``hash``.

        Raises:
            AuditChainBrokenError: If chain validation fails at any point.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        if not events:
            return True

        if not events[0].is_genesis:
            logger.critical("audit_chain_broken", extra={"seq": events[0].seq})
            raise AuditChainBrokenError(
                str(events[0].id),
                "None",
                events[0].prev_hash,
            )

        for i, event in enumerate(events):
            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=AuditAction(event.action).value,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )

            if event.hash != expected_hash:
                logger.critical("audit_chain_broken", extra={"seq": event.seq})
                raise AuditChainBrokenError(
                    str(event.id),
                    expected_hash,
                    event.hash,
                )

            if hash_payload(event.payload or {}) != event.payload_hash:
                logger.critical("audit_chain_broken", extra={"seq": event.seq})
                raise AuditChainBrokenError(
                    str(event.id),
                    event.payload_hash,
                    hash_payload(event.payload or {}),
                )

            if i > 0:
                expected_prev = events[i - 1].hash
                if event.prev_hash != expected_prev:
                    logger.critical("audit_chain_broken", extra={"seq": event.seq})
                    raise AuditChainBrokenError(
                        str(event.id),
                        expected_prev,
                        event.prev_hash or "None",
                    )

        logger.info(
            "audit_chain_valid",
            extra={"event_count": len(events)},
        )
        return True

    # Trace and query methods

    def get_trace(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> AuditTrace:
        """Get the complete audit trace for an entity."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=event.action,
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )

        return AuditTrace(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=entries,
        )
