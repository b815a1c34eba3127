"""
ORM-level immutability enforcement.

===============================================================================
WHAT IS PROTECTED
===============================================================================

Entity                   | Rule                              | Reason
-------------------------|-----------------------------------|------------------------------
Payment                  | Never deleted                     | Refund/void is a status change
EnrollmentPaymentPosting | Never deleted                     | Reversal is a write of zero
AuditEvent               | Never updated, never deleted      | Audit trail is append-only

PaymentAllocation rows are deliberately NOT protected: re-attribution
replaces a payment's allocation list wholesale (delete-orphan).

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires mapper events before UPDATE/DELETE statements are sent:

    session.flush()
         |
         v
    [before_update / before_delete] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

The raise aborts the flush; the caller's transaction must be rolled back.

===============================================================================
USAGE
===============================================================================

    from attribution_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

Tests that need to tamper with audit rows (to prove chain validation catches
it) call unregister_immutability_listeners() and re-register afterwards.

===============================================================================
"""

from sqlalchemy import event

from attribution_kernel.exceptions import ImmutabilityViolationError
from attribution_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, target, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_payment_delete(mapper, connection, target):
    """Payments are never deleted; refunds are status transitions."""
    _block(
        "Payment",
        target,
        "DELETE",
        "Payments cannot be deleted; record a refund instead",
    )


def _check_posting_delete(mapper, connection, target):
    """Ledger postings are reversed to zero, never deleted."""
    _block(
        "EnrollmentPaymentPosting",
        target,
        "DELETE",
        "Ledger postings cannot be deleted; reverse them instead",
    )


def _check_audit_event_immutability(mapper, connection, target):
    """Prevent any updates to AuditEvent records."""
    _block(
        "AuditEvent",
        target,
        "UPDATE",
        "Audit events are immutable and cannot be modified",
    )


def _check_audit_event_delete(mapper, connection, target):
    """Prevent deletion of AuditEvent records."""
    _block(
        "AuditEvent",
        target,
        "DELETE",
        "Audit events cannot be deleted",
    )


def _listeners():
    from attribution_kernel.models.audit_event import AuditEvent
    from attribution_kernel.models.ledger_posting import EnrollmentPaymentPosting
    from attribution_kernel.models.payment import Payment

    return [
        (Payment, "before_delete", _check_payment_delete),
        (EnrollmentPaymentPosting, "before_delete", _check_posting_delete),
        (AuditEvent, "before_update", _check_audit_event_immutability),
        (AuditEvent, "before_delete", _check_audit_event_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once; already-registered listeners are skipped.
    """
    for target, event_name, fn in _listeners():
        if not event.contains(target, event_name, fn):
            event.listen(target, event_name, fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, fn in _listeners():
        if event.contains(target, event_name, fn):
            event.remove(target, event_name, fn)
