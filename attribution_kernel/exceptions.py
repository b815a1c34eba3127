"""
Typed Exception Hierarchy for the Attribution Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Payment attribution gates downstream accounting (reconciliation, QuickBooks
sync, collections alerts).  Callers must react to failures by TYPE and CODE,
never by parsing messages:

    try:
        orchestrator.attribute(payment)
    except LedgerWriteConflictError as e:
        schedule_retry(e.enrollment_id)          # Structured data
    except LedgerError as e:
        alert(code=e.code)                       # Machine-readable

Every exception:
  1. Has a TYPED class (catch by type, not message)
  2. Has a ``code`` class attribute (machine-readable, API-safe)
  3. Carries structured DATA as instance attributes

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    AttributionKernelError (base)
    |
    +-- PaymentError
    |   +-- PaymentNotFoundError
    |   +-- InvalidPaymentError
    |   +-- InvalidPaymentStateError
    |
    +-- AllocationError
    |   +-- AllocationConservationError
    |   +-- InvalidManualAllocationError
    |
    +-- LedgerError
    |   +-- EnrollmentNotFoundError
    |   +-- LedgerWriteError
    |   +-- LedgerWriteConflictError
    |
    +-- RefundError
    |   +-- InvalidRefundError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                        | When Raised
-------------|-----------------------------|------------------------------------------
Payment      | PAYMENT_NOT_FOUND           | Payment ID doesn't exist
             | INVALID_PAYMENT             | Malformed payment (non-positive net, ...)
             | INVALID_PAYMENT_STATE       | Operation not allowed in current status
-------------|-----------------------------|------------------------------------------
Allocation   | ALLOCATION_NOT_CONSERVED    | Automatic allocations != net amount
             | INVALID_MANUAL_ALLOCATION   | Staff submission rejected before writes
-------------|-----------------------------|------------------------------------------
Ledger       | ENROLLMENT_NOT_FOUND        | Enrollment ID doesn't exist
             | LEDGER_WRITE_FAILED         | recordPayment could not be applied
             | LEDGER_WRITE_CONFLICT       | Lost update detected (version mismatch)
-------------|-----------------------------|------------------------------------------
Refund       | INVALID_REFUND              | Amount out of range / already refunded
-------------|-----------------------------|------------------------------------------
Audit        | AUDIT_CHAIN_BROKEN          | Hash chain validation failed
-------------|-----------------------------|------------------------------------------
Immutability | IMMUTABILITY_VIOLATION      | Deleting a payment, editing audit rows

===============================================================================
HANDLING PATTERNS
===============================================================================

1. An unresolvable family is NOT an exception.  The orchestrator returns a
   payment in ``unmatched`` status; only genuine failures raise.

2. LedgerWriteConflictError is retriable.  The payment is left ``unmatched``
   with status ``failed`` and may be attributed again.

3. InvalidManualAllocationError carries ``line_errors`` -- one dict per
   rejected allocation line -- suitable for returning to the staff UI.

===============================================================================
"""


class AttributionKernelError(Exception):
    """
    Base exception for all attribution kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "ATTRIBUTION_KERNEL_ERROR"


# Payment-related exceptions


class PaymentError(AttributionKernelError):
    """Base exception for payment-related errors."""

    code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError):
    """Payment with given ID was not found."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class InvalidPaymentError(PaymentError):
    """Payment is malformed and cannot be processed."""

    code: str = "INVALID_PAYMENT"

    def __init__(self, payment_id: str | None, reason: str):
        self.payment_id = payment_id
        self.reason = reason
        super().__init__(f"Invalid payment {payment_id}: {reason}")


class InvalidPaymentStateError(PaymentError):
    """Operation is not permitted for the payment's current status."""

    code: str = "INVALID_PAYMENT_STATE"

    def __init__(self, payment_id: str, current_status: str, operation: str):
        self.payment_id = payment_id
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} payment {payment_id} in status '{current_status}'"
        )


# Allocation-related exceptions


class AllocationError(AttributionKernelError):
    """Base exception for allocation errors."""

    code: str = "ALLOCATION_ERROR"


class AllocationConservationError(AllocationError):
    """
    Automatic allocations do not sum to the payment's net amount.

    This signals a logic bug in a strategy, never a data problem.
    """

    code: str = "ALLOCATION_NOT_CONSERVED"

    def __init__(self, payment_id: str, net_amount: str, allocated: str):
        self.payment_id = payment_id
        self.net_amount = net_amount
        self.allocated = allocated
        super().__init__(
            f"Allocations for payment {payment_id} sum to {allocated}, "
            f"expected {net_amount}"
        )


class InvalidManualAllocationError(AllocationError):
    """Staff-submitted allocation list was rejected before any ledger write."""

    code: str = "INVALID_MANUAL_ALLOCATION"

    def __init__(self, payment_id: str, line_errors: list[dict]):
        self.payment_id = payment_id
        self.line_errors = line_errors
        super().__init__(
            f"Manual allocation for payment {payment_id} rejected: "
            f"{len(line_errors)} error(s)"
        )


# Ledger-related exceptions


class LedgerError(AttributionKernelError):
    """Base exception for enrollment ledger errors."""

    code: str = "LEDGER_ERROR"


class EnrollmentNotFoundError(LedgerError):
    """Enrollment with given ID was not found."""

    code: str = "ENROLLMENT_NOT_FOUND"

    def __init__(self, enrollment_id: str):
        self.enrollment_id = enrollment_id
        super().__init__(f"Enrollment not found: {enrollment_id}")


class LedgerWriteError(LedgerError):
    """A payment could not be recorded against an enrollment."""

    code: str = "LEDGER_WRITE_FAILED"

    def __init__(self, enrollment_id: str, posting_key: str, reason: str):
        self.enrollment_id = enrollment_id
        self.posting_key = posting_key
        self.reason = reason
        super().__init__(
            f"Ledger write {posting_key} on enrollment {enrollment_id} failed: {reason}"
        )


class LedgerWriteConflictError(LedgerError):
    """
    Concurrent modification of an enrollment was detected.

    Raised when the compare-and-swap on the enrollment version fails.
    Retriable.
    """

    code: str = "LEDGER_WRITE_CONFLICT"

    def __init__(self, enrollment_id: str, expected_version: int | None = None):
        self.enrollment_id = enrollment_id
        self.expected_version = expected_version
        super().__init__(
            f"Enrollment {enrollment_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


# Refund-related exceptions


class RefundError(AttributionKernelError):
    """Base exception for refund errors."""

    code: str = "REFUND_ERROR"


class InvalidRefundError(RefundError):
    """Refund request is invalid for this payment."""

    code: str = "INVALID_REFUND"

    def __init__(self, payment_id: str, reason: str):
        self.payment_id = payment_id
        self.reason = reason
        super().__init__(f"Invalid refund for payment {payment_id}: {reason}")


# Audit-related exceptions


class AuditError(AttributionKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(
        self,
        audit_event_id: str,
        expected_hash: str,
        actual_hash: str,
    ):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at event {audit_event_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )


# Immutability exceptions


class ImmutabilityError(AttributionKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete a record that is append-only."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )
