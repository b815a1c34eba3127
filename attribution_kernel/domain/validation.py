"""
Validation of staff-submitted manual allocations.

Pure checks with no I/O.  Every problem is collected (not just the first)
so the review UI can highlight each offending line.  The handler calls this
before touching the payment or the ledger.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from uuid import UUID

from attribution_kernel.domain.dtos import ManualAllocationLine


def validate_manual_lines(
    lines: list[ManualAllocationLine] | tuple[ManualAllocationLine, ...],
    family_enrollment_ids: set[UUID] | frozenset[UUID],
    known_enrollment_ids: set[UUID] | frozenset[UUID],
    max_total: Decimal | None = None,
) -> list[dict]:
    """
    Return one error dict per problem; an empty list means the submission is valid.

    Args:
        lines: The submitted allocation lines, in submission order.
        family_enrollment_ids: Enrollments belonging to the payment's family.
        known_enrollment_ids: Every enrollment id that exists at all, so an
            unknown id can be told apart from another family's enrollment.
        max_total: Ceiling on the sum of the lines (the unrefunded part of a
            partially refunded payment), or None for no ceiling.

    Error dicts carry ``line`` (0-based index), ``code`` and ``message``.
    Submission-level errors have ``line`` None.
    """
    errors: list[dict] = []

    if not lines:
        errors.append({
            "line": None,
            "code": "EMPTY_SUBMISSION",
            "message": "At least one allocation is required",
        })
        return errors

    total = Decimal("0")
    amounts_valid = True
    for index, line in enumerate(lines):
        try:
            amount = Decimal(line.amount)
            positive = amount.is_finite() and amount > 0
        except (InvalidOperation, TypeError, ValueError):
            positive = False
        if not positive:
            amounts_valid = False
            errors.append({
                "line": index,
                "code": "NON_POSITIVE_AMOUNT",
                "message": f"Allocation amount must be positive, got {line.amount}",
            })
        elif amount != amount.quantize(Decimal("0.01")):
            amounts_valid = False
            errors.append({
                "line": index,
                "code": "SUB_CENT_AMOUNT",
                "message": f"Allocation amount must be whole cents, got {line.amount}",
            })
        else:
            total += amount

        if line.enrollment_id not in known_enrollment_ids:
            errors.append({
                "line": index,
                "code": "UNKNOWN_ENROLLMENT",
                "message": f"Enrollment {line.enrollment_id} does not exist",
            })
        elif line.enrollment_id not in family_enrollment_ids:
            errors.append({
                "line": index,
                "code": "FOREIGN_ENROLLMENT",
                "message": (
                    f"Enrollment {line.enrollment_id} does not belong to "
                    "the payment's family"
                ),
            })

    if amounts_valid and max_total is not None and total > max_total:
        errors.append({
            "line": None,
            "code": "EXCEEDS_AVAILABLE_AMOUNT",
            "message": f"Allocations total {total} but only {max_total} remains after refund",
        })

    return errors
