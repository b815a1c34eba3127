"""
Ledger posting key utilities.

A posting key names one ledger slot: the credit of one payment to one
enrollment for one billing period.  The key carries a unique constraint on
EnrollmentPaymentPosting, which is what makes ledger writes set-inserts
rather than accumulators.
"""

from uuid import UUID

from attribution_kernel.domain.values import BillingPeriod


def generate_posting_key(
    payment_id: UUID | str,
    enrollment_id: UUID | str,
    period: BillingPeriod,
) -> str:
    """
    Generate the posting key for a (payment, enrollment, period) slot.

    Format: payment_id:enrollment_id:YYYY-MM

    Example:
        >>> generate_posting_key(payment_id, enrollment_id, BillingPeriod(2024, 9))
        "0b9c...:5d1e...:2024-09"
    """
    return f"{payment_id}:{enrollment_id}:{period}"


def parse_posting_key(key: str) -> tuple[UUID, UUID, BillingPeriod]:
    """
    Parse a posting key into its components.

    Raises:
        ValueError: If key format is invalid.
    """
    parts = key.split(":")
    if len(parts) != 3:
        raise ValueError(f"Invalid posting key format: {key}")
    return UUID(parts[0]), UUID(parts[1]), BillingPeriod.parse(parts[2])
