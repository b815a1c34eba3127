"""Persistence models for the attribution kernel."""

from attribution_kernel.models.audit_event import AuditAction, AuditEvent
from attribution_kernel.models.enrollment import (
    Enrollment,
    EnrollmentPaymentStatus,
    EnrollmentStatus,
    PaymentFrequency,
)
from attribution_kernel.models.family import Family
from attribution_kernel.models.ledger_posting import EnrollmentPaymentPosting
from attribution_kernel.models.payment import (
    SETTLED_ATTRIBUTION_STATUSES,
    AttributionMethod,
    AttributionStatus,
    Payment,
    PaymentAllocation,
    PaymentMethod,
    PaymentSource,
    PaymentStatus,
)

__all__ = [
    "AuditAction",
    "AuditEvent",
    "Enrollment",
    "EnrollmentPaymentStatus",
    "EnrollmentStatus",
    "PaymentFrequency",
    "Family",
    "EnrollmentPaymentPosting",
    "SETTLED_ATTRIBUTION_STATUSES",
    "AttributionMethod",
    "AttributionStatus",
    "Payment",
    "PaymentAllocation",
    "PaymentMethod",
    "PaymentSource",
    "PaymentStatus",
]
