"""Services for the attribution kernel (write side)."""

from attribution_kernel.services.attribution_orchestrator import AttributionOrchestrator
from attribution_kernel.services.auditor_service import AuditorService, AuditTrace
from attribution_kernel.services.enrollment_ledger import (
    EnrollmentLedgerService,
    LedgerWriteOutcome,
    LedgerWriteResult,
)
from attribution_kernel.services.manual_allocation_service import ManualAllocationHandler
from attribution_kernel.services.payment_ingestion_service import (
    IngestResult,
    IngestStatus,
    PaymentIngestionService,
)
from attribution_kernel.services.reconciliation_service import ReconciliationService
from attribution_kernel.services.refund_service import RefundService
from attribution_kernel.services.sequence_service import SequenceService

__all__ = [
    "AttributionOrchestrator",
    "AuditTrace",
    "AuditorService",
    "EnrollmentLedgerService",
    "IngestResult",
    "IngestStatus",
    "LedgerWriteOutcome",
    "LedgerWriteResult",
    "ManualAllocationHandler",
    "PaymentIngestionService",
    "ReconciliationService",
    "RefundService",
    "SequenceService",
]
