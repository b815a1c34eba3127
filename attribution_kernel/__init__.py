"""
Attribution Kernel - tuition payment attribution engine.

Decides which student enrollment(s) and billing period(s) an inbound
family payment satisfies:
- Ordered, pure strategy chain (exact, single-enrollment, multi-period,
  proportional fallback)
- Keyed, idempotent enrollment ledger postings
- Atomic attribution runs with a safe ``unmatched`` failure state
- Staff manual-allocation override through the same ledger path
- Full auditability via hash-chained audit events
"""

__version__ = "0.1.0"
