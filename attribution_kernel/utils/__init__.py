"""Utility modules for the attribution kernel."""

from attribution_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_event,
    hash_payload,
)
from attribution_kernel.utils.idempotency import generate_posting_key, parse_posting_key

__all__ = [
    "canonicalize_json",
    "hash_audit_event",
    "hash_payload",
    "generate_posting_key",
    "parse_posting_key",
]
