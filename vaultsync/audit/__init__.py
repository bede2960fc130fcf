"""
Audit trail for vaultsync.

- AuditLog: policy-filtered, fingerprint-deduplicated event append
- is_client_writable: event-type allow-list
- build_fingerprint: FNV-1a fingerprint over an event's identity
"""

from .fingerprint import build_fingerprint, fnv1a32_hex
from .log import AuditEvent, AuditLog, AuditResult
from .policy import is_client_writable

__all__ = [
    "AuditEvent",
    "AuditLog",
    "AuditResult",
    "build_fingerprint",
    "fnv1a32_hex",
    "is_client_writable",
]
