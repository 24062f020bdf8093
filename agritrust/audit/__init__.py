"""
AgriTrust Audit Ledger

Signed, hash-chained record of every settlement event: proof submissions,
notarized verifications, rejections and distribution summaries.
"""

from agritrust.audit.ledger import AuditLedger
from agritrust.audit.replay import AuditReplay, ReplaySummary, ChainViolation

__all__ = ["AuditLedger", "AuditReplay", "ReplaySummary", "ChainViolation"]
