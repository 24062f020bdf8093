"""
agritrust/__init__.py

AgriTrust: settlement verification and profit distribution for
agricultural projects.

A farmer-operator submits revenue evidence, an independent verifier
notarizes it, and the verified revenue is split between platform,
operator and capital contributors. Every step leaves a signed,
hash-chained record in the audit ledger.
"""

__version__ = "0.3.0"

from agritrust.core.exceptions import (
    AgriTrustError,
    ConfigurationError,
    DistributionAlreadyCompleteError,
    IntegrityError,
    SeparationOfDutiesError,
    StateTransitionError,
    TransientIOError,
)
from agritrust.core.crypto import Ed25519KeyManager, evidence_digest
from agritrust.core.identity import Identity, Role
from agritrust.core.money import Money
from agritrust.audit import AuditLedger, AuditReplay
from agritrust.storage import IPFSDocumentStore, LocalDocumentStore
from agritrust.transfers import InMemoryTransferLedger
from agritrust.settlement import (
    ContributorShare,
    SettlementEngine,
    SettlementRecord,
    SettlementState,
    SettlementStore,
    compute_waterfall,
    shares_from_contributions,
)
from agritrust.runtime.config import SettlementConfig
from agritrust.runtime.context import SettlementContext

__all__ = [
    # Workflow
    "SettlementEngine",
    "SettlementContext",
    "SettlementConfig",
    "SettlementStore",
    "SettlementRecord",
    "SettlementState",
    "ContributorShare",
    "compute_waterfall",
    "shares_from_contributions",
    # Collaborators
    "AuditLedger",
    "AuditReplay",
    "LocalDocumentStore",
    "IPFSDocumentStore",
    "InMemoryTransferLedger",
    # Primitives
    "Money",
    "Identity",
    "Role",
    "Ed25519KeyManager",
    "evidence_digest",
    # Errors
    "AgriTrustError",
    "ConfigurationError",
    "IntegrityError",
    "SeparationOfDutiesError",
    "StateTransitionError",
    "DistributionAlreadyCompleteError",
    "TransientIOError",
]
