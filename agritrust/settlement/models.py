"""
agritrust/settlement/models.py

Settlement data model.

A SettlementRecord tracks one revenue event of one project from proof
submission to completed distribution. Its state only moves forward:

    no_proof → proof_submitted → verified → distribution_in_progress
                               ↘ rejected                 ↘ distribution_complete

rejected and distribution_complete are terminal.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from agritrust.core.exceptions import ConfigurationError, StateTransitionError
from agritrust.core.identity import Role
from agritrust.core.models import AuditReceipt
from agritrust.core.money import DEFAULT_PRECISION, Money, format_amount, to_decimal
from agritrust.core.time import utc_timestamp


class SettlementState(str, Enum):
    NO_PROOF                 = "no_proof"
    PROOF_SUBMITTED          = "proof_submitted"
    VERIFIED                 = "verified"
    REJECTED                 = "rejected"
    DISTRIBUTION_IN_PROGRESS = "distribution_in_progress"
    DISTRIBUTION_COMPLETE    = "distribution_complete"


TRANSITIONS: Dict[SettlementState, FrozenSet[SettlementState]] = {
    SettlementState.NO_PROOF: frozenset({SettlementState.PROOF_SUBMITTED}),
    SettlementState.PROOF_SUBMITTED: frozenset({
        SettlementState.VERIFIED,
        SettlementState.REJECTED,
    }),
    SettlementState.VERIFIED: frozenset({SettlementState.DISTRIBUTION_IN_PROGRESS}),
    SettlementState.DISTRIBUTION_IN_PROGRESS: frozenset({
        SettlementState.DISTRIBUTION_COMPLETE,
    }),
    SettlementState.REJECTED: frozenset(),
    SettlementState.DISTRIBUTION_COMPLETE: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)


class TransferOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class PlatformFeeMode(str, Enum):
    RETAIN   = "retain"     # fee stays with the distribution source
    TRANSFER = "transfer"   # fee is paid out to the platform identity


# ── Waterfall ─────────────────────────────────────────────────


@dataclass(frozen=True)
class ContributorShare:
    """A capital contributor and their fraction of the contributor pool."""
    address:            str
    share_percentage:   Decimal
    contributed_amount: Optional[Money] = None
    name:               Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.address, str) or not self.address:
            raise ConfigurationError("contributor address must be a non-empty string")
        share = to_decimal(self.share_percentage, "share_percentage")
        if share <= 0:
            raise ConfigurationError(
                "share_percentage must be positive",
                {"address": self.address, "share_percentage": str(share)},
            )
        object.__setattr__(self, "share_percentage", share)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address":            self.address,
            "share_percentage":   format_amount(self.share_percentage),
            "contributed_amount": (
                self.contributed_amount.to_dict() if self.contributed_amount else None
            ),
            "name":               self.name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContributorShare":
        contributed = data.get("contributed_amount")
        return cls(
            address=            data["address"],
            share_percentage=   Decimal(data["share_percentage"]),
            contributed_amount= Money.from_dict(contributed) if contributed else None,
            name=               data.get("name"),
        )


@dataclass(frozen=True)
class ContributorPayout:
    address:          str
    share_percentage: Decimal
    amount:           Money

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address":          self.address,
            "share_percentage": format_amount(self.share_percentage),
            "amount":           self.amount.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContributorPayout":
        return cls(
            address=          data["address"],
            share_percentage= Decimal(data["share_percentage"]),
            amount=           Money.from_dict(data["amount"]),
        )


@dataclass(frozen=True)
class WaterfallResult:
    """
    Output of compute_waterfall().

    Line items are rounded; intermediate values are not. leftover is
    whatever the rounded line items do not account for, so

        platform_fee + operator_payout + Σ contributor payouts + leftover == revenue

    holds exactly.
    """
    revenue:                   Money
    platform_fee_percentage:   Decimal
    operator_share_percentage: Decimal
    platform_fee:              Money
    remainder:                 Money
    operator_payout:           Money
    contributor_pool:          Money
    contributor_payouts:       Tuple[ContributorPayout, ...]
    leftover:                  Money
    precision:                 int = DEFAULT_PRECISION

    @property
    def asset(self) -> str:
        return self.revenue.asset

    @property
    def total_contributor_payout(self) -> Money:
        total = Money.zero(self.asset)
        for payout in self.contributor_payouts:
            total = total + payout.amount
        return total

    @property
    def total_allocated(self) -> Money:
        """Everything except leftover."""
        return self.platform_fee + self.operator_payout + self.total_contributor_payout

    def is_conserved(self) -> bool:
        return self.total_allocated + self.leftover == self.revenue

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revenue":                   self.revenue.to_dict(),
            "platform_fee_percentage":   format_amount(self.platform_fee_percentage),
            "operator_share_percentage": format_amount(self.operator_share_percentage),
            "platform_fee":              self.platform_fee.to_dict(),
            "remainder":                 self.remainder.to_dict(),
            "operator_payout":           self.operator_payout.to_dict(),
            "contributor_pool":          self.contributor_pool.to_dict(),
            "contributor_payouts":       [p.to_dict() for p in self.contributor_payouts],
            "total_contributor_payout":  self.total_contributor_payout.to_dict(),
            "leftover":                  self.leftover.to_dict(),
            "precision":                 self.precision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WaterfallResult":
        return cls(
            revenue=                   Money.from_dict(data["revenue"]),
            platform_fee_percentage=   Decimal(data["platform_fee_percentage"]),
            operator_share_percentage= Decimal(data["operator_share_percentage"]),
            platform_fee=              Money.from_dict(data["platform_fee"]),
            remainder=                 Money.from_dict(data["remainder"]),
            operator_payout=           Money.from_dict(data["operator_payout"]),
            contributor_pool=          Money.from_dict(data["contributor_pool"]),
            contributor_payouts=       tuple(
                ContributorPayout.from_dict(p) for p in data["contributor_payouts"]
            ),
            leftover=                  Money.from_dict(data["leftover"]),
            precision=                 int(data.get("precision", DEFAULT_PRECISION)),
        )


# ── Verification ──────────────────────────────────────────────


@dataclass(frozen=True)
class ReviewDecision:
    """Outcome of an out-of-band business review run during verification."""
    accepted:            bool
    reason:              str = ""
    profit_distribution: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Rejection:
    """Why a settlement was rejected. check is "digest" or "review"."""
    check:    str
    reason:   str
    expected: Optional[str] = None
    actual:   Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check":    self.check,
            "reason":   self.reason,
            "expected": self.expected,
            "actual":   self.actual,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rejection":
        return cls(
            check=    data["check"],
            reason=   data["reason"],
            expected= data.get("expected"),
            actual=   data.get("actual"),
        )


@dataclass(frozen=True)
class VerificationResult:
    settlement_id:   str
    project_id:      str
    state:           SettlementState
    verified_digest: str
    audit_receipt:   AuditReceipt
    rejection:       Optional[Rejection] = None

    @property
    def verified(self) -> bool:
        return self.state == SettlementState.VERIFIED


# ── Distribution ──────────────────────────────────────────────


@dataclass(frozen=True)
class DistributionReceipt:
    """Outcome of one planned transfer. retry_of indexes the failed receipt it re-attempts."""
    recipient: str
    role:      Role
    amount:    Money
    outcome:   TransferOutcome
    receipt:   Optional[Dict[str, Any]] = None
    error:     Optional[str] = None
    retry_of:  Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": self.recipient,
            "role":      self.role.value,
            "amount":    self.amount.to_dict(),
            "outcome":   self.outcome.value,
            "receipt":   self.receipt,
            "error":     self.error,
            "retry_of":  self.retry_of,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DistributionReceipt":
        return cls(
            recipient= data["recipient"],
            role=      Role(data["role"]),
            amount=    Money.from_dict(data["amount"]),
            outcome=   TransferOutcome(data["outcome"]),
            receipt=   data.get("receipt"),
            error=     data.get("error"),
            retry_of=  data.get("retry_of"),
        )


# ── Record ────────────────────────────────────────────────────


@dataclass
class SettlementRecord:
    """One revenue event of one project."""

    settlement_id:               str
    project_id:                  str
    operator_id:                 str
    state:                       SettlementState = SettlementState.NO_PROOF
    reported_revenue:            Optional[Money] = None
    evidence_reference:          Optional[str] = None
    evidence_digest:             Optional[str] = None
    digest_algorithm:            Optional[str] = None
    verified_digest:             Optional[str] = None
    verifier_id:                 Optional[str] = None
    verification_timestamp:      Optional[str] = None
    rejection:                   Optional[Rejection] = None
    profit_distribution_preview: Optional[Dict[str, Any]] = None
    distribution:                Optional[WaterfallResult] = None
    distribution_receipts:       List[DistributionReceipt] = field(default_factory=list)
    audit_receipts:              List[AuditReceipt] = field(default_factory=list)
    created_at:                  str = field(default_factory=utc_timestamp)
    updated_at:                  str = field(default_factory=utc_timestamp)
    version:                     int = 0

    @classmethod
    def new(cls, project_id: str, operator_id: str) -> "SettlementRecord":
        return cls(
            settlement_id= f"stl-{uuid.uuid4()}",
            project_id=    project_id,
            operator_id=   operator_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition_to(self, target: SettlementState) -> bool:
        return target in TRANSITIONS[self.state]

    def transition_to(self, target: SettlementState) -> None:
        """Move forward. Raises StateTransitionError for anything else."""
        if not self.can_transition_to(target):
            raise StateTransitionError(
                f"Illegal transition: {self.state.value} → {target.value}",
                {"settlement_id": self.settlement_id, "project_id": self.project_id},
            )
        if target == SettlementState.VERIFIED and (
            not self.evidence_digest or self.verified_digest != self.evidence_digest
        ):
            raise StateTransitionError(
                "cannot verify: recomputed digest does not match submission",
                {"settlement_id": self.settlement_id},
            )
        self.state      = target
        self.updated_at = utc_timestamp()

    def set_distribution(self, result: WaterfallResult) -> None:
        if self.distribution is not None:
            raise StateTransitionError(
                "distribution already computed for this settlement",
                {"settlement_id": self.settlement_id},
            )
        self.distribution = result

    # ── Serialization ─────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "settlement_id":               self.settlement_id,
            "project_id":                  self.project_id,
            "operator_id":                 self.operator_id,
            "state":                       self.state.value,
            "reported_revenue":            (
                self.reported_revenue.to_dict() if self.reported_revenue else None
            ),
            "evidence_reference":          self.evidence_reference,
            "evidence_digest":             self.evidence_digest,
            "digest_algorithm":            self.digest_algorithm,
            "verified_digest":             self.verified_digest,
            "verifier_id":                 self.verifier_id,
            "verification_timestamp":      self.verification_timestamp,
            "rejection":                   self.rejection.to_dict() if self.rejection else None,
            "profit_distribution_preview": self.profit_distribution_preview,
            "distribution":                (
                self.distribution.to_dict() if self.distribution else None
            ),
            "distribution_receipts":       [r.to_dict() for r in self.distribution_receipts],
            "audit_receipts":              [r.to_dict() for r in self.audit_receipts],
            "created_at":                  self.created_at,
            "updated_at":                  self.updated_at,
            "version":                     self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettlementRecord":
        revenue      = data.get("reported_revenue")
        rejection    = data.get("rejection")
        distribution = data.get("distribution")
        return cls(
            settlement_id=               data["settlement_id"],
            project_id=                  data["project_id"],
            operator_id=                 data["operator_id"],
            state=                       SettlementState(data["state"]),
            reported_revenue=            Money.from_dict(revenue) if revenue else None,
            evidence_reference=          data.get("evidence_reference"),
            evidence_digest=             data.get("evidence_digest"),
            digest_algorithm=            data.get("digest_algorithm"),
            verified_digest=             data.get("verified_digest"),
            verifier_id=                 data.get("verifier_id"),
            verification_timestamp=      data.get("verification_timestamp"),
            rejection=                   Rejection.from_dict(rejection) if rejection else None,
            profit_distribution_preview= data.get("profit_distribution_preview"),
            distribution=                (
                WaterfallResult.from_dict(distribution) if distribution else None
            ),
            distribution_receipts=       [
                DistributionReceipt.from_dict(r) for r in data.get("distribution_receipts", [])
            ],
            audit_receipts=              [
                AuditReceipt.from_dict(r) for r in data.get("audit_receipts", [])
            ],
            created_at=                  data["created_at"],
            updated_at=                  data["updated_at"],
            version=                     int(data.get("version", 0)),
        )
