"""
Settlement engine: the caller-facing entry point.

    engine.submit_proof(operator, "proj-7", Money("58500", "RLUSD"), pdf_bytes)
    engine.verify_proof(verifier, "proj-7")
    engine.compute_waterfall(Money("58500", "RLUSD"), shares)
    engine.distribute("proj-7", treasury, contributors=shares)
    engine.retry_failed("proj-7", treasury)

Each workflow step runs under the project's lock from the settlement store,
so two distributions of one project can never interleave.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Sequence

from agritrust.audit.ledger import AuditLedger
from agritrust.core.exceptions import (
    ConfigurationError,
    CurrencyMismatchError,
    DistributionAlreadyCompleteError,
    StateTransitionError,
)
from agritrust.core.identity import Identity, Role
from agritrust.core.money import Money, Number
from agritrust.runtime.config import SettlementConfig
from agritrust.settlement.distribution import DistributionExecutor
from agritrust.settlement.models import (
    ContributorShare,
    SettlementRecord,
    SettlementState,
    VerificationResult,
    WaterfallResult,
)
from agritrust.settlement.store import SettlementStore
from agritrust.settlement.submission import ProofSubmission
from agritrust.settlement.verification import ReviewHook, Verification
from agritrust.settlement.waterfall import compute_waterfall, profit_distribution_preview
from agritrust.storage.documents import DocumentStore
from agritrust.transfers.ledger import ValueTransferLedger

logger = logging.getLogger(__name__)

_DISTRIBUTION_SOURCES = frozenset({Role.TREASURY, Role.PLATFORM})


class SettlementEngine:
    """
    Wires proof submission, verification, the waterfall and the
    distribution executor around one store and one set of collaborators.
    """

    def __init__(
        self,
        store:     SettlementStore,
        documents: DocumentStore,
        audit:     AuditLedger,
        transfers: ValueTransferLedger,
        config:    Optional[SettlementConfig] = None,
    ) -> None:
        self.store     = store
        self.documents = documents
        self.audit     = audit
        self.transfers = transfers
        self.config    = config or SettlementConfig()

        self.submission = ProofSubmission(
            store, documents, audit,
            document_timeout= self.config.document_timeout,
            audit_timeout=    self.config.audit_timeout,
        )
        self.verification = Verification(
            store, documents, audit,
            document_timeout= self.config.document_timeout,
            audit_timeout=    self.config.audit_timeout,
        )
        self.executor = DistributionExecutor(
            store, transfers, audit, documents,
            platform_fee_mode=  self.config.platform_fee_mode,
            transfer_timeout=   self.config.transfer_timeout,
            audit_timeout=      self.config.audit_timeout,
            document_timeout=   self.config.document_timeout,
            max_payload_bytes=  self.config.max_payload_bytes,
            parallel_transfers= self.config.parallel_transfers,
            max_workers=        self.config.max_transfer_workers,
        )

    # ── Workflow ──────────────────────────────────────────────

    def submit_proof(
        self,
        operator:         Identity,
        project_id:       str,
        reported_revenue: Money,
        evidence:         bytes,
        declared_digest:  Optional[str] = None,
    ) -> SettlementRecord:
        self._check_asset(reported_revenue)
        return self.submission.submit(
            operator, project_id, reported_revenue, evidence,
            declared_digest=declared_digest,
        )

    def verify_proof(
        self,
        verifier:           Identity,
        project_id:         str,
        reported_revenue:   Optional[Money] = None,
        evidence_reference: Optional[str] = None,
        evidence_digest:    Optional[str] = None,
        review:             Optional[ReviewHook] = None,
    ) -> VerificationResult:
        with self.store.lock(project_id):
            preview = None
            record  = self.store.current(project_id)
            if (
                self.config.attach_profit_preview
                and record is not None
                and record.reported_revenue is not None
            ):
                preview = profit_distribution_preview(
                    self.compute_waterfall(record.reported_revenue)
                )
            return self.verification.verify(
                verifier, project_id,
                reported_revenue=    reported_revenue,
                evidence_reference=  evidence_reference,
                submitted_digest=    evidence_digest,
                review=              review,
                profit_distribution= preview,
            )

    def compute_waterfall(
        self,
        verified_revenue:          Money,
        contributor_shares:        Sequence[ContributorShare] = (),
        platform_fee_percentage:   Optional[Number] = None,
        operator_share_percentage: Optional[Number] = None,
    ) -> WaterfallResult:
        """Waterfall with the configured percentages unless overridden."""
        self._check_asset(verified_revenue)
        return compute_waterfall(
            verified_revenue,
            self.config.platform_fee_percentage
            if platform_fee_percentage is None else platform_fee_percentage,
            self.config.operator_share_percentage
            if operator_share_percentage is None else operator_share_percentage,
            contributor_shares,
            precision=self.config.precision,
        )

    def distribute(
        self,
        project_id:   str,
        treasury:     Identity,
        contributors: Optional[Sequence[ContributorShare]] = None,
        platform:     Optional[Identity] = None,
        cancel:       Optional[threading.Event] = None,
        parallel:     Optional[bool] = None,
    ) -> SettlementRecord:
        """
        Pay out a verified settlement, or resume an interrupted payout.

        contributors is required for a fresh distribution (may be empty)
        and ignored on resume, where the stored waterfall is reused.

        Raises:
            DistributionAlreadyCompleteError  already paid out; nothing is transferred
            StateTransitionError              not verified
            ConfigurationError                bad shares, source or platform identity
            TransientIOError                  audit or store unavailable mid-run
        """
        self._check_source(treasury)
        with self.store.lock(project_id):
            record = self.store.current(project_id)
            if record is None:
                raise StateTransitionError(
                    "project has no settlement", {"project_id": project_id}
                )
            if record.state == SettlementState.DISTRIBUTION_COMPLETE:
                raise DistributionAlreadyCompleteError(
                    "settlement already distributed",
                    {"project_id": project_id, "settlement_id": record.settlement_id},
                )

            if record.state == SettlementState.VERIFIED:
                if contributors is None:
                    raise ConfigurationError(
                        "contributors are required to distribute a verified settlement",
                        {"project_id": project_id},
                    )
                record.set_distribution(
                    self.compute_waterfall(record.reported_revenue, contributors)
                )
            elif record.state != SettlementState.DISTRIBUTION_IN_PROGRESS:
                raise StateTransitionError(
                    f"cannot distribute a settlement in state {record.state.value}",
                    {"project_id": project_id, "settlement_id": record.settlement_id},
                )

            return self.executor.execute(
                record, treasury,
                platform= platform,
                cancel=   cancel,
                parallel= parallel,
            )

    def retry_failed(
        self,
        project_id:      str,
        treasury:        Identity,
        recipients:      Optional[Iterable[str]] = None,
        include_unknown: bool = False,
    ) -> SettlementRecord:
        """
        Re-attempt the failed payouts of a completed distribution.

        Only the latest failure per recipient is retried (all of them, or
        those named in recipients). A transfer that timed out or raised an
        unexpected error is skipped unless include_unknown is set, since the
        ledger may already have settled it. Attempts are appended to the
        same record's receipts.

        Raises:
            StateTransitionError  no settlement, or distribution not complete
            ConfigurationError    source is not a treasury or platform identity
            TransientIOError      audit or store unavailable
        """
        self._check_source(treasury)
        with self.store.lock(project_id):
            record = self.store.current(project_id)
            if record is None:
                raise StateTransitionError(
                    "project has no settlement", {"project_id": project_id}
                )
            self.executor.retry(
                record, treasury,
                recipients=      recipients,
                include_unknown= include_unknown,
            )
            return record

    # ── Reads ─────────────────────────────────────────────────

    def get_record(self, project_id: str) -> Optional[SettlementRecord]:
        return self.store.current(project_id)

    def get_settlement(self, settlement_id: str) -> Optional[SettlementRecord]:
        return self.store.get(settlement_id)

    def history(self, project_id: str) -> List[SettlementRecord]:
        return self.store.history(project_id)

    def get_settlement_stats(self) -> Dict[str, Any]:
        """Settlement counts by state."""
        records = self.store.all_records()
        stats: Dict[str, Any] = {
            "total":    len(records),
            "projects": len(self.store.projects()),
            "by_state": {},
        }
        for record in records:
            state = record.state.value
            stats["by_state"][state] = stats["by_state"].get(state, 0) + 1
        return stats

    def _check_asset(self, amount: Money) -> None:
        if isinstance(amount, Money) and amount.asset != self.config.asset_code:
            raise CurrencyMismatchError(
                "amount is not in the settlement asset",
                {"expected": self.config.asset_code, "got": amount.asset},
            )

    @staticmethod
    def _check_source(source: Identity) -> None:
        if source.role not in _DISTRIBUTION_SOURCES:
            raise ConfigurationError(
                "distribution source must be a treasury or platform identity",
                {"role": source.role.value},
            )
