"""
Proof submission.

An operator submits revenue evidence for a project:

    1. digest the raw bytes (refuse if a declared digest disagrees)
    2. put + pin the bytes in the document store
    3. audit record "settlement_proof", signed by the operator
    4. record → proof_submitted

Step 2 finishes before step 3 starts. A failure in 2 or 3 leaves the
record in no_proof, and the next submission picks the same record up again.
"""

import logging
from typing import Optional

from agritrust.audit.ledger import AuditLedger
from agritrust.core.crypto import EVIDENCE_DIGEST_ALGORITHM, evidence_digest
from agritrust.core.exceptions import (
    ConfigurationError,
    IntegrityError,
    SeparationOfDutiesError,
    StateTransitionError,
)
from agritrust.core.identity import Identity, Role
from agritrust.core.io import call_with_timeout
from agritrust.core.models import RecordType
from agritrust.core.money import Money, format_amount
from agritrust.core.time import utc_timestamp
from agritrust.settlement.models import SettlementRecord, SettlementState
from agritrust.settlement.store import SettlementStore
from agritrust.storage.documents import DocumentStore

logger = logging.getLogger(__name__)

# A project may open a new revenue event only from these states.
_REOPENABLE = frozenset({
    SettlementState.REJECTED,
    SettlementState.DISTRIBUTION_COMPLETE,
})


class ProofSubmission:

    def __init__(
        self,
        store:            SettlementStore,
        documents:        DocumentStore,
        audit:            AuditLedger,
        document_timeout: Optional[float] = None,
        audit_timeout:    Optional[float] = None,
    ) -> None:
        self.store            = store
        self.documents        = documents
        self.audit            = audit
        self.document_timeout = document_timeout
        self.audit_timeout    = audit_timeout

    def submit(
        self,
        operator:         Identity,
        project_id:       str,
        reported_revenue: Money,
        evidence:         bytes,
        declared_digest:  Optional[str] = None,
    ) -> SettlementRecord:
        """
        Returns the record in proof_submitted.

        Raises:
            IntegrityError           declared_digest does not match evidence
            SeparationOfDutiesError  submitter is not an operator
            StateTransitionError     project has a settlement in flight
            TransientIOError         document store or audit ledger unavailable
        """
        if operator.role != Role.OPERATOR:
            raise SeparationOfDutiesError(
                "proof must be submitted by an operator",
                {"role": operator.role.value, "address": operator.address},
            )
        operator.signing_key()
        if not isinstance(project_id, str) or not project_id:
            raise ConfigurationError("project_id must be a non-empty string")
        if not isinstance(reported_revenue, Money):
            raise ConfigurationError(
                f"reported_revenue must be Money, got {type(reported_revenue).__name__}"
            )
        if reported_revenue.amount < 0:
            raise ConfigurationError(
                "reported revenue must not be negative",
                {"reported_revenue": str(reported_revenue)},
            )
        if not isinstance(evidence, (bytes, bytearray)) or not evidence:
            raise ConfigurationError("evidence must be non-empty bytes")

        digest = evidence_digest(bytes(evidence))
        if declared_digest is not None and declared_digest.lower() != digest:
            raise IntegrityError(
                "declared evidence digest does not match evidence bytes",
                {"expected": declared_digest, "actual": digest},
            )

        with self.store.lock(project_id):
            record = self._open_record(project_id, operator)

            reference = call_with_timeout(
                "document put", self.documents.put, bytes(evidence),
                timeout=self.document_timeout,
            )
            call_with_timeout(
                "document pin", self.documents.pin, reference,
                timeout=self.document_timeout,
            )

            payload = {
                "dataType":          RecordType.SETTLEMENT_PROOF,
                "projectId":         project_id,
                "settlementId":      record.settlement_id,
                "reportedRevenue":   format_amount(reported_revenue.amount),
                "revenueCurrency":   reported_revenue.asset,
                "evidenceReference": reference,
                "evidenceDigest":    digest,
                "digestAlgorithm":   EVIDENCE_DIGEST_ALGORITHM,
                "operatorAddress":   operator.address,
                "timestamp":         utc_timestamp(),
            }
            receipt = call_with_timeout(
                "audit record", self.audit.record, operator, payload,
                timeout=self.audit_timeout,
            )

            record.reported_revenue   = reported_revenue
            record.evidence_reference = reference
            record.evidence_digest    = digest
            record.digest_algorithm   = EVIDENCE_DIGEST_ALGORITHM
            record.audit_receipts.append(receipt)
            record.transition_to(SettlementState.PROOF_SUBMITTED)
            self.store.save(record)

        logger.info(
            "proof submitted project=%s settlement=%s revenue=%s",
            project_id, record.settlement_id, reported_revenue,
        )
        return record

    def _open_record(self, project_id: str, operator: Identity) -> SettlementRecord:
        current = self.store.current(project_id)

        if current is not None and current.state == SettlementState.NO_PROOF:
            if current.operator_id != operator.address:
                current.operator_id = operator.address
                self.store.save(current)
            return current

        if current is not None and current.state not in _REOPENABLE:
            raise StateTransitionError(
                f"project already has a settlement in state {current.state.value}",
                {"project_id": project_id, "settlement_id": current.settlement_id},
            )

        record = SettlementRecord.new(project_id, operator.address)
        self.store.save(record)
        logger.debug("opened settlement %s for project %s", record.settlement_id, project_id)
        return record
