"""
Verification of a submitted proof by an independent verifier (notary).

The verifier fetches the evidence by reference and recomputes its digest.
A mismatch is not an exception: it is recorded as a signed
"settlement_rejected" audit record and the settlement becomes rejected.
A match, optionally followed by an out-of-band review, yields a notarized
"settlement_proof" record carrying verificationDate and
adminVerifierAddress, and the settlement becomes verified.

In both outcomes the audit record is written before the state changes, so
an audit failure leaves the settlement in proof_submitted.
"""

import logging
from typing import Any, Callable, Dict, Optional

from agritrust.audit.ledger import AuditLedger
from agritrust.core.crypto import EVIDENCE_DIGEST_ALGORITHM, evidence_digest
from agritrust.core.exceptions import (
    ConfigurationError,
    SeparationOfDutiesError,
    StateTransitionError,
)
from agritrust.core.identity import Identity, Role
from agritrust.core.io import call_with_timeout
from agritrust.core.models import RecordType
from agritrust.core.money import Money, format_amount
from agritrust.core.time import utc_timestamp
from agritrust.settlement.models import (
    Rejection,
    ReviewDecision,
    SettlementRecord,
    SettlementState,
    VerificationResult,
)
from agritrust.settlement.store import SettlementStore
from agritrust.storage.documents import DocumentStore

logger = logging.getLogger(__name__)

ReviewHook = Callable[[SettlementRecord, bytes], ReviewDecision]


class Verification:

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

    def verify(
        self,
        verifier:            Identity,
        project_id:          str,
        reported_revenue:    Optional[Money] = None,
        evidence_reference:  Optional[str] = None,
        submitted_digest:    Optional[str] = None,
        review:              Optional[ReviewHook] = None,
        profit_distribution: Optional[Dict[str, Any]] = None,
    ) -> VerificationResult:
        """
        Verify the project's pending proof.

        Omitted inputs default to the submitted values; supplied ones must
        match them.

        Raises:
            SeparationOfDutiesError  verifier is not an independent verifier
            StateTransitionError     no proof awaiting verification
            ConfigurationError       supplied values differ from the submission
            TransientIOError         document store or audit ledger unavailable
        """
        if verifier.role != Role.VERIFIER:
            raise SeparationOfDutiesError(
                "verification requires a verifier identity",
                {"role": verifier.role.value, "address": verifier.address},
            )
        verifier.signing_key()

        with self.store.lock(project_id):
            record = self.store.current(project_id)
            if record is None or record.state != SettlementState.PROOF_SUBMITTED:
                raise StateTransitionError(
                    "no proof awaiting verification",
                    {
                        "project_id": project_id,
                        "state": record.state.value if record else None,
                    },
                )
            if verifier.address == record.operator_id:
                raise SeparationOfDutiesError(
                    "verifier must not be the submitting operator",
                    {"address": verifier.address},
                )
            self._check_inputs(record, reported_revenue, evidence_reference, submitted_digest)

            document = call_with_timeout(
                "document get", self.documents.get, record.evidence_reference,
                timeout=self.document_timeout,
            )
            recomputed = evidence_digest(document)

            if recomputed != record.evidence_digest:
                rejection = Rejection(
                    check=    "digest",
                    reason=   "evidence digest mismatch",
                    expected= record.evidence_digest,
                    actual=   recomputed,
                )
                return self._reject(record, verifier, recomputed, rejection)

            preview = profit_distribution
            if review is not None:
                decision = review(record, document)
                if not decision.accepted:
                    rejection = Rejection(
                        check=  "review",
                        reason= decision.reason or "rejected by review",
                    )
                    return self._reject(record, verifier, recomputed, rejection)
                if decision.profit_distribution is not None:
                    preview = decision.profit_distribution

            return self._accept(record, verifier, recomputed, preview)

    # ── Outcomes ──────────────────────────────────────────────

    def _accept(
        self,
        record:     SettlementRecord,
        verifier:   Identity,
        recomputed: str,
        preview:    Optional[Dict[str, Any]],
    ) -> VerificationResult:
        verified_at = utc_timestamp()
        payload = {
            "dataType":             RecordType.SETTLEMENT_PROOF,
            "projectId":            record.project_id,
            "settlementId":         record.settlement_id,
            "reportedRevenue":      format_amount(record.reported_revenue.amount),
            "revenueCurrency":      record.reported_revenue.asset,
            "evidenceReference":    record.evidence_reference,
            "evidenceDigest":       record.evidence_digest,
            "digestAlgorithm":      EVIDENCE_DIGEST_ALGORITHM,
            "operatorAddress":      record.operator_id,
            "verifiedDigest":       recomputed,
            "verificationDate":     verified_at,
            "adminVerifierAddress": verifier.address,
            "timestamp":            verified_at,
        }
        if preview is not None:
            payload["profitDistribution"] = preview

        receipt = call_with_timeout(
            "audit record", self.audit.record, verifier, payload,
            timeout=self.audit_timeout,
        )

        record.verified_digest             = recomputed
        record.verifier_id                 = verifier.address
        record.verification_timestamp      = verified_at
        record.profit_distribution_preview = preview
        record.audit_receipts.append(receipt)
        record.transition_to(SettlementState.VERIFIED)
        self.store.save(record)

        logger.info(
            "settlement verified project=%s settlement=%s verifier=%s",
            record.project_id, record.settlement_id, verifier.label,
        )
        return VerificationResult(
            settlement_id=   record.settlement_id,
            project_id=      record.project_id,
            state=           record.state,
            verified_digest= recomputed,
            audit_receipt=   receipt,
        )

    def _reject(
        self,
        record:     SettlementRecord,
        verifier:   Identity,
        recomputed: str,
        rejection:  Rejection,
    ) -> VerificationResult:
        rejected_at = utc_timestamp()
        payload = {
            "dataType":             RecordType.SETTLEMENT_REJECTED,
            "projectId":            record.project_id,
            "settlementId":         record.settlement_id,
            "check":                rejection.check,
            "reason":               rejection.reason,
            "expectedDigest":       record.evidence_digest,
            "actualDigest":         recomputed,
            "digestAlgorithm":      EVIDENCE_DIGEST_ALGORITHM,
            "evidenceReference":    record.evidence_reference,
            "adminVerifierAddress": verifier.address,
            "timestamp":            rejected_at,
        }
        receipt = call_with_timeout(
            "audit record", self.audit.record, verifier, payload,
            timeout=self.audit_timeout,
        )

        record.verified_digest        = recomputed
        record.verifier_id            = verifier.address
        record.verification_timestamp = rejected_at
        record.rejection              = rejection
        record.audit_receipts.append(receipt)
        record.transition_to(SettlementState.REJECTED)
        self.store.save(record)

        logger.warning(
            "settlement rejected project=%s settlement=%s check=%s reason=%s",
            record.project_id, record.settlement_id, rejection.check, rejection.reason,
        )
        return VerificationResult(
            settlement_id=   record.settlement_id,
            project_id=      record.project_id,
            state=           record.state,
            verified_digest= recomputed,
            audit_receipt=   receipt,
            rejection=       rejection,
        )

    @staticmethod
    def _check_inputs(
        record:             SettlementRecord,
        reported_revenue:   Optional[Money],
        evidence_reference: Optional[str],
        digest:             Optional[str],
    ) -> None:
        mismatches = {}
        if reported_revenue is not None and reported_revenue != record.reported_revenue:
            mismatches["reported_revenue"] = str(reported_revenue)
        if evidence_reference is not None and evidence_reference != record.evidence_reference:
            mismatches["evidence_reference"] = evidence_reference
        if digest is not None and digest.lower() != record.evidence_digest:
            mismatches["evidence_digest"] = digest
        # A caller value that disagrees with the stored submission is a bad
        # request about a different proof, not evidence that this proof's
        # document was tampered with. Only a recomputed digest that differs
        # from the stored one rejects the settlement.
        if mismatches:
            raise ConfigurationError(
                "verification inputs do not match the submitted proof", mismatches
            )
