"""
Distribution executor.

Pays out a computed waterfall from a source (treasury) identity:

    1. record → distribution_in_progress, persisted
    2. transfers in fixed order: operator, contributors as listed, then the
       platform fee when platform_fee_mode is "transfer"
    3. each outcome (success / failure / skipped) is appended and persisted
       as soon as it is known; a failed transfer never stops the run
    4. signed "settlement_distribution_complete" summary in the audit ledger
    5. record → distribution_complete, persisted

Recorded receipts always form a prefix of the transfer plan. A record found
in distribution_in_progress resumes after that prefix, so nobody is paid twice.

Once complete, failed transfers can be retried; each attempt is appended
after the plan with retry_of pointing at the failure it re-attempts.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from agritrust.audit.ledger import DEFAULT_MAX_PAYLOAD_BYTES, AuditLedger
from agritrust.core.canonical import canonical_size, canonicalize
from agritrust.core.crypto import EVIDENCE_DIGEST_ALGORITHM, evidence_digest
from agritrust.core.exceptions import (
    ConfigurationError,
    StateTransitionError,
    TransferError,
    TransientIOError,
)
from agritrust.core.identity import Identity, Role
from agritrust.core.io import call_with_timeout
from agritrust.core.models import RecordType
from agritrust.core.money import Money, format_amount
from agritrust.core.time import utc_timestamp
from agritrust.settlement.models import (
    DistributionReceipt,
    PlatformFeeMode,
    SettlementRecord,
    SettlementState,
    TransferOutcome,
)
from agritrust.settlement.store import SettlementStore
from agritrust.storage.documents import DocumentStore
from agritrust.transfers.ledger import ValueTransferLedger

logger = logging.getLogger(__name__)

# Error prefix of a failed transfer the ledger may nevertheless have settled.
UNKNOWN_OUTCOME = "ledger outcome unknown"


@dataclass(frozen=True)
class PlannedTransfer:
    recipient: str
    role:      Role
    amount:    Money


class DistributionExecutor:

    def __init__(
        self,
        store:              SettlementStore,
        transfers:          ValueTransferLedger,
        audit:              AuditLedger,
        documents:          DocumentStore,
        platform_fee_mode:  PlatformFeeMode = PlatformFeeMode.RETAIN,
        transfer_timeout:   Optional[float] = None,
        audit_timeout:      Optional[float] = None,
        document_timeout:   Optional[float] = None,
        max_payload_bytes:  int = DEFAULT_MAX_PAYLOAD_BYTES,
        parallel_transfers: bool = False,
        max_workers:        int = 8,
    ) -> None:
        self.store              = store
        self.transfers          = transfers
        self.audit              = audit
        self.documents          = documents
        self.platform_fee_mode  = PlatformFeeMode(platform_fee_mode)
        self.transfer_timeout   = transfer_timeout
        self.audit_timeout      = audit_timeout
        self.document_timeout   = document_timeout
        self.max_payload_bytes  = max_payload_bytes
        self.parallel_transfers = parallel_transfers
        self.max_workers        = max_workers

    # ── Planning ──────────────────────────────────────────────

    def plan(
        self,
        record:   SettlementRecord,
        platform: Optional[Identity] = None,
    ) -> List[PlannedTransfer]:
        """Transfers in execution order. Zero amounts are kept and later skipped."""
        result = record.distribution
        if result is None:
            raise StateTransitionError(
                "settlement has no computed distribution",
                {"settlement_id": record.settlement_id},
            )

        planned = [PlannedTransfer(record.operator_id, Role.OPERATOR, result.operator_payout)]
        planned.extend(
            PlannedTransfer(p.address, Role.CONTRIBUTOR, p.amount)
            for p in result.contributor_payouts
        )
        if self.platform_fee_mode == PlatformFeeMode.TRANSFER:
            if platform is None:
                raise ConfigurationError(
                    "platform identity required when platform_fee_mode is 'transfer'"
                )
            planned.append(PlannedTransfer(platform.address, Role.PLATFORM, result.platform_fee))
        return planned

    # ── Execution ─────────────────────────────────────────────

    def execute(
        self,
        record:   SettlementRecord,
        source:   Identity,
        platform: Optional[Identity] = None,
        cancel:   Optional[threading.Event] = None,
        parallel: Optional[bool] = None,
    ) -> SettlementRecord:
        """
        Run (or resume) the distribution of a verified record.

        The caller holds the project lock and has set record.distribution.

        Raises:
            StateTransitionError  record is neither verified nor in progress
            ConfigurationError    missing platform identity in transfer mode
            TransientIOError      audit ledger or store unavailable; the record
                                  stays distribution_in_progress and can resume
        """
        source.signing_key()
        planned = self.plan(record, platform)
        done    = self._check_prefix(record, planned)

        if record.state == SettlementState.VERIFIED:
            record.transition_to(SettlementState.DISTRIBUTION_IN_PROGRESS)
            self.store.save(record)
            logger.info(
                "distribution started project=%s settlement=%s transfers=%d",
                record.project_id, record.settlement_id, len(planned),
            )
        elif record.state == SettlementState.DISTRIBUTION_IN_PROGRESS:
            logger.info(
                "distribution resumed project=%s settlement=%s done=%d/%d",
                record.project_id, record.settlement_id, done, len(planned),
            )
        else:
            raise StateTransitionError(
                f"cannot distribute in state {record.state.value}",
                {"settlement_id": record.settlement_id},
            )

        pending = planned[done:]
        use_pool = self.parallel_transfers if parallel is None else parallel
        if use_pool and len(pending) > 1:
            self._run_parallel(record, source, pending, cancel)
        else:
            self._run_sequential(record, source, pending, cancel)

        payload = self._summary_payload(record, source)
        receipt = call_with_timeout(
            "audit record", self.audit.record, source, payload,
            timeout=self.audit_timeout,
        )
        record.audit_receipts.append(receipt)
        record.transition_to(SettlementState.DISTRIBUTION_COMPLETE)
        self.store.save(record)

        counts = _outcome_counts(record.distribution_receipts)
        logger.info(
            "distribution complete project=%s settlement=%s success=%d failure=%d skipped=%d",
            record.project_id, record.settlement_id,
            counts["success"], counts["failure"], counts["skipped"],
        )
        if not record.distribution.leftover.is_zero():
            logger.warning(
                "leftover %s retained by %s for settlement %s",
                record.distribution.leftover, source.label, record.settlement_id,
            )
        return record

    def _run_sequential(
        self,
        record:  SettlementRecord,
        source:  Identity,
        pending: List[PlannedTransfer],
        cancel:  Optional[threading.Event],
    ) -> None:
        for item in pending:
            self._append(record, self._pay(source, item, cancel))

    def _run_parallel(
        self,
        record:  SettlementRecord,
        source:  Identity,
        pending: List[PlannedTransfer],
        cancel:  Optional[threading.Event],
    ) -> None:
        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(pending)),
            thread_name_prefix="agritrust-transfer",
        ) as pool:
            futures = [pool.submit(self._pay, source, item, cancel) for item in pending]

            # Outcomes are appended in plan order so receipts stay a prefix.
            for future in futures:
                self._append(record, future.result())

    def _pay(
        self,
        source: Identity,
        item:   PlannedTransfer,
        cancel: Optional[threading.Event] = None,
    ) -> DistributionReceipt:
        if not item.amount.is_positive():
            return _skipped(item, "zero payout")
        # Checked by the worker itself, so queued pool jobs see a late cancel.
        if cancel is not None and cancel.is_set():
            return _skipped(item, "cancelled before submission")
        try:
            receipt = call_with_timeout(
                f"transfer to {item.recipient}",
                self.transfers.transfer, source, item.recipient, item.amount,
                timeout=self.transfer_timeout,
            )
        except TransientIOError as exc:
            return self._failed(item, f"{UNKNOWN_OUTCOME}: {exc}")
        except TransferError as exc:
            return self._failed(item, f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            # Adapter raised outside the taxonomy; the transfer may have settled.
            return self._failed(item, f"{UNKNOWN_OUTCOME}: {type(exc).__name__}: {exc}")

        logger.info("paid %s %s (%s)", item.role.value, item.recipient, item.amount)
        return DistributionReceipt(
            recipient= item.recipient,
            role=      item.role,
            amount=    item.amount,
            outcome=   TransferOutcome.SUCCESS,
            receipt=   receipt.to_dict(),
        )

    @staticmethod
    def _failed(item: PlannedTransfer, error: str) -> DistributionReceipt:
        logger.warning(
            "transfer to %s %s failed: %s", item.role.value, item.recipient, error
        )
        return DistributionReceipt(
            recipient= item.recipient,
            role=      item.role,
            amount=    item.amount,
            outcome=   TransferOutcome.FAILURE,
            error=     error,
        )

    def _append(self, record: SettlementRecord, outcome: DistributionReceipt) -> None:
        record.distribution_receipts.append(outcome)
        self.store.save(record)

    # ── Retry ─────────────────────────────────────────────────

    def retriable(
        self,
        record:          SettlementRecord,
        recipients:      Optional[Iterable[str]] = None,
        include_unknown: bool = False,
    ) -> List[Tuple[int, DistributionReceipt]]:
        """
        (index, receipt) of the latest failed attempt per recipient.

        A failure whose ledger outcome is unknown is only returned with
        include_unknown: that transfer may already have settled.
        """
        latest: Dict[Tuple[str, Role], int] = {}
        for index, receipt in enumerate(record.distribution_receipts):
            latest[(receipt.recipient, receipt.role)] = index

        wanted = None if recipients is None else set(recipients)
        found  = []
        for index in sorted(latest.values()):
            receipt = record.distribution_receipts[index]
            if receipt.outcome != TransferOutcome.FAILURE:
                continue
            if wanted is not None and receipt.recipient not in wanted:
                continue
            if _outcome_unknown(receipt) and not include_unknown:
                continue
            found.append((index, receipt))
        return found

    def retry(
        self,
        record:          SettlementRecord,
        source:          Identity,
        recipients:      Optional[Iterable[str]] = None,
        include_unknown: bool = False,
    ) -> List[DistributionReceipt]:
        """
        Re-attempt the failed transfers of a completed distribution.

        Each attempt is appended to the record's receipts with retry_of set
        to the failure it re-attempts, then one signed
        "settlement_distribution_retry" record lists the attempts. Succeeded
        transfers are never attempted again.

        The caller holds the project lock.

        Raises:
            StateTransitionError  distribution has not completed
            TransientIOError      audit ledger or store unavailable; the
                                  attempts already made stay recorded
        """
        if record.state != SettlementState.DISTRIBUTION_COMPLETE:
            raise StateTransitionError(
                f"cannot retry transfers in state {record.state.value}",
                {"settlement_id": record.settlement_id},
            )
        source.signing_key()

        targets = self.retriable(record, recipients, include_unknown)
        if not targets:
            logger.info("no failed transfers to retry for settlement %s", record.settlement_id)
            return []

        attempts = []
        for index, failed in targets:
            item    = PlannedTransfer(failed.recipient, failed.role, failed.amount)
            outcome = replace(self._pay(source, item), retry_of=index)
            self._append(record, outcome)
            attempts.append(outcome)

        payload = self._retry_payload(record, source, attempts)
        receipt = call_with_timeout(
            "audit record", self.audit.record, source, payload,
            timeout=self.audit_timeout,
        )
        record.audit_receipts.append(receipt)
        self.store.save(record)

        counts = _outcome_counts(attempts)
        logger.info(
            "retried %d transfer(s) project=%s settlement=%s success=%d failure=%d",
            len(attempts), record.project_id, record.settlement_id,
            counts["success"], counts["failure"],
        )
        return attempts

    # ── Summary ───────────────────────────────────────────────

    def _summary_payload(self, record: SettlementRecord, source: Identity) -> Dict[str, Any]:
        result   = record.distribution
        outcomes = [_outcome_entry(r) for r in record.distribution_receipts]
        counts   = _outcome_counts(record.distribution_receipts)

        payload: Dict[str, Any] = {
            "dataType":               RecordType.DISTRIBUTION_COMPLETE,
            "projectId":              record.project_id,
            "settlementId":           record.settlement_id,
            "totalRevenue":           format_amount(result.revenue.amount),
            "currency":               result.asset,
            "platformFee":            format_amount(result.platform_fee.amount),
            "platformFeeMode":        self.platform_fee_mode.value,
            "operatorPayout":         format_amount(result.operator_payout.amount),
            "totalContributorPayout": format_amount(result.total_contributor_payout.amount),
            "leftover":               format_amount(result.leftover.amount),
            "distributionSource":     source.address,
            "successCount":           counts["success"],
            "failureCount":           counts["failure"],
            "skippedCount":           counts["skipped"],
            "perRecipientOutcomes":   outcomes,
            "timestamp":              utc_timestamp(),
        }
        return self._fit_payload(record, payload, "perRecipientOutcomes")

    def _retry_payload(
        self,
        record:   SettlementRecord,
        source:   Identity,
        attempts: List[DistributionReceipt],
    ) -> Dict[str, Any]:
        counts  = _outcome_counts(attempts)
        payload: Dict[str, Any] = {
            "dataType":           RecordType.DISTRIBUTION_RETRY,
            "projectId":          record.project_id,
            "settlementId":       record.settlement_id,
            "currency":           record.distribution.asset,
            "distributionSource": source.address,
            "successCount":       counts["success"],
            "failureCount":       counts["failure"],
            "retriedOutcomes":    [
                dict(_outcome_entry(r), retryOf=r.retry_of) for r in attempts
            ],
            "timestamp":          utc_timestamp(),
        }
        return self._fit_payload(record, payload, "retriedOutcomes")

    def _fit_payload(
        self,
        record:  SettlementRecord,
        payload: Dict[str, Any],
        field:   str,
    ) -> Dict[str, Any]:
        if canonical_size(payload) <= self.max_payload_bytes:
            return payload

        # Too large for one audit record: park the outcome list in the
        # document store and reference it by address and digest.
        document  = canonicalize({"settlementId": record.settlement_id, "outcomes": payload[field]})
        reference = call_with_timeout(
            "document put", self.documents.put, document,
            timeout=self.document_timeout,
        )
        call_with_timeout(
            "document pin", self.documents.pin, reference,
            timeout=self.document_timeout,
        )
        del payload[field]
        payload[f"{field}Reference"] = reference
        payload[f"{field}Digest"]    = evidence_digest(document)
        payload["digestAlgorithm"]   = EVIDENCE_DIGEST_ALGORITHM
        logger.info(
            "distribution outcomes for %s stored out of band at %s",
            record.settlement_id, reference,
        )
        return payload

    @staticmethod
    def _check_prefix(record: SettlementRecord, planned: List[PlannedTransfer]) -> int:
        done = record.distribution_receipts
        if len(done) > len(planned):
            raise StateTransitionError(
                "more distribution receipts than planned transfers",
                {"settlement_id": record.settlement_id},
            )
        for receipt, item in zip(done, planned):
            if (receipt.recipient, receipt.role, receipt.amount) != (
                item.recipient, item.role, item.amount,
            ):
                raise StateTransitionError(
                    "recorded receipts do not match the transfer plan",
                    {"settlement_id": record.settlement_id, "recipient": receipt.recipient},
                )
        return len(done)


def _skipped(item: PlannedTransfer, reason: str) -> DistributionReceipt:
    logger.warning("transfer to %s %s skipped: %s", item.role.value, item.recipient, reason)
    return DistributionReceipt(
        recipient= item.recipient,
        role=      item.role,
        amount=    item.amount,
        outcome=   TransferOutcome.SKIPPED,
        error=     reason,
    )


def _outcome_entry(receipt: DistributionReceipt) -> Dict[str, Any]:
    return {
        "recipient": receipt.recipient,
        "role":      receipt.role.value,
        "amount":    format_amount(receipt.amount.amount),
        "outcome":   receipt.outcome.value,
        "txId":      receipt.receipt.get("tx_id") if receipt.receipt else None,
        "error":     receipt.error,
    }


def _outcome_counts(receipts: List[DistributionReceipt]) -> Dict[str, int]:
    counts = {o.value: 0 for o in TransferOutcome}
    for r in receipts:
        counts[r.outcome.value] += 1
    return counts


def _outcome_unknown(receipt: DistributionReceipt) -> bool:
    return bool(receipt.error) and receipt.error.startswith(UNKNOWN_OUTCOME)
