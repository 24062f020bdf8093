"""
tests/test_distribution.py

Distribution of a verified settlement.

  PAYOUT    balances after a run match the waterfall exactly
  ISOLATION one failed transfer never stops the others
  ONCE      a settlement is paid out at most once, across retries and resumes
  RETRY     failed payouts are re-attempted on the same record, successes never
  SUMMARY   every run ends in one signed summary record
"""

import json
import threading

import pytest

from agritrust.core.crypto import evidence_digest
from agritrust.core.exceptions import (
    ConfigurationError,
    DestinationNotProvisionedError,
    DistributionAlreadyCompleteError,
    InsufficientBalanceError,
    StateTransitionError,
    TransientIOError,
)
from agritrust.core.identity import Role
from agritrust.core.models import RecordType
from agritrust.settlement.models import ContributorShare, SettlementState, TransferOutcome

from helpers.settlement_doubles import EVIDENCE, PROJECT, FlakyAuditLedger, ProcessKilled, rl


def outcomes(record):
    return [(r.recipient, r.outcome) for r in record.distribution_receipts]


# ─────────────────────────────────────────────────────────────
# PAYOUT
# ─────────────────────────────────────────────────────────────

class TestPayout:

    def test_balances_match_waterfall(
        self, engine, verified, operator, treasury, contributors, transfers,
    ):
        verified()

        record = engine.distribute(PROJECT, treasury, contributors)

        assert record.state == SettlementState.DISTRIBUTION_COMPLETE
        assert transfers.balance_of(operator.address, "RLUSD") == rl("18720")
        assert transfers.balance_of("rInvestorA", "RLUSD") == rl("16848")
        assert transfers.balance_of("rInvestorB", "RLUSD") == rl("11232")
        # platform fee is retained by the treasury
        assert transfers.balance_of(treasury.address, "RLUSD") == rl("953200")

    def test_transfer_order(self, engine, verified, operator, treasury, contributors, transfers):
        verified()
        engine.distribute(PROJECT, treasury, contributors)
        assert transfers.calls == [operator.address, "rInvestorA", "rInvestorB"]

    def test_receipts_carry_ledger_tx_ids(self, engine, verified, treasury, contributors, transfers):
        verified()
        record = engine.distribute(PROJECT, treasury, contributors)

        tx_ids = [r.receipt["tx_id"] for r in record.distribution_receipts]
        assert tx_ids == [r.tx_id for r in transfers.receipts]
        assert all(r.role in (Role.OPERATOR, Role.CONTRIBUTOR) for r in record.distribution_receipts)

    def test_distribution_persisted(self, engine, verified, treasury, contributors, store):
        verified()
        engine.distribute(PROJECT, treasury, contributors)

        stored = store.current(PROJECT)
        assert stored.state == SettlementState.DISTRIBUTION_COMPLETE
        assert stored.distribution.operator_payout == rl("18720")
        assert len(stored.distribution_receipts) == 3

    def test_platform_fee_transferred_last(
        self, make_engine, verified, treasury, platform, contributors, transfers,
    ):
        engine = make_engine(platform_fee_mode="transfer")
        verified(eng=engine)

        record = engine.distribute(PROJECT, treasury, contributors, platform=platform)

        assert record.distribution_receipts[-1].role == Role.PLATFORM
        assert transfers.calls[-1] == platform.address
        assert transfers.balance_of(platform.address, "RLUSD") == rl("11700")
        assert transfers.balance_of(treasury.address, "RLUSD") == rl("941500")

    def test_transfer_mode_requires_platform_identity(
        self, make_engine, verified, treasury, contributors, transfers,
    ):
        engine = make_engine(platform_fee_mode="transfer")
        verified(eng=engine)

        with pytest.raises(ConfigurationError):
            engine.distribute(PROJECT, treasury, contributors)
        assert transfers.calls == []
        assert engine.get_record(PROJECT).state == SettlementState.VERIFIED

    def test_zero_payout_skipped(self, make_engine, verified, operator, treasury, contributors, transfers):
        engine = make_engine(operator_share_percentage="0")
        verified(eng=engine)

        record = engine.distribute(PROJECT, treasury, contributors)

        first = record.distribution_receipts[0]
        assert first.recipient == operator.address
        assert first.outcome == TransferOutcome.SKIPPED
        assert first.error == "zero payout"
        assert operator.address not in transfers.calls

    def test_no_contributors_pool_retained(self, engine, verified, operator, treasury, transfers):
        verified()

        record = engine.distribute(PROJECT, treasury, contributors=[])

        assert outcomes(record) == [(operator.address, TransferOutcome.SUCCESS)]
        assert record.distribution.leftover == rl("28080")
        assert transfers.balance_of(treasury.address, "RLUSD") == rl("981280")

    def test_parallel_keeps_plan_order(
        self, engine, verified, operator, treasury, contributors, transfers,
    ):
        verified()
        transfers.delays[operator.address] = 0.2

        record = engine.distribute(PROJECT, treasury, contributors, parallel=True)

        assert [r.recipient for r in record.distribution_receipts] == [
            operator.address, "rInvestorA", "rInvestorB",
        ]
        assert all(r.outcome == TransferOutcome.SUCCESS for r in record.distribution_receipts)
        assert transfers.balance_of("rInvestorB", "RLUSD") == rl("11232")


# ─────────────────────────────────────────────────────────────
# ISOLATION
# ─────────────────────────────────────────────────────────────

class TestFailureIsolation:

    def test_failed_operator_transfer_does_not_stop_contributors(
        self, engine, verified, operator, treasury, contributors, transfers,
    ):
        verified()
        transfers.failures[operator.address] = InsufficientBalanceError("insufficient balance")

        record = engine.distribute(PROJECT, treasury, contributors)

        assert record.state == SettlementState.DISTRIBUTION_COMPLETE
        assert outcomes(record) == [
            (operator.address, TransferOutcome.FAILURE),
            ("rInvestorA", TransferOutcome.SUCCESS),
            ("rInvestorB", TransferOutcome.SUCCESS),
        ]
        assert record.distribution_receipts[0].error.startswith("InsufficientBalanceError")
        assert transfers.balance_of("rInvestorA", "RLUSD") == rl("16848")

    def test_unprovisioned_destination_recorded_as_failure(self, engine, verified, treasury, transfers):
        verified()
        shares = [
            ContributorShare(address="rInvestorA", share_percentage="0.5"),
            ContributorShare(address="rNoTrustline", share_percentage="0.5"),
        ]

        record = engine.distribute(PROJECT, treasury, shares)

        failed = record.distribution_receipts[2]
        assert failed.recipient == "rNoTrustline"
        assert failed.outcome == TransferOutcome.FAILURE
        assert DestinationNotProvisionedError.__name__ in failed.error

    def test_timed_out_transfer_reported_as_unknown(
        self, make_engine, verified, treasury, contributors, transfers,
    ):
        engine = make_engine(timeouts={"transfer": 0.05})
        verified(eng=engine)
        transfers.delays["rInvestorA"] = 0.5

        record = engine.distribute(PROJECT, treasury, contributors)

        timed_out = record.distribution_receipts[1]
        assert timed_out.outcome == TransferOutcome.FAILURE
        assert "outcome unknown" in timed_out.error
        assert record.distribution_receipts[2].outcome == TransferOutcome.SUCCESS

    @pytest.mark.parametrize("parallel", [False, True])
    def test_unexpected_ledger_error_does_not_stop_contributors(
        self, engine, verified, operator, treasury, contributors, transfers, parallel,
    ):
        verified()
        transfers.failures[operator.address] = ConnectionError("ledger node reset")

        record = engine.distribute(PROJECT, treasury, contributors, parallel=parallel)

        assert record.state == SettlementState.DISTRIBUTION_COMPLETE
        assert outcomes(record) == [
            (operator.address, TransferOutcome.FAILURE),
            ("rInvestorA", TransferOutcome.SUCCESS),
            ("rInvestorB", TransferOutcome.SUCCESS),
        ]
        assert record.distribution_receipts[0].error == (
            "ledger outcome unknown: ConnectionError: ledger node reset"
        )
        assert engine.get_record(PROJECT).distribution_receipts == record.distribution_receipts
        assert transfers.balance_of("rInvestorB", "RLUSD") == rl("11232")

    def test_cancelled_run_skips_everything(
        self, engine, verified, treasury, contributors, transfers,
    ):
        verified()
        cancel = threading.Event()
        cancel.set()

        record = engine.distribute(PROJECT, treasury, contributors, cancel=cancel)

        assert record.state == SettlementState.DISTRIBUTION_COMPLETE
        assert {r.outcome for r in record.distribution_receipts} == {TransferOutcome.SKIPPED}
        assert all(r.error == "cancelled before submission" for r in record.distribution_receipts)
        assert transfers.calls == []

    def test_cancel_after_first_transfer(
        self, engine, verified, operator, treasury, contributors, transfers,
    ):
        verified()
        cancel = threading.Event()
        original = transfers.transfer

        def transfer_then_cancel(source, destination, amount):
            receipt = original(source, destination, amount)
            cancel.set()
            return receipt

        transfers.transfer = transfer_then_cancel
        record = engine.distribute(PROJECT, treasury, contributors, cancel=cancel)

        assert outcomes(record) == [
            (operator.address, TransferOutcome.SUCCESS),
            ("rInvestorA", TransferOutcome.SKIPPED),
            ("rInvestorB", TransferOutcome.SKIPPED),
        ]

    def test_cancel_after_first_transfer_on_worker_pool(
        self, make_engine, verified, operator, treasury, contributors, transfers,
    ):
        engine = make_engine(parallel_transfers=True, max_transfer_workers=1)
        verified(eng=engine)
        cancel = threading.Event()
        original = transfers.transfer

        def transfer_then_cancel(source, destination, amount):
            receipt = original(source, destination, amount)
            cancel.set()
            return receipt

        transfers.transfer = transfer_then_cancel
        record = engine.distribute(PROJECT, treasury, contributors, cancel=cancel)

        assert outcomes(record) == [
            (operator.address, TransferOutcome.SUCCESS),
            ("rInvestorA", TransferOutcome.SKIPPED),
            ("rInvestorB", TransferOutcome.SKIPPED),
        ]
        assert transfers.balance_of("rInvestorA", "RLUSD") == rl("0")


# ─────────────────────────────────────────────────────────────
# ONCE
# ─────────────────────────────────────────────────────────────

class TestPaidOnce:

    def test_second_distribution_refused(self, engine, verified, treasury, contributors, transfers):
        verified()
        engine.distribute(PROJECT, treasury, contributors)
        calls = list(transfers.calls)

        with pytest.raises(DistributionAlreadyCompleteError):
            engine.distribute(PROJECT, treasury, contributors)
        assert transfers.calls == calls

    def test_resume_after_summary_failure_pays_nobody_again(
        self, make_engine, verified, treasury, contributors, transfers, audit,
    ):
        flaky  = FlakyAuditLedger(audit)
        engine = make_engine(audit=flaky)
        verified(eng=engine)

        flaky.fail = True
        with pytest.raises(TransientIOError):
            engine.distribute(PROJECT, treasury, contributors)

        pending = engine.get_record(PROJECT)
        assert pending.state == SettlementState.DISTRIBUTION_IN_PROGRESS
        assert len(pending.distribution_receipts) == 3
        calls = list(transfers.calls)

        flaky.fail = False
        record = engine.distribute(PROJECT, treasury)

        assert record.state == SettlementState.DISTRIBUTION_COMPLETE
        assert transfers.calls == calls
        assert transfers.balance_of("rInvestorA", "RLUSD") == rl("16848")

    def test_resume_after_crash_continues_from_prefix(
        self, engine, verified, operator, treasury, contributors, transfers,
    ):
        verified()
        transfers.failures["rInvestorB"] = ProcessKilled()

        with pytest.raises(ProcessKilled):
            engine.distribute(PROJECT, treasury, contributors)

        pending = engine.get_record(PROJECT)
        assert [r.recipient for r in pending.distribution_receipts] == [operator.address, "rInvestorA"]

        del transfers.failures["rInvestorB"]
        record = engine.distribute(PROJECT, treasury)

        assert [r.outcome for r in record.distribution_receipts] == [TransferOutcome.SUCCESS] * 3
        assert transfers.calls.count("rInvestorA") == 1
        assert transfers.balance_of("rInvestorB", "RLUSD") == rl("11232")

    def test_resume_ignores_new_contributor_list(
        self, engine, verified, treasury, contributors, transfers, audit,
    ):
        verified()
        transfers.failures["rInvestorB"] = ProcessKilled()
        with pytest.raises(ProcessKilled):
            engine.distribute(PROJECT, treasury, contributors)
        del transfers.failures["rInvestorB"]

        other = [ContributorShare(address="rSomeoneElse", share_percentage="1")]
        record = engine.distribute(PROJECT, treasury, other)

        assert [r.recipient for r in record.distribution_receipts][1:] == ["rInvestorA", "rInvestorB"]
        assert "rSomeoneElse" not in transfers.calls


# ─────────────────────────────────────────────────────────────
# RETRY
# ─────────────────────────────────────────────────────────────

class TestRetryFailed:

    @pytest.fixture
    def operator_failed(self, engine, verified, operator, treasury, contributors, transfers):
        verified()
        transfers.failures[operator.address] = InsufficientBalanceError("insufficient balance")
        engine.distribute(PROJECT, treasury, contributors)
        del transfers.failures[operator.address]

    def test_failed_operator_paid_on_retry(
        self, engine, operator_failed, operator, treasury, transfers,
    ):
        record = engine.retry_failed(PROJECT, treasury)

        assert record.state == SettlementState.DISTRIBUTION_COMPLETE
        retried = record.distribution_receipts[3]
        assert (retried.recipient, retried.outcome, retried.retry_of) == (
            operator.address, TransferOutcome.SUCCESS, 0,
        )
        assert transfers.balance_of(operator.address, "RLUSD") == rl("18720")
        assert transfers.calls.count("rInvestorA") == 1
        assert transfers.calls.count("rInvestorB") == 1
        assert transfers.balance_of("rInvestorA", "RLUSD") == rl("16848")
        assert engine.get_record(PROJECT).distribution_receipts == record.distribution_receipts

    def test_retry_signed_into_audit_ledger(self, engine, operator_failed, operator, treasury, audit):
        record = engine.retry_failed(PROJECT, treasury)

        entry = audit.read_all()[-1]
        assert entry.record_type == RecordType.DISTRIBUTION_RETRY
        assert entry.signer_id == treasury.address
        assert entry.payload["settlementId"] == record.settlement_id
        assert entry.payload["successCount"] == 1
        (outcome,) = entry.payload["retriedOutcomes"]
        assert (outcome["recipient"], outcome["outcome"], outcome["retryOf"]) == (
            operator.address, "success", 0,
        )
        assert record.audit_receipts[-1].record_id == entry.record_id
        assert audit.verify_chain()

    def test_second_retry_after_success_does_nothing(
        self, engine, operator_failed, treasury, transfers, audit,
    ):
        engine.retry_failed(PROJECT, treasury)
        calls, entries = list(transfers.calls), len(audit.read_all())

        record = engine.retry_failed(PROJECT, treasury)

        assert len(record.distribution_receipts) == 4
        assert transfers.calls == calls
        assert len(audit.read_all()) == entries

    def test_only_latest_failure_is_retried(
        self, engine, operator_failed, operator, treasury, transfers,
    ):
        transfers.failures[operator.address] = InsufficientBalanceError("insufficient balance")
        engine.retry_failed(PROJECT, treasury)
        del transfers.failures[operator.address]

        record = engine.retry_failed(PROJECT, treasury)

        assert [(r.outcome, r.retry_of) for r in record.distribution_receipts[3:]] == [
            (TransferOutcome.FAILURE, 0),
            (TransferOutcome.SUCCESS, 3),
        ]
        assert transfers.balance_of(operator.address, "RLUSD") == rl("18720")

    def test_recipient_filter(self, engine, verified, operator, treasury, contributors, transfers):
        verified()
        transfers.failures[operator.address] = InsufficientBalanceError("insufficient balance")
        transfers.failures["rInvestorB"]     = InsufficientBalanceError("insufficient balance")
        engine.distribute(PROJECT, treasury, contributors)
        transfers.failures.clear()

        record = engine.retry_failed(PROJECT, treasury, recipients=["rInvestorB"])

        assert [r.recipient for r in record.distribution_receipts[3:]] == ["rInvestorB"]
        assert transfers.balance_of(operator.address, "RLUSD") == rl("0")
        assert transfers.balance_of("rInvestorB", "RLUSD") == rl("11232")

    def test_unknown_outcome_needs_explicit_opt_in(
        self, engine, verified, operator, treasury, contributors, transfers,
    ):
        verified()
        transfers.failures[operator.address] = ConnectionError("ledger node reset")
        engine.distribute(PROJECT, treasury, contributors)
        del transfers.failures[operator.address]

        record = engine.retry_failed(PROJECT, treasury)
        assert len(record.distribution_receipts) == 3
        assert transfers.calls.count(operator.address) == 1

        record = engine.retry_failed(PROJECT, treasury, include_unknown=True)
        assert record.distribution_receipts[3].outcome == TransferOutcome.SUCCESS
        assert transfers.balance_of(operator.address, "RLUSD") == rl("18720")

    def test_retry_before_completion_refused(self, engine, verified, treasury, transfers):
        verified()
        with pytest.raises(StateTransitionError):
            engine.retry_failed(PROJECT, treasury)
        assert transfers.calls == []

    def test_retry_unknown_project_refused(self, engine, treasury):
        with pytest.raises(StateTransitionError):
            engine.retry_failed("proj-none", treasury)

    def test_retry_source_must_be_treasury_or_platform(self, engine, operator_failed, operator):
        with pytest.raises(ConfigurationError):
            engine.retry_failed(PROJECT, operator)

    def test_distribute_still_refused_after_retry(
        self, engine, operator_failed, treasury, contributors,
    ):
        engine.retry_failed(PROJECT, treasury)
        with pytest.raises(DistributionAlreadyCompleteError):
            engine.distribute(PROJECT, treasury, contributors)


class TestPreconditions:

    def test_unverified_settlement_refused(self, engine, operator, treasury, contributors):
        engine.submit_proof(operator, PROJECT, rl("58500"), EVIDENCE)
        with pytest.raises(StateTransitionError):
            engine.distribute(PROJECT, treasury, contributors)

    def test_unknown_project_refused(self, engine, treasury, contributors):
        with pytest.raises(StateTransitionError):
            engine.distribute("proj-unknown", treasury, contributors)

    def test_contributors_required_for_fresh_run(self, engine, verified, treasury):
        verified()
        with pytest.raises(ConfigurationError):
            engine.distribute(PROJECT, treasury)

    def test_source_must_be_treasury_or_platform(self, engine, verified, operator, contributors):
        verified()
        with pytest.raises(ConfigurationError):
            engine.distribute(PROJECT, operator, contributors)

    def test_bad_shares_refused_before_any_transfer(self, engine, verified, treasury, transfers):
        verified()
        shares = [ContributorShare(address="rInvestorA", share_percentage="0.7")]
        with pytest.raises(ConfigurationError):
            engine.distribute(PROJECT, treasury, shares)
        assert transfers.calls == []
        assert engine.get_record(PROJECT).state == SettlementState.VERIFIED


# ─────────────────────────────────────────────────────────────
# SUMMARY
# ─────────────────────────────────────────────────────────────

class TestSummaryRecord:

    def test_summary_signed_by_source(self, engine, verified, treasury, contributors, audit):
        verified()
        record = engine.distribute(PROJECT, treasury, contributors)

        summary = audit.read_all()[-1]
        assert summary.record_type == RecordType.DISTRIBUTION_COMPLETE
        assert summary.signer_id == treasury.address
        assert summary.payload["settlementId"] == record.settlement_id
        assert summary.payload["totalRevenue"] == "58500"
        assert summary.payload["platformFee"] == "11700.000000"
        assert summary.payload["platformFeeMode"] == "retain"
        assert summary.payload["successCount"] == 3
        assert summary.payload["failureCount"] == 0
        assert [o["recipient"] for o in summary.payload["perRecipientOutcomes"]] == [
            r.recipient for r in record.distribution_receipts
        ]
        assert record.audit_receipts[-1].record_id == summary.record_id

    def test_summary_counts_failures(self, engine, verified, operator, treasury, contributors, audit, transfers):
        verified()
        transfers.failures[operator.address] = InsufficientBalanceError("insufficient balance")
        engine.distribute(PROJECT, treasury, contributors)

        payload = audit.read_all()[-1].payload
        assert (payload["successCount"], payload["failureCount"], payload["skippedCount"]) == (2, 1, 0)
        assert payload["perRecipientOutcomes"][0]["txId"] is None

    def test_oversized_outcomes_stored_out_of_band(
        self, make_engine, verified, treasury, contributors, audit, documents,
    ):
        engine = make_engine(max_payload_bytes=256)
        verified(eng=engine)

        engine.distribute(PROJECT, treasury, contributors)

        payload = audit.read_all()[-1].payload
        assert "perRecipientOutcomes" not in payload
        reference = payload["perRecipientOutcomesReference"]
        stored = documents.get(reference)
        assert evidence_digest(stored) == payload["perRecipientOutcomesDigest"]
        assert documents.is_pinned(reference)
        assert [o["recipient"] for o in json.loads(stored)["outcomes"]][1:] == ["rInvestorA", "rInvestorB"]

    def test_stats_by_state(self, engine, verified, operator, treasury, contributors):
        verified()
        engine.distribute(PROJECT, treasury, contributors)
        engine.submit_proof(operator, "proj-maize-2", rl("1000"), EVIDENCE)

        stats = engine.get_settlement_stats()
        assert stats["total"] == 2
        assert stats["projects"] == 2
        assert stats["by_state"] == {"distribution_complete": 1, "proof_submitted": 1}
