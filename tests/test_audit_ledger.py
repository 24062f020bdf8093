"""
tests/test_audit_ledger.py

Audit ledger laws. If any test here fails, the audit trail can no longer
be trusted, whatever the settlement code above it does.

  SIGNING   any field change after signing invalidates the signature
  CHAIN     causal_hash binds each record to its full predecessor
  SCHEMA    malformed envelopes are refused or detected
  LEDGER    record() appends, restores and bounds payloads
  REPLAY    offline verification detects tampering, gaps and forgeries
"""

import hashlib
import json
import secrets
from pathlib import Path
from typing import List

import pytest

from agritrust.audit.ledger import AuditLedger
from agritrust.audit.replay import AuditReplay
from agritrust.core.canonical import canonicalize
from agritrust.core.crypto import Ed25519KeyManager
from agritrust.core.exceptions import PayloadTooLargeError, SignatureError
from agritrust.core.identity import Identity, Role
from agritrust.core.models import (
    GENESIS_HASH,
    AuditEnvelope,
    LedgerVersionError,
    RecordType,
)


@pytest.fixture
def key():
    return Ed25519KeyManager.generate()


@pytest.fixture
def key2():
    return Ed25519KeyManager.generate()


def proof_payload(project_id: str = "proj-1", **extra) -> dict:
    payload = {
        "dataType":        RecordType.SETTLEMENT_PROOF,
        "projectId":       project_id,
        "reportedRevenue": "58500",
        "revenueCurrency": "RLUSD",
    }
    payload.update(extra)
    return payload


def make_env(
    key: Ed25519KeyManager,
    sequence: int = 0,
    payload: dict = None,
    prev: AuditEnvelope = None,
    record_type: str = RecordType.SETTLEMENT_PROOF,
) -> AuditEnvelope:
    return AuditEnvelope.create(
        record_type=       record_type,
        signer_id=         key.public_key_hex,
        signer_public_key= key.public_key_hex,
        sequence=          sequence,
        payload=           payload if payload is not None else proof_payload(),
        prev=              prev,
    ).sign(key)


def make_chain(key: Ed25519KeyManager, n: int) -> List[AuditEnvelope]:
    chain, prev = [], None
    for i in range(n):
        env = make_env(key, sequence=i, payload=proof_payload(f"proj-{i % 3}"), prev=prev)
        chain.append(env)
        prev = env
    return chain


def write_ledger(envelopes: List[AuditEnvelope], path: Path) -> None:
    with open(path, "w", encoding="utf-8") as f:
        for env in envelopes:
            f.write(json.dumps(env.to_dict()) + "\n")


def replay(path: Path, project_id: str = None):
    engine = AuditReplay()
    engine.load(path)
    return engine.verify(project_id=project_id)


# ─────────────────────────────────────────────────────────────
# SIGNING
# ─────────────────────────────────────────────────────────────

class TestSigning:

    def test_signed_envelope_verifies(self, key):
        env = make_env(key)
        assert env.is_signed()
        assert env.verify_signature()

    def test_payload_change_breaks_signature(self, key):
        env = make_env(key)
        env.payload = proof_payload(reportedRevenue="99999")
        assert not env.verify_signature()

    def test_record_type_change_breaks_signature(self, key):
        env = make_env(key)
        env.record_type = RecordType.SETTLEMENT_REJECTED
        assert not env.verify_signature()

    def test_timestamp_change_breaks_signature(self, key):
        env = make_env(key)
        env.timestamp = "2000-01-01T00:00:00.000Z"
        assert not env.verify_signature()

    def test_signer_id_change_breaks_signature(self, key):
        env = make_env(key)
        env.signer_id = "rImpostor"
        assert not env.verify_signature()

    def test_nonce_change_breaks_signature(self, key):
        env = make_env(key)
        env.nonce = secrets.token_hex(16)
        assert not env.verify_signature()

    def test_sequence_change_breaks_signature(self, key):
        env = make_env(key, sequence=0)
        env.sequence = 7
        assert not env.verify_signature()

    def test_wrong_key_cannot_verify(self, key, key2):
        env = make_env(key)
        assert not env.verify_signature(key2.public_key_hex)

    def test_unsigned_envelope_fails(self, key):
        env = AuditEnvelope.create(
            record_type=       RecordType.SETTLEMENT_PROOF,
            signer_id=         "rOperator",
            signer_public_key= key.public_key_hex,
            sequence=          0,
            payload=           proof_payload(),
        )
        assert not env.is_signed()
        assert not env.verify_signature()


# ─────────────────────────────────────────────────────────────
# CHAIN
# ─────────────────────────────────────────────────────────────

class TestChain:

    def test_first_entry_links_to_genesis(self, key):
        assert make_env(key).causal_hash == GENESIS_HASH

    def test_second_entry_hashes_first_signing_surface(self, key):
        e0 = make_env(key, sequence=0)
        e1 = make_env(key, sequence=1, prev=e0)
        expected = hashlib.sha256(canonicalize(e0.signing_surface())).hexdigest()
        assert e1.causal_hash == expected

    def test_payload_mutation_in_prev_breaks_next(self, key):
        e0 = make_env(key, sequence=0)
        e1 = make_env(key, sequence=1, prev=e0)
        assert e1.verify_chain(e0)
        e0.payload = proof_payload(reportedRevenue="1")
        assert not e1.verify_chain(e0)

    def test_chain_of_n_verifies(self, key):
        chain = make_chain(key, 10)
        for i, env in enumerate(chain):
            assert env.verify_chain(chain[i - 1] if i else None)
            assert env.verify_signature()

    def test_signature_not_part_of_chain_surface(self, key):
        assert "signature" not in make_env(key).signing_surface()


# ─────────────────────────────────────────────────────────────
# SCHEMA
# ─────────────────────────────────────────────────────────────

class TestSchema:

    def test_unknown_record_type_rejected_by_create(self, key):
        with pytest.raises(ValueError, match="Invalid record_type"):
            make_env(key, record_type="wire_funds")

    def test_non_dict_payload_rejected(self, key):
        with pytest.raises(TypeError, match="payload must be dict"):
            AuditEnvelope.create(
                record_type=       RecordType.SETTLEMENT_PROOF,
                signer_id=         "rOperator",
                signer_public_key= key.public_key_hex,
                sequence=          0,
                payload=           "not a dict",
            )

    def test_negative_sequence_rejected(self, key):
        with pytest.raises(ValueError):
            make_env(key, sequence=-1)

    def test_malformed_nonce_detected(self, key):
        env = make_env(key)
        env.nonce = "short"
        result = env.validate_schema()
        assert not result
        assert any("nonce" in e for e in result.errors)

    def test_timestamp_without_z_detected(self, key):
        env = make_env(key)
        env.timestamp = "2026-02-25T12:00:00.000+00:00"
        assert not env.validate_schema()

    def test_payload_data_type_must_match_record_type(self, key):
        env = make_env(key)
        env.payload = proof_payload(dataType=RecordType.DISTRIBUTION_COMPLETE)
        result = env.validate_schema()
        assert not result
        assert any("dataType" in e for e in result.errors)


# ─────────────────────────────────────────────────────────────
# LEDGER
# ─────────────────────────────────────────────────────────────

class TestAuditLedger:

    def test_record_returns_receipt_and_appends(self, tmp_path):
        ledger   = AuditLedger(ledger_path=str(tmp_path))
        operator = Identity.generate(Role.OPERATOR)

        receipt = ledger.record(operator, proof_payload())

        assert receipt.sequence == 0
        assert receipt.causal_hash == GENESIS_HASH
        assert receipt.signer_id == operator.address
        assert len(ledger.read_all()) == 1
        assert ledger.verify_chain()

    def test_records_from_several_signers_chain_together(self, tmp_path):
        ledger   = AuditLedger(ledger_path=str(tmp_path))
        operator = Identity.generate(Role.OPERATOR)
        verifier = Identity.generate(Role.VERIFIER)

        ledger.record(operator, proof_payload())
        ledger.record(verifier, proof_payload(verificationDate="2026-01-01T00:00:00.000Z"))
        ledger.record(operator, proof_payload("proj-2"))

        envelopes = ledger.read_all()
        assert [e.sequence for e in envelopes] == [0, 1, 2]
        assert envelopes[1].signer_id == verifier.address
        assert ledger.verify_chain()
        assert len(ledger.records_for_project("proj-1")) == 2

    def test_identity_without_key_cannot_record(self, tmp_path):
        ledger = AuditLedger(ledger_path=str(tmp_path))
        payee  = Identity(role=Role.CONTRIBUTOR, address="rInvestorA")
        with pytest.raises(SignatureError):
            ledger.record(payee, proof_payload())
        assert ledger.read_all() == []

    def test_payload_above_bound_refused(self, tmp_path):
        ledger   = AuditLedger(ledger_path=str(tmp_path), max_payload_bytes=256)
        operator = Identity.generate(Role.OPERATOR)
        with pytest.raises(PayloadTooLargeError):
            ledger.record(operator, proof_payload(note="x" * 512))
        assert ledger.get_stats()["next_sequence"] == 0

    def test_payload_without_data_type_refused(self, tmp_path):
        ledger = AuditLedger(ledger_path=str(tmp_path))
        with pytest.raises(ValueError):
            ledger.record(Identity.generate(Role.OPERATOR), {"projectId": "proj-1"})

    def test_state_restored_on_reopen(self, tmp_path):
        operator = Identity.generate(Role.OPERATOR)
        first    = AuditLedger(ledger_path=str(tmp_path))
        first.record(operator, proof_payload())
        first.record(operator, proof_payload())

        reopened = AuditLedger(ledger_path=str(tmp_path))
        receipt  = reopened.record(operator, proof_payload())

        assert receipt.sequence == 2
        assert reopened.verify_chain()

    def test_corrupted_last_line_warns(self, tmp_path):
        operator = Identity.generate(Role.OPERATOR)
        ledger   = AuditLedger(ledger_path=str(tmp_path))
        ledger.record(operator, proof_payload())
        with open(ledger.path, "a", encoding="utf-8") as f:
            f.write("{not json\n")

        with pytest.warns(RuntimeWarning):
            AuditLedger(ledger_path=str(tmp_path))

    def test_tampered_file_fails_verify_chain(self, tmp_path):
        operator = Identity.generate(Role.OPERATOR)
        ledger   = AuditLedger(ledger_path=str(tmp_path))
        for _ in range(3):
            ledger.record(operator, proof_payload())

        lines = ledger.path.read_text(encoding="utf-8").splitlines()
        entry = json.loads(lines[1])
        entry["payload"]["reportedRevenue"] = "1000000"
        lines[1] = json.dumps(entry)
        ledger.path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        assert not ledger.verify_chain()


# ─────────────────────────────────────────────────────────────
# REPLAY
# ─────────────────────────────────────────────────────────────

class TestReplay:

    def test_clean_ledger_is_valid(self, key, tmp_path):
        path = tmp_path / "audit.jsonl"
        write_ledger(make_chain(key, 6), path)

        summary = replay(path)

        assert summary.ledger_valid
        assert summary.chain_valid
        assert summary.total_entries == 6
        assert summary.valid_signatures == 6
        assert summary.record_type_counts == {RecordType.SETTLEMENT_PROOF: 6}
        assert summary.projects_seen == ["proj-0", "proj-1", "proj-2"]

    def test_detects_chain_break(self, key, tmp_path):
        chain = make_chain(key, 4)
        chain[1].payload = proof_payload(reportedRevenue="1")
        chain[1].sign(key)  # re-signed, so only the chain link breaks
        path = tmp_path / "audit.jsonl"
        write_ledger(chain, path)

        summary = replay(path)

        assert not summary.chain_valid
        breaks = [v for v in summary.violations if v.violation_type == "chain_break"]
        assert [v.at_sequence for v in breaks] == [2]

    def test_detects_invalid_signature(self, key, key2, tmp_path):
        chain = make_chain(key, 3)
        chain[2].signature = key2.sign(chain[2].canonical_bytes())
        path = tmp_path / "audit.jsonl"
        write_ledger(chain, path)

        summary = replay(path)

        assert summary.invalid_signatures == 1
        assert not summary.ledger_valid

    def test_detects_sequence_gap(self, key, tmp_path):
        chain = make_chain(key, 4)
        path  = tmp_path / "audit.jsonl"
        write_ledger([chain[0], chain[1], chain[3]], path)

        summary = replay(path)

        kinds = {v.violation_type for v in summary.violations}
        assert "sequence_gap" in kinds
        assert "chain_break" in kinds

    def test_rejects_mixed_versions(self, key, tmp_path):
        chain = make_chain(key, 2)
        data  = [env.to_dict() for env in chain]
        data[1]["ledger_version"] = "9.9"
        path = tmp_path / "audit.jsonl"
        path.write_text("\n".join(json.dumps(d) for d in data) + "\n", encoding="utf-8")

        with pytest.raises((LedgerVersionError, ValueError)):
            AuditReplay().load(path)

    def test_malformed_json_raises_value_error(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        path.write_text("{broken\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Malformed JSON"):
            AuditReplay().load(path)

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            AuditReplay().load(tmp_path / "nope.jsonl")

    def test_project_filter_scopes_report_not_chain(self, key, tmp_path):
        chain = make_chain(key, 6)
        path  = tmp_path / "audit.jsonl"
        write_ledger(chain, path)

        summary = replay(path, project_id="proj-1")

        assert summary.total_entries == 2
        assert summary.projects_seen == ["proj-1"]
        assert summary.ledger_valid

    def test_export_writes_report(self, key, tmp_path):
        path = tmp_path / "audit.jsonl"
        write_ledger(make_chain(key, 3), path)
        engine = AuditReplay()
        engine.load(path)

        out = tmp_path / "reports" / "report.json"
        engine.export_json(out)

        report = json.loads(out.read_text(encoding="utf-8"))["agritrust_audit_report"]
        assert report["ledger_valid"] is True
        assert report["total_entries"] == 3
        assert report["head_hash"] == engine.head_hash()
