"""
agritrust/audit/replay.py

Offline verification of an audit ledger file.

Per entry, in file order:
    1. json.loads + AuditEnvelope.from_dict
    2. validate_schema()          fail fast, the file is unusable otherwise
    3. verify_sequence(i)         gaps
    4. verify_chain(prev)         causal_hash integrity
    5. nonce uniqueness
    6. verify_signature()         against the embedded signer key

Chain checks always run over the full ledger. Filtering by project only
narrows what is reported, never what is chained.
"""

import json
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set

from agritrust.core.models import (
    AuditEnvelope,
    LedgerVersionError,
)


@dataclass
class ChainViolation:
    """A single detected violation in the ledger."""
    at_sequence:    int
    record_id:      str
    violation_type: str   # "schema" | "chain_break" | "invalid_signature" | "sequence_gap"
    detail:         str

    def to_dict(self) -> Dict[str, object]:
        return {
            "at_sequence":    self.at_sequence,
            "record_id":      self.record_id,
            "violation_type": self.violation_type,
            "detail":         self.detail,
        }


@dataclass
class ReplaySummary:
    """Aggregate result of a verification pass."""
    total_entries:      int
    chain_valid:        bool
    violations:         List[ChainViolation]
    valid_signatures:   int
    invalid_signatures: int
    record_type_counts: Dict[str, int]
    signers_seen:       List[str]
    projects_seen:      List[str]
    ledger_version:     Optional[str]
    first_timestamp:    Optional[str]
    last_timestamp:     Optional[str]

    @property
    def ledger_valid(self) -> bool:
        return not self.violations


class AuditReplay:
    """
    Usage:
        replay = AuditReplay()
        replay.load(Path(".agritrust/ledger/audit.jsonl"))
        summary = replay.verify(project_id="proj-7")
        replay.export_json(Path("audit_report.json"))
    """

    def __init__(self) -> None:
        self.envelopes:    List[AuditEnvelope]  = []
        self.violations:   List[ChainViolation] = []
        self._ledger_path: Optional[Path]       = None

    def load(self, ledger_path: Path) -> None:
        """
        Raises:
            FileNotFoundError   ledger file does not exist
            ValueError          malformed JSON, missing field, schema violation
            LedgerVersionError  mixed ledger_version values
        """
        ledger_path       = Path(ledger_path)
        self._ledger_path = ledger_path
        self.envelopes    = []
        self.violations   = []

        if not ledger_path.exists():
            raise FileNotFoundError(f"Audit ledger not found: {ledger_path}")

        with open(ledger_path, "r", encoding="utf-8") as f:
            for line_num, raw in enumerate(f, 1):
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError as e:
                    raise ValueError(
                        f"Malformed JSON at ledger line {line_num}: {e}"
                    ) from e
                try:
                    env = AuditEnvelope.from_dict(data)
                except KeyError as e:
                    raise ValueError(
                        f"Missing required field at line {line_num}: {e}"
                    ) from e

                schema = env.validate_schema()
                if not schema:
                    raise ValueError(
                        f"Schema violation at line {line_num} "
                        f"(record_id={data.get('record_id', '?')}): {schema.errors}"
                    )
                self.envelopes.append(env)

        versions = {e.ledger_version for e in self.envelopes}
        if len(versions) > 1:
            raise LedgerVersionError(
                f"Ledger '{ledger_path.name}' mixes ledger_version values: "
                f"{sorted(versions)}"
            )

    def verify(self, project_id: Optional[str] = None) -> ReplaySummary:
        """Full pass over the loaded ledger; report scoped to project_id if given."""
        violations:  List[ChainViolation] = []
        seen_nonces: Set[str]             = set()
        sig_ok:      Dict[int, bool]      = {}

        prev = None
        for i, env in enumerate(self.envelopes):
            if not env.verify_sequence(i):
                violations.append(ChainViolation(
                    at_sequence=    i,
                    record_id=      env.record_id,
                    violation_type= "sequence_gap",
                    detail=         f"Expected sequence {i}, got {env.sequence}",
                ))
            if not env.verify_chain(prev):
                expected = AuditEnvelope.chain_hash_of(prev)
                violations.append(ChainViolation(
                    at_sequence=    env.sequence,
                    record_id=      env.record_id,
                    violation_type= "chain_break",
                    detail=(
                        f"causal_hash mismatch: expected ...{expected[-12:]}, "
                        f"got ...{env.causal_hash[-12:]}"
                    ),
                ))
            if env.nonce in seen_nonces:
                violations.append(ChainViolation(
                    at_sequence=    env.sequence,
                    record_id=      env.record_id,
                    violation_type= "schema",
                    detail=         f"Duplicate nonce '{env.nonce}'",
                ))
            seen_nonces.add(env.nonce)

            ok = env.verify_signature()
            sig_ok[i] = ok
            if not ok:
                violations.append(ChainViolation(
                    at_sequence=    env.sequence,
                    record_id=      env.record_id,
                    violation_type= "invalid_signature",
                    detail=f"Signature invalid (signer: {env.signer_public_key[:16]}...)",
                ))
            prev = env

        in_scope = [
            (i, env) for i, env in enumerate(self.envelopes)
            if project_id is None or env.payload.get("projectId") == project_id
        ]
        scoped_ids = {env.record_id for _, env in in_scope}
        if project_id is not None:
            violations = [v for v in violations if v.record_id in scoped_ids]
        self.violations = violations

        counts: Dict[str, int] = defaultdict(int)
        for _, env in in_scope:
            counts[env.record_type] += 1
        valid = sum(1 for i, _ in in_scope if sig_ok[i])

        return ReplaySummary(
            total_entries=      len(in_scope),
            chain_valid=        not any(
                v.violation_type in ("chain_break", "sequence_gap") for v in violations
            ),
            violations=         list(violations),
            valid_signatures=   valid,
            invalid_signatures= len(in_scope) - valid,
            record_type_counts= dict(counts),
            signers_seen=       sorted({env.signer_id for _, env in in_scope}),
            projects_seen=      sorted({
                str(env.payload["projectId"]) for _, env in in_scope
                if "projectId" in env.payload
            }),
            ledger_version=     in_scope[0][1].ledger_version if in_scope else None,
            first_timestamp=    in_scope[0][1].timestamp if in_scope else None,
            last_timestamp=     in_scope[-1][1].timestamp if in_scope else None,
        )

    def head_hash(self) -> Optional[str]:
        """causal_hash the next appended record would carry. None if empty."""
        if not self.envelopes:
            return None
        return AuditEnvelope.chain_hash_of(self.envelopes[-1])

    def export_json(self, output_path: Path, project_id: Optional[str] = None) -> None:
        """Write a JSON audit report. Parent directories are created."""
        if not self.envelopes:
            raise RuntimeError("No envelopes loaded. Call load() before export_json().")

        summary     = self.verify(project_id=project_id)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        report = {
            "agritrust_audit_report": {
                "ledger":             str(self._ledger_path or "in-memory"),
                "project_id":         project_id,
                "total_entries":      summary.total_entries,
                "chain_valid":        summary.chain_valid,
                "ledger_valid":       summary.ledger_valid,
                "valid_signatures":   summary.valid_signatures,
                "invalid_signatures": summary.invalid_signatures,
                "ledger_version":     summary.ledger_version,
                "head_hash":          self.head_hash(),
                "first_timestamp":    summary.first_timestamp,
                "last_timestamp":     summary.last_timestamp,
                "signers_seen":       summary.signers_seen,
                "projects_seen":      summary.projects_seen,
                "record_type_counts": summary.record_type_counts,
                "violations":         [v.to_dict() for v in summary.violations],
            }
        }
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
