"""
agritrust/audit/ledger.py

Append-only audit ledger for settlement events.

record() MUST, in this exact order:
  1. Refuse payloads whose canonical form exceeds max_payload_bytes
  2. Acquire lock
  3. Create the envelope chained onto the last one (AuditEnvelope.create)
  4. Sign it with the signer's Ed25519 key
  5. Assert chain invariants (sequence, causal_hash)
  6. Append one JSON line and fsync
  7. Advance in-memory state only after the write succeeded
  8. Return an AuditReceipt

A record either exists on disk, signed and chained, or record() raised.
"""

import json
import logging
import os
import threading
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

from agritrust.core.canonical import canonical_size
from agritrust.core.exceptions import (
    AuditLedgerError,
    PayloadTooLargeError,
    SignatureError,
)
from agritrust.core.identity import Identity
from agritrust.core.models import (
    AuditEnvelope,
    AuditReceipt,
    GENESIS_HASH,
    LEDGER_VERSION,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAYLOAD_BYTES = 16 * 1024


class AuditLedger:
    """
    Signed, hash-chained JSONL audit ledger.

    Each record is signed by the identity passed to record(), so a single
    ledger holds operator submissions, verifier attestations and treasury
    distribution summaries side by side.

    Thread-safe via internal lock (single process). State is restored by
    reading the last line of the file on construction.
    """

    LEDGER_FILENAME = "audit.jsonl"

    def __init__(
        self,
        ledger_path:       str = ".agritrust/ledger",
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
    ) -> None:
        self.max_payload_bytes = max_payload_bytes

        self._lock:          threading.Lock          = threading.Lock()
        self._sequence:      int                     = 0
        self._last_envelope: Optional[AuditEnvelope] = None

        self._ledger_dir  = Path(ledger_path)
        self._ledger_dir.mkdir(parents=True, exist_ok=True)
        self._ledger_file = self._ledger_dir / self.LEDGER_FILENAME

        self._restore_state()

    @property
    def path(self) -> Path:
        return self._ledger_file

    # ── Public API ────────────────────────────────────────────

    def record(self, signer: Identity, payload: Dict[str, Any]) -> AuditReceipt:
        """
        Durably append one signed record.

        payload["dataType"] selects the record type.

        Raises:
            SignatureError        signer holds no signing key
            PayloadTooLargeError  canonical payload above the bound
            AuditLedgerError      write failure or chain invariant violation
            ValueError            unknown dataType
        """
        key = signer.signing_key()
        if not isinstance(payload, dict) or "dataType" not in payload:
            raise ValueError("audit payload must be a dict with a 'dataType' field")

        size = canonical_size(payload)
        if size > self.max_payload_bytes:
            raise PayloadTooLargeError(
                "audit payload exceeds ledger bound",
                {"size": size, "limit": self.max_payload_bytes},
            )

        with self._lock:
            envelope = AuditEnvelope.create(
                record_type=       payload["dataType"],
                signer_id=         signer.address,
                signer_public_key= key.public_key_hex,
                sequence=          self._sequence,
                payload=           payload,
                prev=              self._last_envelope,
            )
            envelope.sign(key)
            if not envelope.verify_signature():
                raise SignatureError(
                    "signature does not verify with signer key",
                    {"signer_id": signer.address},
                )

            self._assert_chain_invariants(envelope)
            self._append_to_ledger(envelope)

            self._sequence      += 1
            self._last_envelope  = envelope

        logger.debug(
            "audit record %s seq=%d type=%s signer=%s",
            envelope.record_id, envelope.sequence,
            envelope.record_type, signer.label,
        )
        return envelope.receipt()

    def read_all(self) -> List[AuditEnvelope]:
        """Every envelope on disk, in file order."""
        if not self._ledger_file.exists():
            return []
        envelopes = []
        with open(self._ledger_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    envelopes.append(AuditEnvelope.from_dict(json.loads(line)))
        return envelopes

    def records_for_project(self, project_id: str) -> List[AuditEnvelope]:
        return [
            env for env in self.read_all()
            if env.payload.get("projectId") == project_id
        ]

    def verify_chain(self) -> bool:
        """
        True if every entry is schema-valid, correctly sequenced, chained
        to its predecessor and signed by its embedded public key.
        """
        try:
            envelopes = self.read_all()
        except (OSError, ValueError, KeyError):
            return False

        prev = None
        for i, env in enumerate(envelopes):
            if not env.validate_schema():
                return False
            if not env.verify_sequence(i):
                return False
            if not env.verify_chain(prev):
                return False
            if not env.verify_signature():
                return False
            prev = env
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Current ledger head."""
        return {
            "next_sequence":    self._sequence,
            "last_record_id":   (
                self._last_envelope.record_id if self._last_envelope else None
            ),
            "last_causal_hash": (
                AuditEnvelope.chain_hash_of(self._last_envelope)
                if self._last_envelope else GENESIS_HASH
            ),
            "ledger_file":      str(self._ledger_file),
            "ledger_version":   LEDGER_VERSION,
        }

    # ── Internal ──────────────────────────────────────────────

    def _restore_state(self) -> None:
        """
        Resume sequence and chain head from the last line on disk.
        A corrupted last line leaves genesis defaults and warns.
        """
        if not self._ledger_file.exists():
            return

        last_line = None
        with open(self._ledger_file, "r", encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if stripped:
                    last_line = stripped

        if not last_line:
            return

        try:
            env = AuditEnvelope.from_dict(json.loads(last_line))
            schema = env.validate_schema()
            if not schema:
                raise ValueError(f"schema violation in last line: {schema.errors}")
        except (ValueError, KeyError, TypeError) as exc:
            warnings.warn(
                f"AuditLedger: could not restore state from {self._ledger_file}: {exc}. "
                "Run verify_chain() before recording.",
                RuntimeWarning,
                stacklevel=3,
            )
            return

        self._sequence      = env.sequence + 1
        self._last_envelope = env

    def _assert_chain_invariants(self, envelope: AuditEnvelope) -> None:
        if not envelope.verify_sequence(self._sequence):
            raise AuditLedgerError(
                "chain invariant violated: sequence mismatch",
                {"expected": self._sequence, "got": envelope.sequence},
            )
        if not envelope.verify_chain(self._last_envelope):
            raise AuditLedgerError(
                "chain invariant violated: causal_hash mismatch",
                {"got": envelope.causal_hash[-12:]},
            )

    def _append_to_ledger(self, envelope: AuditEnvelope) -> None:
        """State MUST NOT advance if this raises."""
        try:
            with open(self._ledger_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(envelope.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            raise AuditLedgerError(f"audit ledger write failed: {exc}") from exc
