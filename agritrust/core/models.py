"""
agritrust/core/models.py

Audit ledger data model.

Every audit record is an AuditEnvelope: a signed, hash-chained wrapper
around one structured settlement payload.

═══════════════════════════════════════════════════════════════════
CONTRACTS
═══════════════════════════════════════════════════════════════════

CONTRACT 1: Signing
    bytes_signed = canonicalize(env.signing_surface())
    algorithm    = Ed25519, signer = the identity named by signer_id
    encoding     = base64url, no padding

CONTRACT 2: Chain
    causal_hash  = SHA-256(canonicalize(prev.signing_surface()))
    first_entry  = GENESIS_HASH ("0" * 64)
    payload is part of the surface, so editing any past payload breaks
    every later causal_hash.

CONTRACT 3: Timestamp
    YYYY-MM-DDTHH:MM:SS.mmmZ from agritrust.core.time.utc_timestamp()

CONTRACT 4: Nonce
    32 hex characters of fresh randomness per record. Uniqueness, not order.

CONTRACT 5: Vocabulary
    record_type is one of RecordType; payload["dataType"] repeats it for
    readers that only see the payload.
═══════════════════════════════════════════════════════════════════
"""

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from agritrust.core.canonical import canonicalize
from agritrust.core.time import TIMESTAMP_RE, utc_timestamp


LEDGER_VERSION = "1.0"
GENESIS_HASH   = "0" * 64

_NONCE_HEX_LENGTH      = 32
_PUBLIC_KEY_HEX_LENGTH = 64


class LedgerVersionError(Exception):
    """Raised when one ledger file mixes ledger_version values."""
    pass


class RecordType:
    """
    Audit record_type constants, one per settlement stage.

    SETTLEMENT_PROOF is used both for the operator's submission and the
    verifier's notarized confirmation; the latter carries verificationDate
    and adminVerifierAddress.
    """
    SETTLEMENT_PROOF        = "settlement_proof"
    SETTLEMENT_REJECTED     = "settlement_rejected"
    DISTRIBUTION_COMPLETE   = "settlement_distribution_complete"
    DISTRIBUTION_RETRY      = "settlement_distribution_retry"


_VALID_RECORD_TYPES: Set[str] = {
    RecordType.SETTLEMENT_PROOF,
    RecordType.SETTLEMENT_REJECTED,
    RecordType.DISTRIBUTION_COMPLETE,
    RecordType.DISTRIBUTION_RETRY,
}


@dataclass
class SchemaValidationResult:
    """
    Result of AuditEnvelope.validate_schema().

    Returned, not raised. bool(result) is True iff valid.
    """
    valid:  bool
    errors: List[str]

    def __bool__(self) -> bool:
        return self.valid


@dataclass(frozen=True)
class AuditReceipt:
    """Confirmation handed back by AuditLedger.record()."""
    record_id:   str
    record_type: str
    sequence:    int
    timestamp:   str
    causal_hash: str
    signer_id:   str
    signature:   str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id":   self.record_id,
            "record_type": self.record_type,
            "sequence":    self.sequence,
            "timestamp":   self.timestamp,
            "causal_hash": self.causal_hash,
            "signer_id":   self.signer_id,
            "signature":   self.signature,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditReceipt":
        return cls(**{k: data[k] for k in (
            "record_id", "record_type", "sequence", "timestamp",
            "causal_hash", "signer_id", "signature",
        )})


@dataclass
class AuditEnvelope:
    """One line of the audit ledger."""

    ledger_version:    str
    record_id:         str
    record_type:       str
    signer_id:         str
    signer_public_key: str
    sequence:          int
    nonce:             str
    timestamp:         str
    causal_hash:       str
    payload:           Dict[str, Any]
    signature:         Optional[str] = None

    @classmethod
    def create(
        cls,
        record_type:       str,
        signer_id:         str,
        signer_public_key: str,
        sequence:          int,
        payload:           Dict[str, Any],
        prev:              Optional["AuditEnvelope"] = None,
    ) -> "AuditEnvelope":
        """
        Build an unsigned envelope chained onto prev.

        Raises ValueError / TypeError for an unknown record_type, a
        non-dict payload, a negative sequence or a malformed public key.
        Call .sign(key) right after.
        """
        if record_type not in _VALID_RECORD_TYPES:
            raise ValueError(
                f"Invalid record_type '{record_type}'. "
                f"Valid: {sorted(_VALID_RECORD_TYPES)}"
            )
        if not isinstance(payload, dict):
            raise TypeError(
                f"payload must be dict, got {type(payload).__name__}"
            )
        if not isinstance(sequence, int) or sequence < 0:
            raise ValueError(
                f"sequence must be non-negative int, got {sequence!r}"
            )
        if not _is_hex(signer_public_key, _PUBLIC_KEY_HEX_LENGTH):
            raise ValueError(
                f"signer_public_key must be {_PUBLIC_KEY_HEX_LENGTH}-char hex"
            )

        return cls(
            ledger_version=    LEDGER_VERSION,
            record_id=         f"aud-{uuid.uuid4()}",
            record_type=       record_type,
            signer_id=         signer_id,
            signer_public_key= signer_public_key,
            sequence=          sequence,
            nonce=             secrets.token_hex(_NONCE_HEX_LENGTH // 2),
            timestamp=         utc_timestamp(),
            causal_hash=       cls.chain_hash_of(prev),
            payload=           payload,
            signature=         None,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEnvelope":
        """
        Deserialize one JSONL line. Trusts the data; callers run
        validate_schema() before relying on it.
        """
        return cls(
            ledger_version=    data["ledger_version"],
            record_id=         data["record_id"],
            record_type=       data["record_type"],
            signer_id=         data["signer_id"],
            signer_public_key= data["signer_public_key"],
            sequence=          data["sequence"],
            nonce=             data["nonce"],
            timestamp=         data["timestamp"],
            causal_hash=       data["causal_hash"],
            payload=           data.get("payload", {}),
            signature=         data.get("signature"),
        )

    def validate_schema(self) -> SchemaValidationResult:
        """Check every field against the contracts above."""
        errors: List[str] = []

        if self.ledger_version != LEDGER_VERSION:
            errors.append(
                f"ledger_version: expected '{LEDGER_VERSION}', got '{self.ledger_version}'"
            )
        if self.record_type not in _VALID_RECORD_TYPES:
            errors.append(f"record_type '{self.record_type}' not in valid set")
        if not isinstance(self.record_id, str) or not self.record_id.startswith("aud-"):
            errors.append(
                f"record_id must be a string starting with 'aud-', got {self.record_id!r}"
            )
        if not isinstance(self.signer_id, str) or not self.signer_id:
            errors.append("signer_id must be a non-empty string")
        if not _is_hex(self.signer_public_key, _PUBLIC_KEY_HEX_LENGTH):
            errors.append(
                f"signer_public_key must be exactly {_PUBLIC_KEY_HEX_LENGTH} hex chars"
            )
        if not isinstance(self.sequence, int) or self.sequence < 0:
            errors.append(f"sequence must be non-negative int, got {self.sequence!r}")
        if not _is_hex(self.nonce, _NONCE_HEX_LENGTH):
            errors.append(f"nonce must be exactly {_NONCE_HEX_LENGTH} hex chars")
        if not isinstance(self.timestamp, str) or not TIMESTAMP_RE.match(self.timestamp):
            errors.append(
                f"timestamp {self.timestamp!r} does not match YYYY-MM-DDTHH:MM:SS.mmmZ"
            )
        if not _is_hex(self.causal_hash, 64):
            errors.append("causal_hash must be 64 hex chars")
        if not isinstance(self.payload, dict):
            errors.append(f"payload must be dict, got {type(self.payload).__name__}")
        elif self.payload.get("dataType") not in (None, self.record_type):
            errors.append(
                f"payload dataType {self.payload.get('dataType')!r} "
                f"does not match record_type {self.record_type!r}"
            )

        return SchemaValidationResult(valid=not errors, errors=errors)

    # ── Canonical surface ─────────────────────────────────────

    def signing_surface(self) -> Dict[str, Any]:
        """
        Every field except signature. Signed (CONTRACT 1) and hashed into
        the next entry's causal_hash (CONTRACT 2).
        """
        return {
            "causal_hash":       self.causal_hash,
            "ledger_version":    self.ledger_version,
            "nonce":             self.nonce,
            "payload":           self.payload,
            "record_id":         self.record_id,
            "record_type":       self.record_type,
            "sequence":          self.sequence,
            "signer_id":         self.signer_id,
            "signer_public_key": self.signer_public_key,
            "timestamp":         self.timestamp,
        }

    def to_dict(self) -> Dict[str, Any]:
        """JSONL persistence form, signature included."""
        d = self.signing_surface()
        d["signature"] = self.signature
        return d

    def canonical_bytes(self) -> bytes:
        return canonicalize(self.signing_surface())

    @staticmethod
    def chain_hash_of(prev: Optional["AuditEnvelope"]) -> str:
        """causal_hash that the entry following prev must carry."""
        if prev is None:
            return GENESIS_HASH
        return hashlib.sha256(prev.canonical_bytes()).hexdigest()

    # ── Signing / verification ────────────────────────────────

    def sign(self, key_manager) -> "AuditEnvelope":
        """Sign in place and return self."""
        self.signature = key_manager.sign(self.canonical_bytes())
        return self

    def verify_signature(self, override_public_key_hex: Optional[str] = None) -> bool:
        """True iff the signature covers the current field values. Never raises."""
        if not self.signature:
            return False

        from agritrust.core.crypto import Ed25519KeyManager

        return Ed25519KeyManager.verify_detached(
            self.canonical_bytes(),
            self.signature,
            override_public_key_hex or self.signer_public_key,
        )

    def verify_chain(self, prev: Optional["AuditEnvelope"]) -> bool:
        return self.causal_hash == AuditEnvelope.chain_hash_of(prev)

    def verify_sequence(self, expected: int) -> bool:
        return self.sequence == expected

    def is_signed(self) -> bool:
        return bool(self.signature)

    def receipt(self) -> AuditReceipt:
        return AuditReceipt(
            record_id=   self.record_id,
            record_type= self.record_type,
            sequence=    self.sequence,
            timestamp=   self.timestamp,
            causal_hash= self.causal_hash,
            signer_id=   self.signer_id,
            signature=   self.signature or "",
        )


def _is_hex(value: Any, length: int) -> bool:
    if not isinstance(value, str) or len(value) != length:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True
