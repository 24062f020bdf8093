"""
agritrust/core/canonical.py

Canonical JSON Encoding: RFC 8785 (JCS)

Every byte string that gets signed or chained in the audit ledger is
produced here. Audit payloads carry monetary values as decimal strings,
never floats, so the canonical form is stable across platforms.

RFC 8785: https://www.rfc-editor.org/rfc/rfc8785
"""

import hashlib
from typing import Any, Dict

try:
    import jcs as _jcs
except ImportError as exc:
    raise ImportError(
        "agritrust requires the 'jcs' package for RFC 8785 compliance.\n"
        "Install with: pip install jcs\n"
        f"Original error: {exc}"
    ) from exc


def canonicalize(obj: Dict[str, Any]) -> bytes:
    """
    Encode a dict to RFC 8785 canonical JSON bytes.

    Values must be JSON primitives. Decimal amounts and datetimes must be
    converted to strings by the caller (see Money.to_dict()).
    """
    return _jcs.canonicalize(obj)


def canonical_hash(obj: Dict[str, Any]) -> str:
    """Lowercase hex SHA-256 of the canonical form (64 characters)."""
    return hashlib.sha256(canonicalize(obj)).hexdigest()


def canonical_size(obj: Dict[str, Any]) -> int:
    """Size in bytes of the canonical form. Used for audit payload bounds."""
    return len(canonicalize(obj))
