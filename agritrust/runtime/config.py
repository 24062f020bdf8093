"""
Settlement configuration.

Loaded from YAML (or a dict), then overridden by environment variables:

    AGRITRUST_PLATFORM_FEE_PERCENTAGE
    AGRITRUST_OPERATOR_SHARE_PERCENTAGE
    AGRITRUST_ASSET_CODE
    AGRITRUST_PLATFORM_FEE_MODE

Example settlement.yaml:

    asset_code: RLUSD
    platform_fee_percentage: "0.10"
    operator_share_percentage: "0.50"
    platform_fee_mode: retain
    data_dir: .agritrust
    timeouts:
      document: 30
      audit: 30
      transfer: 60
"""

import os
from dataclasses import dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from agritrust.audit.ledger import DEFAULT_MAX_PAYLOAD_BYTES
from agritrust.core.exceptions import ConfigurationError
from agritrust.core.money import DEFAULT_PRECISION, to_decimal
from agritrust.settlement.models import PlatformFeeMode

ENV_OVERRIDES = {
    "AGRITRUST_PLATFORM_FEE_PERCENTAGE":   "platform_fee_percentage",
    "AGRITRUST_OPERATOR_SHARE_PERCENTAGE": "operator_share_percentage",
    "AGRITRUST_ASSET_CODE":                "asset_code",
    "AGRITRUST_PLATFORM_FEE_MODE":         "platform_fee_mode",
}

_TIMEOUT_KEYS = {
    "document": "document_timeout",
    "audit":    "audit_timeout",
    "transfer": "transfer_timeout",
}


@dataclass
class SettlementConfig:
    asset_code:                str = "RLUSD"
    precision:                 int = DEFAULT_PRECISION
    platform_fee_percentage:   Decimal = Decimal("0.10")
    operator_share_percentage: Decimal = Decimal("0.50")
    platform_fee_mode:         PlatformFeeMode = PlatformFeeMode.RETAIN
    max_payload_bytes:         int = DEFAULT_MAX_PAYLOAD_BYTES
    document_timeout:          Optional[float] = 30.0
    audit_timeout:             Optional[float] = 30.0
    transfer_timeout:          Optional[float] = 60.0
    parallel_transfers:        bool = False
    max_transfer_workers:      int = 8
    attach_profit_preview:     bool = True
    data_dir:                  Path = field(default_factory=lambda: Path(".agritrust"))
    ipfs_url:                  Optional[str] = None

    def __post_init__(self) -> None:
        self.platform_fee_percentage   = _decimal(self.platform_fee_percentage, "platform_fee_percentage")
        self.operator_share_percentage = _decimal(self.operator_share_percentage, "operator_share_percentage")
        try:
            self.platform_fee_mode = PlatformFeeMode(self.platform_fee_mode)
        except ValueError as exc:
            raise ConfigurationError(
                f"platform_fee_mode must be one of {[m.value for m in PlatformFeeMode]}",
                {"platform_fee_mode": self.platform_fee_mode},
            ) from exc
        self.data_dir = Path(self.data_dir)
        self.validate()

    def validate(self) -> None:
        for name in ("platform_fee_percentage", "operator_share_percentage"):
            value = getattr(self, name)
            if value < 0 or value > 1:
                raise ConfigurationError(f"{name} must be within [0, 1]", {name: str(value)})
        if not isinstance(self.asset_code, str) or not self.asset_code.strip():
            raise ConfigurationError("asset_code must be a non-empty string")
        if not isinstance(self.precision, int) or not 0 <= self.precision <= 18:
            raise ConfigurationError("precision must be an int in [0, 18]", {"precision": self.precision})
        if not isinstance(self.max_payload_bytes, int) or self.max_payload_bytes <= 0:
            raise ConfigurationError("max_payload_bytes must be a positive int")
        if not isinstance(self.max_transfer_workers, int) or self.max_transfer_workers <= 0:
            raise ConfigurationError("max_transfer_workers must be a positive int")
        for name in _TIMEOUT_KEYS.values():
            value = getattr(self, name)
            if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                raise ConfigurationError(f"{name} must be a positive number or null", {name: value})

    # ── Loading ───────────────────────────────────────────────

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        environ: Optional[Mapping[str, str]] = None,
    ) -> "SettlementConfig":
        """Build from a mapping; environment overrides win over the mapping."""
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ConfigurationError(
                f"settlement config must be a mapping, got {type(data).__name__}"
            )

        values: Dict[str, Any] = dict(data)
        timeouts = values.pop("timeouts", None) or {}
        if not isinstance(timeouts, Mapping):
            raise ConfigurationError("timeouts must be a mapping")
        for key, value in timeouts.items():
            if key not in _TIMEOUT_KEYS:
                raise ConfigurationError(
                    f"unknown timeout '{key}'", {"valid": sorted(_TIMEOUT_KEYS)}
                )
            values[_TIMEOUT_KEYS[key]] = value

        env = os.environ if environ is None else environ
        for var, name in ENV_OVERRIDES.items():
            if env.get(var):
                values[name] = env[var]

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError("unknown settlement config keys", {"keys": unknown})
        return cls(**values)

    @classmethod
    def from_yaml(
        cls,
        config_file: Path,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "SettlementConfig":
        """Load from a YAML file."""
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as exc:
            raise ConfigurationError(f"cannot read config file {config_file}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"invalid YAML in {config_file}: {exc}") from exc
        return cls.from_dict(data or {}, environ=environ)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_code":                self.asset_code,
            "precision":                 self.precision,
            "platform_fee_percentage":   str(self.platform_fee_percentage),
            "operator_share_percentage": str(self.operator_share_percentage),
            "platform_fee_mode":         self.platform_fee_mode.value,
            "max_payload_bytes":         self.max_payload_bytes,
            "parallel_transfers":        self.parallel_transfers,
            "max_transfer_workers":      self.max_transfer_workers,
            "attach_profit_preview":     self.attach_profit_preview,
            "data_dir":                  str(self.data_dir),
            "ipfs_url":                  self.ipfs_url,
            "timeouts": {
                key: getattr(self, name) for key, name in _TIMEOUT_KEYS.items()
            },
        }


def _decimal(value: Any, name: str) -> Decimal:
    # YAML reads 0.10 as a float; its shortest repr is the intended value.
    if isinstance(value, float):
        value = repr(value)
    return to_decimal(value, name)
