"""
Identities taking part in a settlement.

An identity is an address on the value-transfer ledger plus a role. Identities
that sign audit records (operators, verifiers, the treasury) also hold an
Ed25519 key; payees such as contributors usually do not.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from agritrust.core.crypto import Ed25519KeyManager
from agritrust.core.exceptions import ConfigurationError, SignatureError


class Role(str, Enum):
    OPERATOR    = "operator"
    VERIFIER    = "verifier"
    PLATFORM    = "platform"
    TREASURY    = "treasury"
    CONTRIBUTOR = "contributor"


@dataclass(frozen=True)
class Identity:
    """
    A settlement participant.

    address defaults to the signing key's public key hex when a key is
    given and no explicit address is.
    """

    role:    Role
    address: str = ""
    name:    Optional[str] = None
    key:     Optional[Ed25519KeyManager] = field(
        default=None, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))
        if not self.address and self.key is not None:
            object.__setattr__(self, "address", self.key.public_key_hex)
        if not self.address:
            raise ConfigurationError(
                "identity needs an address or a signing key",
                {"role": self.role.value, "name": self.name},
            )

    @classmethod
    def generate(cls, role: Role, name: Optional[str] = None) -> "Identity":
        """New identity with a fresh signing key."""
        return cls(role=role, name=name, key=Ed25519KeyManager.generate())

    @property
    def can_sign(self) -> bool:
        return self.key is not None

    def signing_key(self) -> Ed25519KeyManager:
        if self.key is None:
            raise SignatureError(
                "identity has no signing key",
                {"role": self.role.value, "address": self.address},
            )
        return self.key

    @property
    def label(self) -> str:
        return self.name or self.address
