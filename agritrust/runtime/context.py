"""
Runtime context: one configured engine plus the identities that drive it.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from agritrust.audit.ledger import AuditLedger
from agritrust.core.crypto import Ed25519KeyManager
from agritrust.core.identity import Identity, Role
from agritrust.runtime.config import SettlementConfig
from agritrust.settlement.engine import SettlementEngine
from agritrust.settlement.store import SettlementStore
from agritrust.storage.documents import DocumentStore, IPFSDocumentStore, LocalDocumentStore
from agritrust.transfers.ledger import InMemoryTransferLedger, ValueTransferLedger

logger = logging.getLogger(__name__)


@dataclass
class SettlementContext:
    """Everything a process needs to run settlements."""

    config:    SettlementConfig
    engine:    SettlementEngine
    audit:     AuditLedger
    store:     SettlementStore
    documents: DocumentStore
    transfers: ValueTransferLedger
    operator:  Identity
    verifier:  Identity
    treasury:  Identity

    @classmethod
    def from_config(
        cls,
        config:    Optional[SettlementConfig] = None,
        key_dir:   Optional[Path] = None,
        transfers: Optional[ValueTransferLedger] = None,
    ) -> "SettlementContext":
        """
        Build a context rooted at config.data_dir.

        Keys are read from key_dir (default <data_dir>/keys) as
        operator.pem / verifier.pem / treasury.pem, and generated and
        saved when missing. Without a transfer ledger an in-memory one is
        used, which suits dry runs only.
        """
        config  = config or SettlementConfig()
        data    = config.data_dir
        key_dir = Path(key_dir) if key_dir is not None else data / "keys"

        def load_identity(role: Role) -> Identity:
            key_path = key_dir / f"{role.value}.pem"
            existed  = key_path.exists()
            key      = Ed25519KeyManager.load_or_generate(key_path)
            if not existed:
                logger.info("generated %s key at %s", role.value, key_path)
            return Identity(role=role, name=role.value, key=key)

        if config.ipfs_url:
            documents: DocumentStore = IPFSDocumentStore(
                base_url=config.ipfs_url,
                timeout=config.document_timeout or 30.0,
            )
        else:
            documents = LocalDocumentStore(data / "documents")

        audit = AuditLedger(
            ledger_path=       str(data / "ledger"),
            max_payload_bytes= config.max_payload_bytes,
        )
        store     = SettlementStore(data / "settlements")
        transfers = transfers or InMemoryTransferLedger()
        engine    = SettlementEngine(store, documents, audit, transfers, config)

        return cls(
            config=    config,
            engine=    engine,
            audit=     audit,
            store=     store,
            documents= documents,
            transfers= transfers,
            operator=  load_identity(Role.OPERATOR),
            verifier=  load_identity(Role.VERIFIER),
            treasury=  load_identity(Role.TREASURY),
        )

    def __repr__(self) -> str:
        return (
            f"SettlementContext("
            f"data_dir={str(self.config.data_dir)!r}, "
            f"settlements={len(self.store.all_records())})"
        )
