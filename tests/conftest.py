"""Shared fixtures: identities, collaborators and a configured engine."""

from decimal import Decimal

import pytest

from agritrust.audit.ledger import AuditLedger
from agritrust.core.identity import Identity, Role
from agritrust.runtime.config import SettlementConfig
from agritrust.settlement.engine import SettlementEngine
from agritrust.settlement.models import ContributorShare
from agritrust.settlement.store import SettlementStore
from agritrust.storage.documents import LocalDocumentStore

from helpers.settlement_doubles import ASSET, EVIDENCE, PROJECT, ScriptedTransferLedger, rl


# ─────────────────────────────────────────────────────────────
# Identities
# ─────────────────────────────────────────────────────────────

@pytest.fixture
def operator():
    return Identity.generate(Role.OPERATOR, name="farmer")


@pytest.fixture
def verifier():
    return Identity.generate(Role.VERIFIER, name="notary")


@pytest.fixture
def treasury():
    return Identity.generate(Role.TREASURY, name="treasury")


@pytest.fixture
def platform():
    return Identity.generate(Role.PLATFORM, name="platform")


@pytest.fixture
def contributors():
    return [
        ContributorShare(address="rInvestorA", share_percentage=Decimal("0.6")),
        ContributorShare(address="rInvestorB", share_percentage=Decimal("0.4")),
    ]


# ─────────────────────────────────────────────────────────────
# Collaborators and engine
# ─────────────────────────────────────────────────────────────

@pytest.fixture
def transfers(operator, treasury, platform):
    ledger = ScriptedTransferLedger()
    ledger.fund(treasury.address, rl("1000000"))
    for address in (operator.address, "rInvestorA", "rInvestorB", platform.address):
        ledger.provision(address, ASSET)
    return ledger


@pytest.fixture
def audit(tmp_path):
    return AuditLedger(ledger_path=str(tmp_path / "ledger"))


@pytest.fixture
def documents(tmp_path):
    return LocalDocumentStore(tmp_path / "documents")


@pytest.fixture
def store(tmp_path):
    return SettlementStore(tmp_path / "settlements")


@pytest.fixture
def make_engine(store, documents, audit, transfers):
    """Factory: engine over the shared collaborators, any of which can be replaced."""

    def _make(**overrides):
        config_values = {
            "platform_fee_percentage":   "0.20",
            "operator_share_percentage": "0.40",
        }
        collaborators = {
            "store":     store,
            "documents": documents,
            "audit":     audit,
            "transfers": transfers,
        }
        for name in list(overrides):
            if name in collaborators:
                collaborators[name] = overrides.pop(name)
        config_values.update(overrides)
        config = SettlementConfig.from_dict(config_values, environ={})
        return SettlementEngine(config=config, **collaborators)

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def verified(engine, operator, verifier):
    """Factory: submit EVIDENCE for a project and verify it."""

    def _verified(project_id: str = PROJECT, revenue: str = "58500", eng=None):
        eng = eng or engine
        eng.submit_proof(operator, project_id, rl(revenue), EVIDENCE)
        result = eng.verify_proof(verifier, project_id)
        assert result.verified
        return eng.get_record(project_id)

    return _verified
