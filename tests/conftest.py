from __future__ import annotations

import pytest

from generation_credits.db.memory import InMemoryLedgerStore
from generation_credits.logging.ledger_logger import LedgerLogger
from generation_credits.services.credit_service import CreditLedger
from generation_credits.services.plan_gate import PlanGate
from generation_credits.services.retry import RetryPolicy


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def ledger_log(store, tmp_path) -> LedgerLogger:
    return LedgerLogger(store, tmp_path / "ledger.log")


@pytest.fixture
def ledger(store, ledger_log) -> CreditLedger:
    return CreditLedger(store, ledger_log, retry_policy=RetryPolicy(base_delay=0))


@pytest.fixture
def plan_gate(store) -> PlanGate:
    return PlanGate(store)
