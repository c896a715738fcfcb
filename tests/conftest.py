import os
import tempfile

os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402

from database import Base, create_ledger_engine, make_session_factory  # noqa: E402
import models  # noqa: E402,F401
from notifications import ConnectionRegistry, NotificationDispatcher  # noqa: E402
from services import BudgetEvaluator  # noqa: E402
from store import LedgerStore  # noqa: E402

NOW = datetime(2024, 3, 20, 12, 0)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_ledger_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> LedgerStore:
    return LedgerStore(session_factory)


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def dispatcher(store, registry) -> NotificationDispatcher:
    return NotificationDispatcher(store, registry)


@pytest.fixture
def evaluator(store, dispatcher) -> BudgetEvaluator:
    return BudgetEvaluator(store, dispatcher, threshold=0.8, clock=lambda: NOW)
