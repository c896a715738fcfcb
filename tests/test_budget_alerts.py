import threading
from datetime import datetime
from decimal import Decimal

import pytest

from errors import NotFoundError, PersistenceError, ValidationError
from models import NotificationKind
from notifications import NotificationDispatcher
from schemas import BudgetIn, LedgerAmendIn
from services import (
    BudgetEvaluator,
    BudgetService,
    EvaluationStatus,
    LedgerService,
    TransactionIngestor,
)

NOW = datetime(2024, 3, 20, 12, 0)


def _item(description: str, amount: str, day: int = 1, category: str = "Groceries"):
    return {
        "description": description,
        "category": category,
        "amount": amount,
        "occurred_at": datetime(2024, 3, day, 9, 0),
    }


def _budget(store, category: str = "Groceries", limit: str = "100") -> int:
    budget = BudgetService(store, clock=lambda: NOW).upsert(
        "alice", BudgetIn(category=category, limit=Decimal(limit))
    )
    return budget.id


def _alerts(store, user_id: str = "alice"):
    return [
        n
        for n in store.list_notifications(user_id)
        if n.kind == NotificationKind.budget_alert
    ]


def test_threshold_crossing_alerts_exactly_once(store, evaluator) -> None:
    _budget(store)
    ingestor = TransactionIngestor(store, evaluator)

    alerted = []
    for day in (1, 2, 3, 4):
        result = ingestor.ingest("alice", [_item(f"Shop {day}", "30", day)])
        alerted.append(result.evaluations[0].alerted)

    assert alerted == [False, False, True, False]
    alerts = _alerts(store)
    assert len(alerts) == 1
    assert "Groceries" in alerts[0].message
    assert "90.00 of 100.00" in alerts[0].message
    assert store.list_budgets("alice")[0].notified_for_current_period is True


def test_remaining_is_not_clamped(store, evaluator) -> None:
    _budget(store)
    ingestor = TransactionIngestor(store, evaluator)

    ingestor.ingest("alice", [_item("Weekly shop", "90")])
    evaluation = evaluator.evaluate("alice", "Groceries")
    assert evaluation.remaining == Decimal("10.00")

    ingestor.ingest("alice", [_item("Party", "30", 2)])
    evaluation = evaluator.evaluate("alice", "Groceries")
    assert evaluation.spent == Decimal("120.00")
    assert evaluation.remaining == Decimal("-20.00")
    assert evaluation.remaining_cents == -2000


def test_missing_budget_is_a_no_op(store, evaluator) -> None:
    ingestor = TransactionIngestor(store, evaluator)

    result = ingestor.ingest("alice", [_item("Flight", "800", category="Travel")])

    assert result.evaluations[0].status == EvaluationStatus.no_budget
    assert store.list_notifications("alice") == []


def test_exactly_at_threshold_does_not_alert(store, evaluator) -> None:
    _budget(store)

    TransactionIngestor(store, evaluator).ingest("alice", [_item("Shop", "80")])

    assert _alerts(store) == []


def test_spend_outside_current_month_is_ignored(store, evaluator) -> None:
    _budget(store)
    ingestor = TransactionIngestor(store, evaluator)

    feb = _item("Old shop", "95")
    feb["occurred_at"] = datetime(2024, 2, 28, 9, 0)
    ingestor.ingest("alice", [feb])

    assert evaluator.evaluate("alice", "Groceries").spent_cents == 0
    assert _alerts(store) == []


def test_amend_below_threshold_does_not_rearm_alert(store, evaluator) -> None:
    _budget(store)
    ingestor = TransactionIngestor(store, evaluator)
    ledger = LedgerService(store, evaluator)

    entry = ingestor.ingest("alice", [_item("Big shop", "85")]).inserted[0]
    assert len(_alerts(store)) == 1

    ledger.amend("alice", entry.id, LedgerAmendIn(amount=Decimal("10")))
    assert evaluator.evaluate("alice", "Groceries").spent_cents == 1000

    ingestor.ingest("alice", [_item("Another shop", "75", 2)])
    assert len(_alerts(store)) == 1


def test_amended_entry_keeps_its_dedup_key(store, evaluator) -> None:
    ingestor = TransactionIngestor(store, evaluator)
    entry = ingestor.ingest("alice", [_item("Market", "12")]).inserted[0]

    LedgerService(store, evaluator).amend(
        "alice", entry.id, LedgerAmendIn(category="Food", description="Farmers market")
    )
    replay = ingestor.ingest("alice", [_item("Market", "12")])

    assert replay.duplicates == 1
    amended = LedgerService(store, evaluator).get("alice", entry.id)
    assert amended.category == "Food"
    assert amended.description == "Farmers market"


def test_new_month_rearms_the_alert(store, dispatcher) -> None:
    budget_id = _budget(store)
    march = BudgetEvaluator(store, dispatcher, threshold=0.8, clock=lambda: NOW)
    TransactionIngestor(store, march).ingest("alice", [_item("March shop", "90")])
    assert len(_alerts(store)) == 1

    april_now = datetime(2024, 4, 15, 12, 0)
    april = BudgetEvaluator(store, dispatcher, threshold=0.8, clock=lambda: april_now)
    item = _item("April shop", "50")
    item["occurred_at"] = datetime(2024, 4, 2, 9, 0)
    evaluation = TransactionIngestor(store, april).ingest("alice", [item]).evaluations[0]

    assert evaluation.period_key == "2024-04"
    assert evaluation.alerted is False
    budget = store.find_budget("alice", "Groceries").value
    assert budget.id == budget_id
    assert budget.period_key == "2024-04"
    assert budget.notified_for_current_period is False

    item = _item("April again", "40")
    item["occurred_at"] = datetime(2024, 4, 3, 9, 0)
    evaluation = TransactionIngestor(store, april).ingest("alice", [item]).evaluations[0]
    assert evaluation.alerted is True
    assert len(_alerts(store)) == 2


def test_lost_alert_keeps_expense_and_can_retry(store, registry) -> None:
    class BrokenDispatcher(NotificationDispatcher):
        fail = True

        def enqueue(self, user_id, message, kind=NotificationKind.general):
            if self.fail:
                raise PersistenceError("notifications table locked")
            return super().enqueue(user_id, message, kind)

    dispatcher = BrokenDispatcher(store, registry)
    evaluator = BudgetEvaluator(store, dispatcher, threshold=0.8, clock=lambda: NOW)
    _budget(store)
    ingestor = TransactionIngestor(store, evaluator)

    result = ingestor.ingest("alice", [_item("Big shop", "95")])

    assert len(result.inserted) == 1
    assert result.alert_failures == ["Groceries"]
    assert len(store.list_entries("alice")) == 1
    assert store.list_budgets("alice")[0].notified_for_current_period is False

    assert _alerts(store) == []
    dispatcher.fail = False
    assert evaluator.evaluate("alice", "Groceries").alerted is True
    assert len(_alerts(store)) == 1


def test_concurrent_evaluations_alert_once(store, evaluator) -> None:
    _budget(store)
    TransactionIngestor(store, evaluator).ingest("alice", [_item("Shop", "95")])
    store.set_notified_flag(store.list_budgets("alice")[0].id, False)
    for n in store.list_notifications("alice"):
        store.mark_notification_read("alice", n.id)

    barrier = threading.Barrier(6)
    results = []

    def worker() -> None:
        barrier.wait()
        results.append(evaluator.evaluate("alice", "Groceries"))

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r.alerted) == 1
    assert len(store.list_notifications("alice", unread_only=True)) == 1


def test_budget_progress_derives_spend_from_ledger(store, evaluator) -> None:
    _budget(store, "Groceries", "100")
    _budget(store, "Fun", "50")
    TransactionIngestor(store, evaluator).ingest(
        "alice", [_item("Shop", "40"), _item("Bowling", "60", 2, category="Fun")]
    )

    progress = {p.category: p for p in BudgetService(store, clock=lambda: NOW).progress("alice")}

    assert progress["Groceries"].spent_cents == 4000
    assert progress["Groceries"].remaining_cents == 6000
    assert progress["Fun"].remaining_cents == -1000
    assert progress["Fun"].notified_for_current_period is True


def test_budget_upsert_updates_existing_category(store) -> None:
    first = _budget(store, "Groceries", "100")
    second = _budget(store, "groceries", "250")

    budgets = store.list_budgets("alice")
    assert first == second
    assert len(budgets) == 1
    assert budgets[0].limit_cents == 25000


def test_renaming_a_budget_restarts_its_alert(store, evaluator) -> None:
    budget_id = _budget(store)
    ingestor = TransactionIngestor(store, evaluator)
    ingestor.ingest("alice", [_item("Shop", "90")])
    budgets = BudgetService(store, clock=lambda: NOW)

    renamed = budgets.update(
        "alice", budget_id, BudgetIn(category="Dining", limit=Decimal("50"))
    )
    assert renamed.category == "Dining"
    assert renamed.limit_cents == 5000
    assert renamed.notified_for_current_period is False
    assert renamed.period_key == "2024-03"

    ingestor.ingest("alice", [_item("Dinner", "45", 2, category="Dining")])
    assert len(_alerts(store)) == 2

    resized = budgets.update(
        "alice", budget_id, BudgetIn(category="dining", limit=Decimal("60"))
    )
    assert resized.category == "Dining"
    assert resized.notified_for_current_period is True


def test_budget_update_rejects_clashes_and_foreign_ids(store) -> None:
    food = _budget(store, "Food")
    fun = _budget(store, "Fun")
    budgets = BudgetService(store, clock=lambda: NOW)

    with pytest.raises(ValidationError):
        budgets.update("alice", fun, BudgetIn(category="FOOD", limit=Decimal("10")))
    with pytest.raises(NotFoundError):
        budgets.update("bob", food, BudgetIn(category="Food", limit=Decimal("10")))
    assert [b.category for b in budgets.list("alice")] == ["Food", "Fun"]


def test_budget_list_filters_by_category_substring(store) -> None:
    for category in ("Groceries", "Dining out", "Rent"):
        _budget(store, category)
    budgets = BudgetService(store, clock=lambda: NOW)

    assert [b.category for b in budgets.list("alice", category="IN")] == ["Dining out"]
    assert [b.category for b in budgets.list("alice", category=" ent ")] == ["Rent"]
    assert budgets.list("alice", category="%") == []
    assert len(budgets.list("alice")) == 3
