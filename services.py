from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from pydantic import ValidationError as SchemaValidationError

from banking import BankingClient, RawTransaction
from config import get_settings
from errors import NotFoundError, PersistenceError, UpstreamError, ValidationError
from models import Budget, EntrySource, LedgerEntry, NotificationKind
from money import format_amount, from_cents, to_cents
from notifications import NotificationDispatcher
from periods import Period, local_now, month_period, to_local_naive
from results import LookupStatus
from schemas import BudgetIn, LedgerAmendIn, LedgerEntryIn, RawTransactionIn
from store import LedgerStore

logger = logging.getLogger(__name__)


def normalize_description(value: str) -> str:
    return " ".join(value.split()).casefold()


def compute_dedup_key(
    user_id: str, description: str, occurred_at: datetime, amount_cents: int
) -> str:
    parts = [
        user_id,
        normalize_description(description),
        occurred_at.isoformat(),
        str(amount_cents),
    ]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def resolve_category(name: str, known: Sequence[str]) -> str:
    """Reuse the spelling of an existing category that matches case-insensitively."""
    wanted = name.strip()
    for candidate in known:
        if candidate.strip().lower() == wanted.lower():
            return candidate
    return wanted


def _schema_error_message(exc: SchemaValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "item"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


class EvaluationStatus(str, Enum):
    evaluated = "evaluated"
    no_budget = "no_budget"


@dataclass(frozen=True)
class Evaluation:
    status: EvaluationStatus
    category: str
    period_key: Optional[str] = None
    limit_cents: int = 0
    spent_cents: int = 0
    alerted: bool = False

    @property
    def remaining_cents(self) -> int:
        return self.limit_cents - self.spent_cents

    @property
    def remaining(self) -> Decimal:
        return from_cents(self.remaining_cents)

    @property
    def spent(self) -> Decimal:
        return from_cents(self.spent_cents)


class BudgetEvaluator:
    def __init__(
        self,
        store: LedgerStore,
        dispatcher: NotificationDispatcher,
        *,
        threshold: Optional[Union[float, Decimal]] = None,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        if threshold is None:
            threshold = get_settings().budget_alert_threshold
        self.threshold = Decimal(str(threshold))
        self.clock = clock

    def evaluate(
        self, user_id: str, category: str, *, now: Optional[datetime] = None
    ) -> Evaluation:
        now = now or self.clock()
        lookup = self.store.find_budget(user_id, category)
        if lookup.status != LookupStatus.found:
            return Evaluation(EvaluationStatus.no_budget, category)
        budget: Budget = lookup.value

        period = month_period(now.date())
        already_notified = budget.notified_for_current_period
        if budget.period_key != period.key:
            if self.store.roll_budget_period(budget.id, period.key):
                logger.info(
                    f"budget_period_rolled: budget={budget.id} period={period.key}"
                )
            already_notified = False

        spent = self.store.sum_by_category(
            user_id, budget.category, period.start_at, now
        )
        evaluation = Evaluation(
            EvaluationStatus.evaluated,
            budget.category,
            period_key=period.key,
            limit_cents=budget.limit_cents,
            spent_cents=spent,
        )
        if Decimal(spent) <= self.threshold * budget.limit_cents or already_notified:
            return evaluation
        if not self.store.set_notified_flag(budget.id, True, period_key=period.key):
            # another writer already alerted for this period
            return evaluation

        try:
            self.dispatcher.enqueue(
                user_id,
                self._alert_message(budget, spent, period),
                NotificationKind.budget_alert,
            )
        except PersistenceError:
            self.store.set_notified_flag(budget.id, False, period_key=period.key)
            raise
        logger.info(
            f"budget_alert: user={user_id} budget={budget.id} "
            f"spent_cents={spent} limit_cents={budget.limit_cents}"
        )
        return Evaluation(
            EvaluationStatus.evaluated,
            budget.category,
            period_key=period.key,
            limit_cents=budget.limit_cents,
            spent_cents=spent,
            alerted=True,
        )

    def _alert_message(self, budget: Budget, spent_cents: int, period: Period) -> str:
        percent = int(self.threshold * 100)
        return (
            f"You have spent more than {percent}% of your budget for "
            f"{budget.category} in {period.key}: {format_amount(spent_cents)} of "
            f"{format_amount(budget.limit_cents)}."
        )


@dataclass
class ItemError:
    index: int
    message: str


@dataclass
class IngestResult:
    inserted: list[LedgerEntry] = field(default_factory=list)
    duplicates: int = 0
    errors: list[ItemError] = field(default_factory=list)
    evaluations: list[Evaluation] = field(default_factory=list)
    alert_failures: list[str] = field(default_factory=list)

    @property
    def alerts(self) -> int:
        return sum(1 for e in self.evaluations if e.alerted)


RawItem = Union[RawTransaction, RawTransactionIn, Mapping[str, Any]]


class TransactionIngestor:
    def __init__(
        self,
        store: LedgerStore,
        evaluator: BudgetEvaluator,
        banking: Optional[BankingClient] = None,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.banking = banking

    def sync(self, user_id: str, connection_token: str) -> IngestResult:
        if self.banking is None:
            raise UpstreamError("No banking client configured")
        lookup = self.banking.fetch_transactions(connection_token)
        if lookup.status == LookupStatus.not_found:
            raise NotFoundError(lookup.error or "Bank connection not found")
        if lookup.status == LookupStatus.upstream_failure:
            raise UpstreamError(lookup.error or "Banking service failed")
        return self.ingest(user_id, lookup.value or [])

    def ingest(self, user_id: str, raw_items: Iterable[RawItem]) -> IngestResult:
        result = IngestResult()
        known = self.store.known_categories(user_id)
        for index, raw in enumerate(raw_items):
            try:
                entry = self._build_entry(user_id, raw, known)
            except ValidationError as exc:
                result.errors.append(ItemError(index, str(exc)))
                continue

            try:
                inserted = self.store.insert_if_absent(entry)
            except PersistenceError as exc:
                logger.warning(f"ingest_item_failed: user={user_id} index={index}")
                result.errors.append(ItemError(index, str(exc)))
                continue

            if not inserted:
                result.duplicates += 1
                continue
            result.inserted.append(entry)
            if entry.category not in known:
                known.append(entry.category)

            try:
                result.evaluations.append(
                    self.evaluator.evaluate(user_id, entry.category)
                )
            except PersistenceError as exc:
                # the entry stays committed; only the alert is lost
                logger.warning(
                    f"budget_evaluation_failed: user={user_id} "
                    f"category={entry.category} error={exc}"
                )
                result.alert_failures.append(entry.category)

        logger.info(
            f"ingest_batch: user={user_id} inserted={len(result.inserted)} "
            f"duplicates={result.duplicates} rejected={len(result.errors)}"
        )
        return result

    def _build_entry(
        self, user_id: str, raw: RawItem, known: Sequence[str]
    ) -> LedgerEntry:
        if isinstance(raw, RawTransaction):
            raw = raw.as_dict()
        try:
            item = (
                raw
                if isinstance(raw, RawTransactionIn)
                else RawTransactionIn.model_validate(raw)
            )
        except SchemaValidationError as exc:
            raise ValidationError(_schema_error_message(exc)) from exc

        amount_cents = to_cents(item.amount)
        occurred_at = to_local_naive(item.occurred_at)
        category = resolve_category(item.category, known)
        return LedgerEntry(
            user_id=user_id,
            category=category,
            amount_cents=amount_cents,
            description=item.description,
            occurred_at=occurred_at,
            dedup_key=compute_dedup_key(
                user_id, item.description, occurred_at, amount_cents
            ),
            source=EntrySource.bank_sync,
        )


class LedgerService:
    def __init__(self, store: LedgerStore, evaluator: BudgetEvaluator) -> None:
        self.store = store
        self.evaluator = evaluator

    def add_manual(
        self, user_id: str, data: LedgerEntryIn
    ) -> tuple[LedgerEntry, Optional[Evaluation]]:
        known = self.store.known_categories(user_id)
        occurred_at = to_local_naive(data.occurred_at) if data.occurred_at else None
        entry = LedgerEntry(
            user_id=user_id,
            category=resolve_category(data.category, known),
            amount_cents=to_cents(data.amount),
            description=data.description,
            occurred_at=occurred_at or local_now().replace(microsecond=0),
            # manual entries are never deduplicated against each other
            dedup_key=f"manual:{uuid.uuid4().hex}",
            source=EntrySource.manual,
        )
        self.store.insert_if_absent(entry)
        return entry, self._reevaluate(user_id, entry.category)

    def amend(self, user_id: str, entry_id: int, data: LedgerAmendIn) -> LedgerEntry:
        category = None
        if data.category is not None:
            category = resolve_category(
                data.category, self.store.known_categories(user_id)
            )
        entry, previous_category = self.store.amend_entry(
            user_id,
            entry_id,
            category=category,
            amount_cents=to_cents(data.amount) if data.amount is not None else None,
            description=data.description,
        )
        self._reevaluate(user_id, entry.category)
        if previous_category.lower() != entry.category.lower():
            self._reevaluate(user_id, previous_category)
        return entry

    def get(self, user_id: str, entry_id: int) -> LedgerEntry:
        lookup = self.store.get_entry(user_id, entry_id)
        if not lookup.ok:
            raise NotFoundError(lookup.error or "Ledger entry not found")
        return lookup.value

    def list(
        self,
        user_id: str,
        period: Optional[Period] = None,
        *,
        category: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        return self.store.list_entries(
            user_id,
            since=period.start_at if period else None,
            until=period.end_at if period else None,
            category=category,
            limit=limit,
            offset=offset,
        )

    def _reevaluate(self, user_id: str, category: str) -> Optional[Evaluation]:
        try:
            return self.evaluator.evaluate(user_id, category)
        except PersistenceError as exc:
            logger.warning(
                f"budget_evaluation_failed: user={user_id} category={category} "
                f"error={exc}"
            )
            return None


@dataclass(frozen=True)
class BudgetProgress:
    id: int
    category: str
    limit_cents: int
    spent_cents: int
    notified_for_current_period: bool

    @property
    def remaining_cents(self) -> int:
        return self.limit_cents - self.spent_cents


class BudgetService:
    def __init__(
        self, store: LedgerStore, clock: Callable[[], datetime] = local_now
    ) -> None:
        self.store = store
        self.clock = clock

    def list(self, user_id: str, *, category: Optional[str] = None) -> list[Budget]:
        return self.store.list_budgets(user_id, category=category)

    def upsert(self, user_id: str, data: BudgetIn) -> Budget:
        known = self.store.known_categories(user_id)
        category = resolve_category(data.category, known)
        key = month_period(self.clock().date()).key
        return self.store.upsert_budget(user_id, category, to_cents(data.limit), key)

    def update(self, user_id: str, budget_id: int, data: BudgetIn) -> Budget:
        known = self.store.known_categories(user_id)
        return self.store.update_budget(
            user_id,
            budget_id,
            category=resolve_category(data.category, known),
            limit_cents=to_cents(data.limit),
            period_key=month_period(self.clock().date()).key,
        )

    def delete(self, user_id: str, budget_id: int) -> None:
        self.store.delete_budget(user_id, budget_id)

    def progress(self, user_id: str) -> list[BudgetProgress]:
        now = self.clock()
        period = month_period(now.date())
        rows: list[BudgetProgress] = []
        for budget in self.store.list_budgets(user_id):
            spent = self.store.sum_by_category(
                user_id, budget.category, period.start_at, now
            )
            rows.append(
                BudgetProgress(
                    id=budget.id,
                    category=budget.category,
                    limit_cents=budget.limit_cents,
                    spent_cents=spent,
                    notified_for_current_period=(
                        budget.notified_for_current_period
                        and budget.period_key == period.key
                    ),
                )
            )
        return rows


class ReportService:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def category_summary(self, user_id: str, period: Period) -> list[dict[str, object]]:
        totals = self.store.totals_by_category(user_id, period.start_at, period.end_at)
        grand_total = sum(totals.values())
        items = sorted(totals.items(), key=lambda x: x[1], reverse=True)
        return [
            {
                "category": name,
                "amount_cents": amount,
                "percent": (amount / grand_total * 100) if grand_total > 0 else 0,
            }
            for name, amount in items
        ]

    def monthly_trends(self, user_id: str) -> list[dict[str, object]]:
        return [
            {"month": month, "amount_cents": amount}
            for month, amount in self.store.totals_by_month(user_id)
        ]
