from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import func, select, union, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database import SessionLocal, session_scope
from errors import NotFoundError, PersistenceError, ValidationError
from models import Budget, LedgerEntry, Notification, NotificationKind
from results import Lookup


class LedgerStore:
    """Persistence boundary for ledger entries, budgets and notifications.

    Every call runs in its own short-lived session, so callers on different
    threads never share state. All amounts are integer cents. Category
    comparisons are case-insensitive.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self.session_factory = session_factory or SessionLocal

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with session_scope(self.session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Ledger store failure: {exc}") from exc

    # ledger entries

    def insert_if_absent(self, entry: LedgerEntry) -> bool:
        """Insert ``entry`` unless its (user_id, dedup_key) already exists.

        The unique constraint decides races between concurrent writers: the
        loser sees an IntegrityError and reports the entry as already present.
        """
        session: Session = self.session_factory()
        try:
            if self._find_duplicate(session, entry) is not None:
                return False
            session.add(entry)
            session.commit()
            return True
        except IntegrityError as exc:
            session.rollback()
            if self._find_duplicate(session, entry) is None:
                raise PersistenceError(f"Ledger insert rejected: {exc}") from exc
            return False
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(f"Ledger insert failed: {exc}") from exc
        finally:
            session.close()

    def _find_duplicate(self, session: Session, entry: LedgerEntry) -> Optional[int]:
        return session.scalar(
            select(LedgerEntry.id).where(
                LedgerEntry.user_id == entry.user_id,
                LedgerEntry.dedup_key == entry.dedup_key,
            )
        )

    def get_entry(self, user_id: str, entry_id: int) -> Lookup[LedgerEntry]:
        with self._session() as session:
            entry = session.get(LedgerEntry, entry_id)
            if not entry or entry.user_id != user_id:
                return Lookup.not_found("Ledger entry not found")
            return Lookup.found(entry)

    def amend_entry(
        self,
        user_id: str,
        entry_id: int,
        *,
        category: Optional[str] = None,
        amount_cents: Optional[int] = None,
        description: Optional[str] = None,
    ) -> tuple[LedgerEntry, str]:
        """Apply a user correction. Returns the entry and its previous category.

        The dedup key is left untouched so a later replay of the original
        external transaction is still recognised.
        """
        with self._session() as session:
            entry = session.get(LedgerEntry, entry_id)
            if not entry or entry.user_id != user_id:
                raise NotFoundError("Ledger entry not found")
            previous_category = entry.category
            if category is not None:
                entry.category = category
            if amount_cents is not None:
                entry.amount_cents = amount_cents
            if description is not None:
                entry.description = description
            session.flush()
            return entry, previous_category

    def list_entries(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        category: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        stmt = select(LedgerEntry).where(LedgerEntry.user_id == user_id)
        if since is not None:
            stmt = stmt.where(LedgerEntry.occurred_at >= since)
        if until is not None:
            stmt = stmt.where(LedgerEntry.occurred_at <= until)
        if category:
            stmt = stmt.where(func.lower(LedgerEntry.category) == category.lower())
        stmt = (
            stmt.order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self._session() as session:
            return list(session.scalars(stmt).all())

    def known_categories(self, user_id: str) -> list[str]:
        stmt = union(
            select(LedgerEntry.category).where(LedgerEntry.user_id == user_id),
            select(Budget.category).where(Budget.user_id == user_id),
        )
        with self._session() as session:
            return sorted({row[0] for row in session.execute(stmt)})

    def sum_by_category(
        self,
        user_id: str,
        category: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> int:
        stmt = select(func.coalesce(func.sum(LedgerEntry.amount_cents), 0)).where(
            LedgerEntry.user_id == user_id,
            func.lower(LedgerEntry.category) == category.lower(),
            LedgerEntry.occurred_at >= since,
        )
        if until is not None:
            stmt = stmt.where(LedgerEntry.occurred_at <= until)
        with self._session() as session:
            return int(session.execute(stmt).scalar_one() or 0)

    def sum_for_user(
        self, user_id: str, since: datetime, until: Optional[datetime] = None
    ) -> int:
        stmt = select(func.coalesce(func.sum(LedgerEntry.amount_cents), 0)).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.occurred_at >= since,
        )
        if until is not None:
            stmt = stmt.where(LedgerEntry.occurred_at <= until)
        with self._session() as session:
            return int(session.execute(stmt).scalar_one() or 0)

    def totals_by_category(
        self, user_id: str, since: datetime, until: datetime
    ) -> dict[str, int]:
        stmt = (
            select(
                LedgerEntry.category,
                func.coalesce(func.sum(LedgerEntry.amount_cents), 0).label("spent"),
            )
            .where(
                LedgerEntry.user_id == user_id,
                LedgerEntry.occurred_at.between(since, until),
            )
            .group_by(LedgerEntry.category)
        )
        with self._session() as session:
            return {row.category: int(row.spent or 0) for row in session.execute(stmt)}

    def totals_by_month(self, user_id: str) -> list[tuple[str, int]]:
        month = func.strftime("%Y-%m", LedgerEntry.occurred_at).label("month")
        stmt = (
            select(month, func.sum(LedgerEntry.amount_cents).label("spent"))
            .where(LedgerEntry.user_id == user_id)
            .group_by(month)
            .order_by(month)
        )
        with self._session() as session:
            return [(row.month, int(row.spent or 0)) for row in session.execute(stmt)]

    def list_users(self) -> list[str]:
        stmt = union(
            select(LedgerEntry.user_id).distinct(),
            select(Budget.user_id).distinct(),
        )
        with self._session() as session:
            return sorted(row[0] for row in session.execute(stmt))

    # budgets

    def list_budgets(
        self, user_id: str, *, category: Optional[str] = None
    ) -> list[Budget]:
        stmt = select(Budget).where(Budget.user_id == user_id)
        if category:
            stmt = stmt.where(
                func.lower(Budget.category).contains(
                    category.strip().lower(), autoescape=True
                )
            )
        stmt = stmt.order_by(Budget.category, Budget.id)
        with self._session() as session:
            return list(session.scalars(stmt).all())

    def find_budget(self, user_id: str, category: str) -> Lookup[Budget]:
        stmt = select(Budget).where(
            Budget.user_id == user_id,
            func.lower(Budget.category) == category.strip().lower(),
        )
        with self._session() as session:
            budget = session.scalar(stmt)
            if budget is None:
                return Lookup.not_found(f"No budget for category '{category}'")
            return Lookup.found(budget)

    def upsert_budget(
        self, user_id: str, category: str, limit_cents: int, period_key: str
    ) -> Budget:
        with self._session() as session:
            existing = session.scalar(
                select(Budget).where(
                    Budget.user_id == user_id,
                    func.lower(Budget.category) == category.lower(),
                )
            )
            if existing:
                existing.limit_cents = limit_cents
                session.flush()
                return existing
            budget = Budget(
                user_id=user_id,
                category=category,
                limit_cents=limit_cents,
                notified_for_current_period=False,
                period_key=period_key,
            )
            session.add(budget)
            session.flush()
            return budget

    def update_budget(
        self,
        user_id: str,
        budget_id: int,
        *,
        category: str,
        limit_cents: int,
        period_key: str,
    ) -> Budget:
        """Edit a budget by id. Renaming it starts the alert over for ``period_key``."""
        with self._session() as session:
            budget = session.get(Budget, budget_id)
            if not budget or budget.user_id != user_id:
                raise NotFoundError("Budget not found")
            if category.lower() != budget.category.lower():
                clash = session.scalar(
                    select(Budget.id).where(
                        Budget.user_id == user_id,
                        func.lower(Budget.category) == category.lower(),
                        Budget.id != budget_id,
                    )
                )
                if clash is not None:
                    raise ValidationError(
                        f"A budget for category '{category}' already exists"
                    )
                budget.notified_for_current_period = False
                budget.period_key = period_key
            budget.category = category
            budget.limit_cents = limit_cents
            session.flush()
            return budget

    def delete_budget(self, user_id: str, budget_id: int) -> None:
        with self._session() as session:
            budget = session.get(Budget, budget_id)
            if not budget or budget.user_id != user_id:
                raise NotFoundError("Budget not found")
            session.delete(budget)

    def set_notified_flag(
        self, budget_id: int, value: bool, *, period_key: Optional[str] = None
    ) -> bool:
        """Compare-and-set the notified flag; True only for the caller that flipped it."""
        stmt = update(Budget).where(
            Budget.id == budget_id,
            Budget.notified_for_current_period.is_(not value),
        )
        if period_key is not None:
            stmt = stmt.where(Budget.period_key == period_key)
        stmt = stmt.values(notified_for_current_period=value)
        with self._session() as session:
            return session.execute(stmt).rowcount == 1

    def roll_budget_period(self, budget_id: int, period_key: str) -> bool:
        stmt = (
            update(Budget)
            .where(Budget.id == budget_id, Budget.period_key != period_key)
            .values(period_key=period_key, notified_for_current_period=False)
        )
        with self._session() as session:
            return session.execute(stmt).rowcount == 1

    # notifications

    def add_notification(
        self,
        user_id: str,
        message: str,
        kind: NotificationKind = NotificationKind.general,
    ) -> Notification:
        with self._session() as session:
            notification = Notification(
                user_id=user_id,
                message=message,
                kind=kind,
                created_at=datetime.utcnow(),
                is_read=False,
            )
            session.add(notification)
            session.flush()
            return notification

    def list_notifications(
        self, user_id: str, *, unread_only: bool = False, limit: int = 100
    ) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(
            Notification.created_at.desc(), Notification.id.desc()
        ).limit(limit)
        with self._session() as session:
            return list(session.scalars(stmt).all())

    def mark_notification_read(self, user_id: str, notification_id: int) -> None:
        with self._session() as session:
            notification = session.get(Notification, notification_id)
            if not notification or notification.user_id != user_id:
                raise NotFoundError("Notification not found")
            notification.is_read = True
