from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from analytics import (
    Comparison,
    Granularity,
    LedgerEntry,
    Metric,
    PeriodSummary,
    cash_flow,
    compare_summaries,
    group_totals,
    select_entries,
    share_pct,
    summarize,
    totals_by_category,
    totals_by_month,
    weekday_pattern,
)
from config import get_settings
from insights import (
    SUGGESTED_ACTIONS,
    InsightConfig,
    InsightEngine,
    answer_question,
    predict,
    prediction_window,
)
from models import (
    Category,
    NotificationKind,
    NotificationLog,
    Transaction,
    TransactionType,
    User,
)
from periods import (
    Period,
    add_months,
    local_now,
    local_today,
    month_end,
    month_start,
    previous_period,
    resolve_period,
    trailing_days,
)
from schemas import (
    CategoryIn,
    CategoryUpdate,
    PasswordChange,
    Preferences,
    ProfileUpdate,
    TransactionIn,
    TransactionUpdate,
    UserIn,
)
from security import hash_password, verify_password


logger = logging.getLogger(__name__)

ALL_TIME = Period("all", date.min, date.max)


def cents_to_amount(cents: float) -> float:
    return round(cents / 100, 2)


def summary_payload(summary: PeriodSummary) -> dict[str, object]:
    return {
        "income": cents_to_amount(summary.total_income_cents),
        "expenses": cents_to_amount(summary.total_expense_cents),
        "balance": cents_to_amount(summary.balance_cents),
        "totalCashback": cents_to_amount(summary.total_cashback_cents),
        "transactionCount": summary.transaction_count,
    }


def comparison_payload(comparison: Comparison) -> dict[str, object]:
    return {
        "current": cents_to_amount(comparison.current_value),
        "previous": cents_to_amount(comparison.previous_value),
        "delta": cents_to_amount(comparison.absolute_delta),
        "percent_change": round(comparison.percent_change, 1),
        "direction": comparison.direction.value,
    }


def ledger_entry(txn: Transaction) -> LedgerEntry:
    category = txn.category
    return LedgerEntry(
        id=txn.id,
        user_id=txn.user_id,
        type=txn.type,
        category=category.name if category else "",
        amount_cents=txn.amount_cents,
        date=txn.date,
        cashback_cents=txn.cashback_cents or 0,
        category_id=txn.category_id,
        category_tag=category.tag if category else None,
        description=txn.description,
    )


class SqlLedger:
    """Reads transactions for the aggregation engine."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_transactions(self, user_id: int, period: Period) -> list[LedgerEntry]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        return [ledger_entry(txn) for txn in self.session.scalars(stmt).all()]


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    query: Optional[str] = None
    start: Optional[date] = None
    end: Optional[date] = None


DEFAULT_CATEGORIES: tuple[tuple[TransactionType, str, str, str, str], ...] = (
    (TransactionType.income, "Salary", "💼", "#22C55E", "salary"),
    (TransactionType.income, "Freelance", "💻", "#10B981", "freelance"),
    (TransactionType.income, "Investments", "📈", "#059669", "investments"),
    (TransactionType.income, "Sales", "🛒", "#047857", "sales"),
    (TransactionType.income, "Other", "💰", "#065F46", "other"),
    (TransactionType.expense, "Food", "🍽️", "#EF4444", "food"),
    (TransactionType.expense, "Transport", "🚗", "#DC2626", "transport"),
    (TransactionType.expense, "Housing", "🏠", "#B91C1C", "housing"),
    (TransactionType.expense, "Health", "🏥", "#991B1B", "health"),
    (TransactionType.expense, "Education", "📚", "#7F1D1D", "education"),
    (TransactionType.expense, "Leisure", "🎮", "#F97316", "leisure"),
    (TransactionType.expense, "Shopping", "🛍️", "#EA580C", "shopping"),
    (TransactionType.expense, "Bills", "🧾", "#C2410C", "bills"),
    (TransactionType.expense, "Other", "💸", "#9A3412", "other"),
)


def _clean_tag(tag: Optional[str]) -> Optional[str]:
    if tag is None:
        return None
    tag = tag.strip().lower()
    return tag or None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )

    def register(self, data: UserIn) -> User:
        if self._by_email(data.email):
            raise ValueError("Email already registered")
        user = User(
            name=data.name.strip(),
            email=data.email.strip().lower(),
            password_hash=hash_password(data.password),
            monthly_income_cents=data.monthly_income_cents,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self._by_email(email)
        if not user or not user.is_active or not verify_password(
            password, user.password_hash
        ):
            raise ValueError("Invalid email or password")
        user.last_login_at = datetime.utcnow()
        self.session.commit()
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user or not user.is_active:
            raise ValueError("User not found")
        return user

    def update_profile(self, user_id: int, data: ProfileUpdate) -> User:
        user = self.get(user_id)
        if data.email is not None:
            existing = self._by_email(data.email)
            if existing and existing.id != user.id:
                raise ValueError("Email already registered")
            user.email = data.email.strip().lower()
        if data.name is not None:
            user.name = data.name.strip()
        if data.monthly_income_cents is not None:
            user.monthly_income_cents = data.monthly_income_cents
        self.session.commit()
        self.session.refresh(user)
        return user

    def change_password(self, user_id: int, data: PasswordChange) -> None:
        user = self.get(user_id)
        if not verify_password(data.current_password, user.password_hash):
            raise ValueError("Current password is incorrect")
        user.password_hash = hash_password(data.new_password)
        self.session.commit()

    def set_preferences(self, user_id: int, data: Preferences) -> User:
        user = self.get(user_id)
        user.notifications = data.notifications
        self.session.commit()
        return user

    def delete(self, user_id: int) -> None:
        user = self.get(user_id)
        self.session.execute(
            delete(NotificationLog).where(NotificationLog.user_id == user.id)
        )
        self.session.execute(delete(Transaction).where(Transaction.user_id == user.id))
        self.session.execute(delete(Category).where(Category.user_id == user.id))
        self.session.expunge(user)
        self.session.execute(delete(User).where(User.id == user_id))
        self.session.commit()
        logger.info(f"user_deleted: user_id={user_id}")

    def notification_recipients(self) -> list[User]:
        stmt = (
            select(User)
            .where(User.is_active.is_(True), User.notifications.is_(True))
            .order_by(User.id)
        )
        return self.session.scalars(stmt).all()


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        return category

    def _ensure_unique(
        self, type: TransactionType, name: str, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            Category.type == type,
            func.lower(Category.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValueError("Category with this name already exists")

    def create(self, data: CategoryIn) -> Category:
        self._ensure_unique(data.type, data.name)
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
            icon=data.icon,
            tag=_clean_tag(data.tag),
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        if data.name is not None:
            self._ensure_unique(category.type, data.name, exclude_id=category.id)
            category.name = data.name.strip()
        if data.color is not None:
            category.color = data.color
        if data.icon is not None:
            category.icon = data.icon
        if data.tag is not None:
            category.tag = _clean_tag(data.tag)
        self.session.commit()
        self.session.refresh(category)
        return category

    def usage_count(self, category_id: int) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id,
            Transaction.category_id == category_id,
        )
        return self.session.execute(stmt).scalar_one() or 0

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        if self.usage_count(category.id) > 0:
            raise ValueError("Category has transactions and cannot be deleted")
        self.session.delete(category)
        self.session.commit()

    def create_defaults(self) -> list[Category]:
        existing = self.session.execute(
            select(func.count(Category.id)).where(Category.user_id == self.user_id)
        ).scalar_one()
        if existing:
            raise ValueError("User already has categories")
        created = []
        for type, name, icon, color, tag in DEFAULT_CATEGORIES:
            category = Category(
                user_id=self.user_id,
                name=name,
                type=type,
                icon=icon,
                color=color,
                tag=tag,
            )
            self.session.add(category)
            created.append(category)
        self.session.commit()
        return created


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _category_for(self, category_id: int, type: TransactionType) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        if category.type != type:
            raise ValueError("Category type mismatch")
        return category

    def create(self, data: TransactionIn) -> Transaction:
        self._category_for(data.category_id, data.type)
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            cashback_cents=data.cashback_cents,
            category_id=data.category_id,
            description=data.description.strip(),
            notes=data.notes,
        )
        self.session.add(txn)
        self.session.commit()
        return self.get(txn.id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        for key in ("date", "type", "amount_cents", "category_id", "description"):
            if key in changes and changes[key] is None:
                raise ValueError(f"{key} cannot be empty")

        new_type = changes.get("type", txn.type)
        new_category_id = changes.get("category_id", txn.category_id)
        if "type" in changes or "category_id" in changes:
            self._category_for(new_category_id, new_type)

        for key, value in changes.items():
            if key == "description":
                value = value.strip()
            if key == "cashback_cents" and value is None:
                value = 0
            setattr(txn, key, value)
        self.session.commit()
        self.session.expire(txn)
        return self.get(transaction_id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()

    def _filtered(self, filters: TransactionFilters):
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        return stmt

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        filters = filters or TransactionFilters()
        if filters.start and filters.end and filters.start > filters.end:
            raise ValueError("Start date must be before end date")
        base = self._filtered(filters)
        total = self.session.execute(
            select(func.count()).select_from(base.subquery())
        ).scalar_one()
        stmt = (
            base.options(joinedload(Transaction.category))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).all(), total

    def all(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def count(self) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id
        )
        return self.session.execute(stmt).scalar_one() or 0

    def summary(self) -> dict[str, object]:
        entries = SqlLedger(self.session).list_transactions(self.user_id, ALL_TIME)
        return summary_payload(summarize(entries))

    def monthly_summary(self, year: int) -> list[dict[str, object]]:
        period = Period("year", date(year, 1, 1), date(year, 12, 31))
        entries = SqlLedger(self.session).list_transactions(self.user_id, period)
        income = totals_by_month(entries, TransactionType.income)
        expense = totals_by_month(entries, TransactionType.expense)
        rows = []
        for month in range(1, 13):
            inc = income.get((year, month))
            exp = expense.get((year, month))
            income_cents = inc.total_cents if inc else 0
            expense_cents = exp.total_cents if exp else 0
            rows.append(
                {
                    "month": month,
                    "income": cents_to_amount(income_cents),
                    "expenses": cents_to_amount(expense_cents),
                    "balance": cents_to_amount(income_cents - expense_cents),
                    "transaction_count": (inc.count if inc else 0)
                    + (exp.count if exp else 0),
                }
            )
        return rows

    def category_summary(
        self, period: Period, type: Optional[TransactionType] = None
    ) -> list[dict[str, object]]:
        """Totals per category; ``type=None`` covers income and expense.

        ``percentage`` is the category's share of its own type's total.
        """
        entries = select_entries(
            SqlLedger(self.session).list_transactions(self.user_id, period), type=type
        )
        buckets = group_totals(entries, lambda e: (e.type, e.category_id))
        type_totals: dict[TransactionType, int] = {}
        for (entry_type, _), bucket in buckets.items():
            type_totals[entry_type] = type_totals.get(entry_type, 0) + bucket.total_cents
        categories = {
            c.id: c for c in CategoryService(self.session, self.user_id).list_all(type)
        }
        rows = []
        for (entry_type, category_id), bucket in buckets.items():
            category = categories.get(category_id)
            rows.append(
                {
                    "category_id": category_id,
                    "type": entry_type.value,
                    "name": category.name if category else "",
                    "color": category.color if category else None,
                    "icon": category.icon if category else None,
                    "total": cents_to_amount(bucket.total_cents),
                    "count": bucket.count,
                    "percentage": round(
                        share_pct(bucket.total_cents, type_totals[entry_type]), 1
                    ),
                }
            )
        rows.sort(key=lambda r: (r["type"], -r["total"], r["name"]))
        return rows


class AnalyticsService:
    def __init__(
        self, session: Session, user_id: int, today: Optional[date] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.today = today or local_today()
        self.ledger = SqlLedger(session)
        self.flat_threshold = get_settings().flat_threshold_pct

    def _comparisons(
        self, current: PeriodSummary, previous: PeriodSummary
    ) -> dict[str, object]:
        return {
            metric.value: comparison_payload(
                compare_summaries(
                    current, previous, metric, flat_threshold=self.flat_threshold
                )
            )
            for metric in Metric
        }

    def _category_styles(self) -> dict[str, Category]:
        categories = CategoryService(self.session, self.user_id).list_all(
            TransactionType.expense
        )
        return {c.name: c for c in categories}

    def dashboard(self, period_slug: str = "month") -> dict[str, object]:
        if period_slug not in {"week", "month", "year"}:
            raise ValueError("Period must be one of: week, month, year")
        period = resolve_period(period_slug, today=self.today)
        prev = previous_period(period)
        history_start = min(prev.start, add_months(self.today, -11))
        entries = self.ledger.list_transactions(
            self.user_id, Period("dashboard", history_start, period.end)
        )
        current = summarize(entries, start=period.start, end=period.end)
        previous = summarize(entries, start=prev.start, end=prev.end)

        styles = self._category_styles()
        breakdown = []
        for name, amount in sorted(
            current.by_category.items(), key=lambda item: (-item[1], item[0])
        ):
            category = styles.get(name)
            breakdown.append(
                {
                    "name": name,
                    "amount": cents_to_amount(amount),
                    "percentage": round(
                        share_pct(amount, current.total_expense_cents), 1
                    ),
                    "color": category.color if category else None,
                    "icon": category.icon if category else None,
                }
            )

        evolution = []
        for offset in range(11, -1, -1):
            first = add_months(self.today, -offset)
            month = summarize(entries, start=first, end=month_end(first))
            evolution.append(
                {
                    "month": f"{first.year:04d}-{first.month:02d}",
                    "income": cents_to_amount(month.total_income_cents),
                    "expenses": cents_to_amount(month.total_expense_cents),
                    "balance": cents_to_amount(month.balance_cents),
                }
            )

        expenses = select_entries(
            entries, start=period.start, end=period.end, type=TransactionType.expense
        )
        expenses.sort(key=lambda e: (-e.amount_cents, -e.date.toordinal(), e.id))
        top_expenses = [
            {
                "id": e.id,
                "description": e.description,
                "amount": cents_to_amount(e.amount_cents),
                "date": e.date.isoformat(),
                "category": e.category,
            }
            for e in expenses[:5]
        ]

        return {
            "period": {
                "slug": period.slug,
                "start": period.start.isoformat(),
                "end": period.end.isoformat(),
            },
            "summary": summary_payload(current),
            "comparison": self._comparisons(current, previous),
            "category_breakdown": breakdown,
            "monthly_evolution": evolution,
            "top_expenses": top_expenses,
        }

    def trends(self) -> dict[str, object]:
        this_month = month_start(self.today)
        last_month = add_months(self.today, -1)
        window_start = add_months(self.today, -3)
        entries = self.ledger.list_transactions(
            self.user_id, Period("trends", window_start, self.today)
        )
        current = summarize(entries, start=this_month, end=self.today)
        previous = summarize(entries, start=last_month, end=month_end(last_month))

        weekdays = []
        for row in weekday_pattern(entries):
            weekdays.append(
                {
                    "day": row["day"],
                    "day_index": row["day_index"],
                    "avg_income": cents_to_amount(row["avg_income_cents"]),
                    "avg_expense": cents_to_amount(row["avg_expense_cents"]),
                    "income_count": row["income_count"],
                    "expense_count": row["expense_count"],
                }
            )

        recent = trailing_days(self.today, 30, "recent")
        usage = group_totals(
            select_entries(entries, start=recent.start, end=recent.end),
            lambda e: (e.type.value, e.category),
        )
        ranked = sorted(
            usage.items(),
            key=lambda item: (-item[1].count, -item[1].total_cents, item[0]),
        )
        top_categories = [
            {
                "name": name,
                "type": type,
                "count": bucket.count,
                "total": cents_to_amount(bucket.total_cents),
            }
            for (type, name), bucket in ranked[:10]
        ]

        return {
            "current_month": summary_payload(current),
            "previous_month": summary_payload(previous),
            "comparison": self._comparisons(current, previous),
            "weekday_pattern": weekdays,
            "top_categories": top_categories,
        }

    def cash_flow(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        granularity: Granularity = Granularity.day,
    ) -> dict[str, object]:
        end = end or self.today
        start = start or end - timedelta(days=29)
        if start > end:
            raise ValueError("Start date must be before end date")
        entries = self.ledger.list_transactions(
            self.user_id, Period("cash_flow", start, end)
        )
        series = [
            {
                "period": row["period"],
                "income": cents_to_amount(row["income_cents"]),
                "expenses": cents_to_amount(row["expense_cents"]),
                "balance": cents_to_amount(row["balance_cents"]),
            }
            for row in cash_flow(entries, granularity)
        ]
        return {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "group_by": granularity.value,
            "series": series,
            "totals": summary_payload(summarize(entries)),
        }

    def dashboard_summary(self) -> dict[str, object]:
        this_month = month_start(self.today)
        last_month = add_months(self.today, -1)
        entries = self.ledger.list_transactions(
            self.user_id, Period("summary", last_month, month_end(this_month))
        )
        current = summarize(entries, start=this_month, end=month_end(this_month))
        previous = summarize(entries, start=last_month, end=month_end(last_month))
        expense_change = compare_summaries(
            current, previous, Metric.expense, flat_threshold=self.flat_threshold
        )

        last = self.session.scalar(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(1)
        )
        month_expenses = totals_by_category(
            select_entries(entries, start=this_month, end=month_end(this_month)),
            TransactionType.expense,
        )
        top = sorted(month_expenses.items(), key=lambda i: (-i[1].total_cents, i[0]))
        return {
            "month": {
                "income": cents_to_amount(current.total_income_cents),
                "expenses": cents_to_amount(current.total_expense_cents),
                "balance": cents_to_amount(current.balance_cents),
                "transaction_count": current.transaction_count,
            },
            "expense_change": comparison_payload(expense_change),
            "last_transaction": (
                {
                    "id": last.id,
                    "description": last.description,
                    "amount": cents_to_amount(last.amount_cents),
                    "type": last.type.value,
                    "date": last.date.isoformat(),
                    "category": last.category.name if last.category else None,
                }
                if last
                else None
            ),
            "top_categories": [
                {
                    "name": name,
                    "total": cents_to_amount(bucket.total_cents),
                    "count": bucket.count,
                }
                for name, bucket in top[:3]
            ],
        }


class InsightsService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        today: Optional[date] = None,
        engine: Optional[InsightEngine] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.today = today or local_today()
        self.ledger = SqlLedger(session)
        self.engine = engine or InsightEngine(InsightConfig.from_settings(get_settings()))

    def insights(self) -> dict[str, object]:
        items = self.engine.generate_for(self.ledger, self.user_id, self.today)
        return {
            "insights": [i.to_dict() for i in items],
            "generatedAt": local_now().isoformat(),
            "totalInsights": len(items),
        }

    def recommendations(self) -> dict[str, object]:
        items = self.engine.recommend_for(self.ledger, self.user_id, self.today)
        return {
            "recommendations": [i.to_dict() for i in items],
            "generatedAt": local_now().isoformat(),
            "total": len(items),
        }

    def predictions(self) -> dict[str, object]:
        entries = self.ledger.list_transactions(
            self.user_id, prediction_window(self.today)
        )
        raw = predict(entries, self.today)
        return {
            "predictions": [
                {
                    "month": row["month"],
                    "month_name": row["month_name"],
                    "predicted_income": cents_to_amount(row["predicted_income_cents"]),
                    "predicted_expenses": cents_to_amount(
                        row["predicted_expense_cents"]
                    ),
                    "predicted_balance": cents_to_amount(
                        row["predicted_balance_cents"]
                    ),
                    "confidence": row["confidence"],
                }
                for row in raw["predictions"]
            ],
            "based_on_months": raw["based_on_months"],
            "avg_monthly_income": cents_to_amount(raw["avg_monthly_income_cents"]),
            "avg_monthly_expenses": cents_to_amount(raw["avg_monthly_expense_cents"]),
            "note": raw["note"],
        }

    @staticmethod
    def ask(question: str) -> dict[str, object]:
        return {
            "question": question,
            "answer": answer_question(question),
            "suggestions": list(SUGGESTED_ACTIONS),
            "timestamp": local_now().isoformat(),
        }


class NotificationLogService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def already_sent(self, user_id: int, kind: NotificationKind, scope: str) -> bool:
        stmt = select(NotificationLog.id).where(
            NotificationLog.user_id == user_id,
            NotificationLog.kind == kind,
            NotificationLog.scope == scope,
        )
        return self.session.scalar(stmt) is not None

    def claim(self, user_id: int, kind: NotificationKind, scope: str) -> bool:
        """Reserve ``(user, kind, scope)``; False if another run already holds it."""
        self.session.add(NotificationLog(user_id=user_id, kind=kind, scope=scope))
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return False
        return True

    def release(self, user_id: int, kind: NotificationKind, scope: str) -> None:
        self.session.execute(
            delete(NotificationLog).where(
                NotificationLog.user_id == user_id,
                NotificationLog.kind == kind,
                NotificationLog.scope == scope,
            )
        )
        self.session.commit()

    def record(self, user_id: int, kind: NotificationKind, scope: str) -> None:
        """Log a send without reserving the scope."""
        stamp = datetime.utcnow().strftime("%Y%m%dT%H%M%S%f")
        self.session.add(
            NotificationLog(user_id=user_id, kind=kind, scope=f"{scope}@{stamp}")
        )
        self.session.commit()
