"""Rule-based financial insights.

Each rule looks at an :class:`InsightContext` and either returns an
:class:`Insight` or ``None``. Rules run in catalogue order; the result list is
then stable-sorted by priority and truncated.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Callable, Optional, Sequence

from analytics import (
    WEEKDAY_NAMES,
    Comparison,
    LedgerEntry,
    LedgerReader,
    PeriodSummary,
    compare,
    select_entries,
    share_pct,
    summarize,
    top_category,
    totals_by_month,
    totals_by_weekday,
)
from config import Settings
from models import TransactionType
from periods import Period, add_months, month_end, month_start, shift_months


logger = logging.getLogger(__name__)


class Priority(str, Enum):
    critical = "critical"
    high = "high"
    medium = "medium"
    low = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.critical: 4,
    Priority.high: 3,
    Priority.medium: 2,
    Priority.low: 1,
}


@dataclass(frozen=True)
class Insight:
    kind: str
    title: str
    message: str
    priority: Priority
    actionable: bool = False
    action: Optional[str] = None
    data: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "actionable": self.actionable,
            "data": self.data,
        }
        if self.action:
            out["action"] = self.action
        return out


@dataclass(frozen=True)
class CategorySuggestion:
    title: str
    message: str
    action: str
    threshold_cents: int


# keyed by Category.tag
DEFAULT_SUGGESTIONS: dict[str, CategorySuggestion] = {
    "food": CategorySuggestion(
        title="Tip: save on food",
        message="Your food spending is high. Cooking at home more often can cut it considerably.",
        action="See budget-friendly recipes",
        threshold_cents=100_000,
    ),
    "transport": CategorySuggestion(
        title="Tip: rethink transport",
        message="Transport is weighing on your budget. Public transit or ride sharing could help.",
        action="Compare transport options",
        threshold_cents=80_000,
    ),
    "leisure": CategorySuggestion(
        title="Tip: plan your leisure",
        message="Leisure spending is adding up. Setting a monthly fun budget keeps it under control.",
        action="Set a leisure budget",
        threshold_cents=60_000,
    ),
    "shopping": CategorySuggestion(
        title="Tip: pause before buying",
        message="Shopping is one of your larger costs. Waiting 48 hours before non-essential purchases helps.",
        action="Review recent purchases",
        threshold_cents=80_000,
    ),
}


@dataclass(frozen=True)
class InsightConfig:
    window_months: int = 3
    recommendation_months: int = 2
    max_insights: int = 8
    max_recommendations: int = 5
    flat_threshold: float = 1.0
    trend_threshold_pct: float = 15.0
    trend_high_pct: float = 20.0
    activity_days: int = 7
    high_activity_count: int = 20
    concentration_pct: float = 40.0
    investment_surplus_cents: int = 50_000
    small_expense_cents: int = 5_000
    small_expense_share: float = 0.15
    suggestions: dict[str, CategorySuggestion] = field(
        default_factory=lambda: dict(DEFAULT_SUGGESTIONS)
    )

    def __post_init__(self) -> None:
        if self.window_months < 1 or self.recommendation_months < 1:
            raise ValueError("Insight windows must span at least one month")

    @classmethod
    def from_settings(cls, settings: Settings) -> "InsightConfig":
        suggestions = dict(DEFAULT_SUGGESTIONS)
        for tag, cents in settings.category_thresholds.items():
            base = suggestions.get(tag)
            if base is None:
                base = CategorySuggestion(
                    title=f"Tip: watch your {tag} spending",
                    message=f"Spending tagged '{tag}' is above your configured limit.",
                    action="Review this category",
                    threshold_cents=cents,
                )
            suggestions[tag] = CategorySuggestion(
                base.title, base.message, base.action, cents
            )
        return cls(
            window_months=settings.insights_window_months,
            max_insights=settings.max_insights,
            max_recommendations=settings.max_recommendations,
            flat_threshold=settings.flat_threshold_pct,
            suggestions=suggestions,
        )


def format_money(cents: float) -> str:
    return f"R$ {cents / 100:,.2f}"


@dataclass(frozen=True)
class InsightContext:
    entries: Sequence[LedgerEntry]
    today: date
    window: Period
    summary: PeriodSummary
    month_comparison: Comparison
    previous_month_expense_cents: int
    config: InsightConfig


RuleFn = Callable[[InsightContext], Optional[Insight]]


@dataclass(frozen=True)
class Rule:
    name: str
    evaluate: RuleFn
    terminal: bool = False


def rank_insights(
    insights: Sequence[Insight], limit: Optional[int] = None
) -> list[Insight]:
    ranked = sorted(insights, key=lambda i: i.priority.rank, reverse=True)
    if limit is not None:
        ranked = ranked[:limit]
    return ranked


def unavailable_insight() -> Insight:
    return Insight(
        kind="analysis_unavailable",
        title="Analysis unavailable",
        message="We could not analyse your data right now. Please try again later.",
        priority=Priority.medium,
    )


# -- insight rules -----------------------------------------------------------


def no_data_rule(ctx: InsightContext) -> Optional[Insight]:
    if ctx.entries:
        return None
    return Insight(
        kind="welcome",
        title="Welcome to MonetaSis!",
        message="Start adding your first transactions to receive personalised insights about your finances.",
        priority=Priority.high,
        actionable=True,
        action="Add your first transaction",
    )


def top_expense_category_rule(ctx: InsightContext) -> Optional[Insight]:
    top = top_category(ctx.entries, TransactionType.expense)
    if top is None:
        return None
    name, bucket = top
    average = bucket.total_cents / ctx.config.window_months
    return Insight(
        kind="spending_pattern",
        title=f"Biggest expense: {name}",
        message=(
            f"You spent {format_money(bucket.total_cents)} on {name} in the last "
            f"{ctx.config.window_months} months (monthly average: {format_money(average)})."
        ),
        priority=Priority.medium,
        data={
            "category": name,
            "total_cents": bucket.total_cents,
            "monthly_average_cents": round(average),
            "transactions": bucket.count,
        },
    )


def trend_rule(ctx: InsightContext) -> Optional[Insight]:
    if ctx.previous_month_expense_cents <= 0:
        return None
    comparison = ctx.month_comparison
    change = comparison.percent_change
    if abs(change) <= ctx.config.trend_threshold_pct:
        return None
    rising = change > 0
    wording = "increased" if rising else "decreased"
    return Insight(
        kind="trend_analysis",
        title=f"Your spending {wording}",
        message=(
            f"Your spending {wording} {abs(change):.1f}% compared to last month "
            f"({format_money(abs(comparison.absolute_delta))})."
        ),
        priority=Priority.high if change > ctx.config.trend_high_pct else Priority.medium,
        data={
            "trend": "up" if rising else "down",
            "percentage": round(abs(change), 1),
            "current_cents": comparison.current_value,
            "previous_cents": comparison.previous_value,
        },
    )


def savings_rate_rule(ctx: InsightContext) -> Optional[Insight]:
    income = ctx.summary.total_income_cents
    if income <= 0:
        return None
    rate = ctx.summary.balance_cents * 100 / income
    data: dict[str, object] = {"savings_rate": round(rate, 1)}
    if rate >= 20:
        return Insight(
            kind="savings_good",
            title="Excellent savings rate!",
            message=f"You are saving {rate:.1f}% of your income. Keep it up!",
            priority=Priority.low,
            data=data,
        )
    if rate >= 10:
        return Insight(
            kind="savings_moderate",
            title="Good savings, with room to improve",
            message=f"Your savings rate is {rate:.1f}%. Try to reach the recommended 20%.",
            priority=Priority.medium,
            data=data,
        )
    if rate >= 0:
        return Insight(
            kind="savings_low",
            title="Low savings rate",
            message=f"You are saving only {rate:.1f}% of your income. Consider reviewing your expenses.",
            priority=Priority.high,
            actionable=True,
            action="See saving suggestions",
            data=data,
        )
    overspend = -ctx.summary.balance_cents
    data["overspend_cents"] = overspend
    return Insight(
        kind="spending_over_income",
        title="Spending above income!",
        message=f"You are spending {format_money(overspend)} more than you earn. Urgent action needed!",
        priority=Priority.critical,
        actionable=True,
        action="Create a spending reduction plan",
        data=data,
    )


def activity_rule(ctx: InsightContext) -> Optional[Insight]:
    since = ctx.today - timedelta(days=ctx.config.activity_days - 1)
    recent = select_entries(ctx.entries, start=since, end=ctx.today)
    if not recent:
        return Insight(
            kind="activity_low",
            title="No recent activity",
            message="You have not logged any transactions in the last week. Keep your data up to date!",
            priority=Priority.medium,
            actionable=True,
            action="Add transactions",
        )
    if len(recent) > ctx.config.high_activity_count:
        return Insight(
            kind="activity_high",
            title="Lots of financial activity!",
            message=f"You logged {len(recent)} transactions this week. You are on top of your finances!",
            priority=Priority.low,
            data={"count": len(recent)},
        )
    return None


def weekday_spending_rule(ctx: InsightContext) -> Optional[Insight]:
    buckets = totals_by_weekday(ctx.entries, TransactionType.expense)
    if not buckets:
        return None
    day = min(buckets, key=lambda d: (-buckets[d].total_cents, d))
    total = buckets[day].total_cents
    if total <= 0:
        return None
    name = WEEKDAY_NAMES[day]
    return Insight(
        kind="weekday_pattern",
        title=f"{name} is your biggest spending day",
        message=f"You tend to spend more on {name}s ({format_money(total)} in the period).",
        priority=Priority.low,
        data={"day": name, "total_cents": total, "count": buckets[day].count},
    )


def category_suggestion_insights(ctx: InsightContext) -> list[Insight]:
    totals: dict[str, int] = {}
    for entry in ctx.entries:
        if entry.is_expense and entry.category_tag:
            tag = entry.category_tag.lower()
            totals[tag] = totals.get(tag, 0) + entry.amount_cents
    out = []
    for tag, suggestion in ctx.config.suggestions.items():
        spent = totals.get(tag, 0)
        if spent > suggestion.threshold_cents:
            out.append(
                Insight(
                    kind="suggestion",
                    title=suggestion.title,
                    message=suggestion.message,
                    priority=Priority.medium,
                    actionable=True,
                    action=suggestion.action,
                    data={"tag": tag, "total_cents": spent},
                )
            )
    return out


INSIGHT_RULES: tuple[Rule, ...] = (
    Rule("no_data", no_data_rule, terminal=True),
    Rule("top_expense_category", top_expense_category_rule),
    Rule("trend", trend_rule),
    Rule("savings_rate", savings_rate_rule),
    Rule("activity", activity_rule),
    Rule("weekday_spending", weekday_spending_rule),
)


# -- recommendation rules ----------------------------------------------------


@dataclass(frozen=True)
class RecommendationContext:
    entries: Sequence[LedgerEntry]
    summary: PeriodSummary
    months: int
    config: InsightConfig

    @property
    def monthly_income_cents(self) -> float:
        return self.summary.total_income_cents / self.months

    @property
    def monthly_expense_cents(self) -> float:
        return self.summary.total_expense_cents / self.months

    @property
    def monthly_savings_cents(self) -> float:
        return self.monthly_income_cents - self.monthly_expense_cents


def getting_started_recommendation(ctx: RecommendationContext) -> list[Insight]:
    if ctx.entries:
        return []
    return [
        Insight(
            kind="getting_started",
            title="Start your financial journey",
            message="Add your transactions to receive personalised recommendations.",
            priority=Priority.high,
            actionable=True,
            data={
                "actions": [
                    "Add your monthly income",
                    "Log your main expenses",
                    "Create custom categories",
                ]
            },
        )
    ]


def concentration_recommendations(ctx: RecommendationContext) -> list[Insight]:
    total = ctx.summary.total_expense_cents
    out = []
    for category, amount in ctx.summary.by_category.items():
        share = share_pct(amount, total)
        if share > ctx.config.concentration_pct:
            out.append(
                Insight(
                    kind="spending_concentration",
                    title=f"High spending on {category}",
                    message=(
                        f"{share:.1f}% of your budget goes to {category}. "
                        "Consider diversifying or reducing these expenses."
                    ),
                    priority=Priority.high,
                    actionable=True,
                    data={
                        "category": category,
                        "percentage": round(share, 1),
                        "actions": [
                            f"Set a budget for {category}",
                            "Look for cheaper alternatives",
                            "Monitor spending weekly",
                        ],
                    },
                )
            )
    return out


def savings_recommendations(ctx: RecommendationContext) -> list[Insight]:
    surplus = ctx.monthly_savings_cents
    out = []
    if surplus > 0:
        out.append(
            Insight(
                kind="emergency_fund",
                title="Emergency fund",
                message=f"With {format_money(surplus)} left over each month, you can build an emergency fund.",
                priority=Priority.medium,
                actionable=True,
                data={
                    "monthly_surplus_cents": round(surplus),
                    "actions": [
                        "Set aside 20% of the surplus for emergencies",
                        "Open a dedicated savings account",
                        "Target: 6 months of expenses saved",
                    ],
                },
            )
        )
    if surplus > ctx.config.investment_surplus_cents:
        out.append(
            Insight(
                kind="investment",
                title="Time to invest!",
                message=f"With {format_money(surplus)} left over each month, consider investing.",
                priority=Priority.medium,
                actionable=True,
                data={
                    "monthly_surplus_cents": round(surplus),
                    "actions": [
                        "Learn about government bonds",
                        "Compare fixed-income products",
                        "Diversify gradually",
                    ],
                },
            )
        )
    return out


def small_expenses_recommendation(ctx: RecommendationContext) -> list[Insight]:
    small = sum(
        e.amount_cents
        for e in ctx.entries
        if e.is_expense and e.amount_cents < ctx.config.small_expense_cents
    )
    if small <= 0 or small <= ctx.monthly_expense_cents * ctx.config.small_expense_share:
        return []
    return [
        Insight(
            kind="small_expenses",
            title="Watch the small expenses",
            message=(
                f"{format_money(small)} in small expenses over the last {ctx.months} months. "
                "They add up to more than you think!"
            ),
            priority=Priority.medium,
            actionable=True,
            data={
                "total_cents": small,
                "actions": [
                    f"List expenses under {format_money(ctx.config.small_expense_cents)}",
                    "Set a weekly limit for small treats",
                    "Use cash to keep track",
                ],
            },
        )
    ]


RECOMMENDATION_RULES: tuple[
    tuple[Callable[[RecommendationContext], list[Insight]], bool], ...
] = (
    (getting_started_recommendation, True),
    (concentration_recommendations, False),
    (savings_recommendations, False),
    (small_expenses_recommendation, False),
)


class InsightEngine:
    def __init__(
        self,
        config: Optional[InsightConfig] = None,
        rules: Sequence[Rule] = INSIGHT_RULES,
    ) -> None:
        self.config = config or InsightConfig()
        self.rules = tuple(rules)

    def insight_window(self, today: date) -> Period:
        start = add_months(today, -self.config.window_months)
        return Period("insights", start, today)

    def recommendation_window(self, today: date) -> Period:
        return Period(
            "recommendations",
            shift_months(today, -self.config.recommendation_months),
            today,
        )

    def build_context(
        self, entries: Sequence[LedgerEntry], today: date
    ) -> InsightContext:
        window = self.insight_window(today)
        in_window = select_entries(entries, start=window.start, end=window.end)
        this_month = month_start(today)
        last_month = add_months(today, -1)
        current_expense = summarize(
            in_window, start=this_month, end=today
        ).total_expense_cents
        previous_expense = summarize(
            in_window, start=last_month, end=month_end(last_month)
        ).total_expense_cents
        return InsightContext(
            entries=in_window,
            today=today,
            window=window,
            summary=summarize(in_window),
            month_comparison=compare(
                current_expense,
                previous_expense,
                flat_threshold=self.config.flat_threshold,
            ),
            previous_month_expense_cents=previous_expense,
            config=self.config,
        )

    def generate(self, entries: Sequence[LedgerEntry], today: date) -> list[Insight]:
        ctx = self.build_context(entries, today)
        insights: list[Insight] = []
        for rule in self.rules:
            result = rule.evaluate(ctx)
            if result is None:
                continue
            if rule.terminal:
                return [result]
            insights.append(result)
        insights.extend(category_suggestion_insights(ctx))
        return rank_insights(insights, self.config.max_insights)

    def generate_for(
        self, reader: LedgerReader, user_id: int, today: date
    ) -> list[Insight]:
        try:
            entries = reader.list_transactions(user_id, self.insight_window(today))
            return self.generate(entries, today)
        except Exception:
            logger.exception(f"insights_failed: user_id={user_id}")
            return [unavailable_insight()]

    def recommend(self, entries: Sequence[LedgerEntry], today: date) -> list[Insight]:
        window = self.recommendation_window(today)
        in_window = select_entries(entries, start=window.start, end=window.end)
        ctx = RecommendationContext(
            entries=in_window,
            summary=summarize(in_window),
            months=self.config.recommendation_months,
            config=self.config,
        )
        out: list[Insight] = []
        for rule, terminal in RECOMMENDATION_RULES:
            produced = rule(ctx)
            if produced and terminal:
                return produced
            out.extend(produced)
        return rank_insights(out, self.config.max_recommendations)

    def recommend_for(
        self, reader: LedgerReader, user_id: int, today: date
    ) -> list[Insight]:
        try:
            entries = reader.list_transactions(
                user_id, self.recommendation_window(today)
            )
            return self.recommend(entries, today)
        except Exception:
            logger.exception(f"recommendations_failed: user_id={user_id}")
            return [unavailable_insight()]


# -- predictions -------------------------------------------------------------

SEASONAL_EXPENSE_MULTIPLIER = {12: 1.2, 1: 0.9}


def prediction_window(today: date, months_back: int = 6) -> Period:
    return Period("predictions", add_months(today, -months_back), today)


def predict(
    entries: Sequence[LedgerEntry], today: date, *, months_ahead: int = 3
) -> dict[str, object]:
    income_months = totals_by_month(entries, TransactionType.income)
    expense_months = totals_by_month(entries, TransactionType.expense)
    avg_income = (
        sum(b.total_cents for b in income_months.values()) / len(income_months)
        if income_months
        else 0.0
    )
    avg_expense = (
        sum(b.total_cents for b in expense_months.values()) / len(expense_months)
        if expense_months
        else 0.0
    )
    months_with_data = len(set(income_months) | set(expense_months))
    confidence = "medium" if months_with_data >= 3 else "low"

    predictions = []
    for offset in range(1, months_ahead + 1):
        month = add_months(today, offset)
        multiplier = SEASONAL_EXPENSE_MULTIPLIER.get(month.month, 1.0)
        expense = avg_expense * multiplier
        predictions.append(
            {
                "month": f"{month.year:04d}-{month.month:02d}",
                "month_name": month.strftime("%B %Y"),
                "predicted_income_cents": round(avg_income),
                "predicted_expense_cents": round(expense),
                "predicted_balance_cents": round(avg_income - expense),
                "confidence": confidence,
            }
        )
    return {
        "predictions": predictions,
        "based_on_months": months_with_data,
        "avg_monthly_income_cents": round(avg_income),
        "avg_monthly_expense_cents": round(avg_expense),
        "note": "Based on historical averages and simple seasonal patterns",
    }


# -- periodic report ---------------------------------------------------------


def build_period_report(
    entries: Sequence[LedgerEntry], today: date, *, days: int = 15
) -> dict[str, object]:
    """Summary of the last ``days`` days against the ``days`` before them."""
    current_start = today - timedelta(days=days - 1)
    previous_end = current_start - timedelta(days=1)
    previous_start = previous_end - timedelta(days=days - 1)
    current = summarize(entries, start=current_start, end=today)
    previous = summarize(entries, start=previous_start, end=previous_end)

    income = current.total_income_cents
    expense = current.total_expense_cents
    savings_rate = current.balance_cents * 100 / income if income > 0 else 0.0
    top = top_category(
        select_entries(entries, start=current_start, end=today),
        TransactionType.expense,
    )
    top_name = top[0] if top else None
    if previous.total_expense_cents > 0:
        improvement = -compare(expense, previous.total_expense_cents).percent_change
    else:
        improvement = 0.0

    tips: list[str] = []
    if savings_rate < 10:
        tips.append("Try to save at least 10% of your monthly income to build an emergency fund.")
    top_tag = _top_tag(entries, current_start, today)
    if top_tag and top_tag in DEFAULT_SUGGESTIONS:
        tips.append(DEFAULT_SUGGESTIONS[top_tag].message)
    if improvement < 0:
        tips.append("Your spending went up compared to the previous period. Review your transactions to find cuts.")
    if expense > income:
        tips.append("You are spending more than you earn. Reviewing your budget is essential.")
    if savings_rate >= 20:
        tips.append("Great savings rate! Keep going and consider investing the surplus.")
    if len(tips) < 2:
        tips.append("Log your expenses daily to follow your spending in real time.")
        tips.append("Set specific monthly goals for each spending category.")

    return {
        "start": current_start,
        "end": today,
        "income_cents": income,
        "expense_cents": expense,
        "balance_cents": current.balance_cents,
        "savings_rate": round(savings_rate, 1),
        "top_category": top_name,
        "improvement_pct": round(improvement, 1),
        "tips": tips[:3],
    }


def _top_tag(entries: Sequence[LedgerEntry], start: date, end: date) -> Optional[str]:
    top = top_category(select_entries(entries, start=start, end=end))
    if top is None:
        return None
    name = top[0]
    for entry in entries:
        if entry.category == name and entry.category_tag:
            return entry.category_tag.lower()
    return None


# -- canned answers ----------------------------------------------------------

CANNED_ANSWERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"sav(e|ing)|economi", re.IGNORECASE),
        "To save more: 1) track every expense, 2) cut 10% of non-essential spending, "
        "3) automate your savings. Want me to look at your current spending?",
    ),
    (
        re.compile(r"invest", re.IGNORECASE),
        "To start investing: 1) build an emergency fund first, 2) begin with low-risk "
        "government bonds, 3) diversify gradually.",
    ),
    (
        re.compile(r"budget|plan", re.IGNORECASE),
        "A good budget follows the 50/30/20 rule: 50% needs, 30% wants, 20% savings. "
        "I can build one from your transactions.",
    ),
    (
        re.compile(r"debt", re.IGNORECASE),
        "To get out of debt: 1) list every debt with its interest rate, 2) pay the "
        "highest-interest ones first, 3) negotiate better terms.",
    ),
    (
        re.compile(r"goal|target", re.IGNORECASE),
        "Set SMART financial goals: Specific, Measurable, Achievable, Relevant and "
        "Time-bound. Which goal do you have in mind?",
    ),
)

DEFAULT_ANSWER = (
    "Good question! I can help with spending analysis, saving tips, budget planning, "
    "investment strategies and goal setting. Tell me more about what you want to know."
)

SUGGESTED_ACTIONS = [
    "See my insights",
    "Analyse spending by category",
    "Create a financial goal",
    "Generate a monthly report",
]


def answer_question(question: str) -> str:
    for pattern, answer in CANNED_ANSWERS:
        if pattern.search(question):
            return answer
    return DEFAULT_ANSWER
