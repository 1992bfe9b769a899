from dataclasses import replace
from datetime import date

import pytest

from analytics import LedgerEntry
from insights import (
    DEFAULT_ANSWER,
    DEFAULT_SUGGESTIONS,
    Insight,
    InsightConfig,
    InsightEngine,
    Priority,
    answer_question,
    build_period_report,
    predict,
    rank_insights,
)
from models import TransactionType
from periods import Period


TODAY = date(2026, 10, 18)


def _entry(
    entry_id: int,
    type: TransactionType,
    category: str,
    amount_cents: int,
    day: date,
    tag: str | None = None,
) -> LedgerEntry:
    return LedgerEntry(
        id=entry_id,
        user_id=1,
        type=type,
        category=category,
        amount_cents=amount_cents,
        date=day,
        category_tag=tag,
    )


def _income(entry_id: int, cents: int, day: date = date(2026, 10, 1)) -> LedgerEntry:
    return _entry(entry_id, TransactionType.income, "Salary", cents, day)


def _expense(
    entry_id: int,
    cents: int,
    day: date = date(2026, 10, 2),
    category: str = "Food",
    tag: str | None = None,
) -> LedgerEntry:
    return _entry(entry_id, TransactionType.expense, category, cents, day, tag)


def _by_kind(insights: list[Insight], kind: str) -> Insight | None:
    for insight in insights:
        if insight.kind == kind:
            return insight
    return None


def test_no_data_yields_only_welcome() -> None:
    insights = InsightEngine().generate([], TODAY)

    assert len(insights) == 1
    assert insights[0].kind == "welcome"
    assert insights[0].priority == Priority.high


def test_savings_rate_above_twenty_is_low_priority() -> None:
    insights = InsightEngine().generate([_income(1, 100_000), _expense(2, 75_000)], TODAY)

    savings = _by_kind(insights, "savings_good")
    assert savings is not None
    assert savings.priority == Priority.low
    assert savings.data["savings_rate"] == 25.0


def test_savings_rate_below_ten_is_high_and_actionable() -> None:
    insights = InsightEngine().generate([_income(1, 100_000), _expense(2, 95_000)], TODAY)

    savings = _by_kind(insights, "savings_low")
    assert savings is not None
    assert savings.priority == Priority.high
    assert savings.actionable is True


def test_savings_rate_between_ten_and_twenty_is_medium() -> None:
    insights = InsightEngine().generate([_income(1, 100_000), _expense(2, 85_000)], TODAY)

    savings = _by_kind(insights, "savings_moderate")
    assert savings is not None
    assert savings.priority == Priority.medium


def test_spending_over_income_is_critical_with_overspend() -> None:
    insights = InsightEngine().generate([_income(1, 100_000), _expense(2, 120_000)], TODAY)

    overspend = _by_kind(insights, "spending_over_income")
    assert overspend is not None
    assert overspend.priority == Priority.critical
    assert overspend.data["overspend_cents"] == 20_000
    assert "R$ 200.00" in overspend.message
    # critical outranks everything else
    assert insights[0].kind == "spending_over_income"


def test_savings_rule_skipped_without_income() -> None:
    insights = InsightEngine().generate([_expense(1, 10_000)], TODAY)

    kinds = {i.kind for i in insights}
    assert not kinds & {
        "savings_good",
        "savings_moderate",
        "savings_low",
        "spending_over_income",
    }


def test_top_expense_category_uses_window_average() -> None:
    entries = [
        _expense(1, 30_000, date(2026, 9, 3)),
        _expense(2, 10_000, date(2026, 9, 4), category="Transport"),
        _expense(3, 20_000, date(2026, 10, 3)),
    ]

    top = _by_kind(InsightEngine().generate(entries, TODAY), "spending_pattern")

    assert top is not None
    assert top.data["category"] == "Food"
    assert top.data["total_cents"] == 50_000
    assert top.data["monthly_average_cents"] == round(50_000 / 3)


def test_trend_between_fifteen_and_twenty_percent_is_medium() -> None:
    entries = [
        _expense(1, 100_000, date(2026, 9, 10)),
        _expense(2, 118_000, date(2026, 10, 10)),
    ]

    trend = _by_kind(InsightEngine().generate(entries, TODAY), "trend_analysis")

    assert trend is not None
    assert trend.priority == Priority.medium
    assert trend.data["percentage"] == 18.0
    assert trend.data["trend"] == "up"


def test_trend_above_twenty_percent_is_high() -> None:
    entries = [
        _expense(1, 100_000, date(2026, 9, 10)),
        _expense(2, 125_000, date(2026, 10, 10)),
    ]

    trend = _by_kind(InsightEngine().generate(entries, TODAY), "trend_analysis")

    assert trend is not None
    assert trend.priority == Priority.high


def test_trend_within_fifteen_percent_does_not_fire() -> None:
    entries = [
        _expense(1, 100_000, date(2026, 9, 10)),
        _expense(2, 110_000, date(2026, 10, 10)),
    ]

    assert _by_kind(InsightEngine().generate(entries, TODAY), "trend_analysis") is None


def test_trend_skipped_when_previous_month_empty() -> None:
    entries = [_expense(1, 110_000, date(2026, 10, 10))]

    assert _by_kind(InsightEngine().generate(entries, TODAY), "trend_analysis") is None


def test_activity_low_when_nothing_in_last_week() -> None:
    insights = InsightEngine().generate([_expense(1, 1_000, date(2026, 10, 1))], TODAY)

    activity = _by_kind(insights, "activity_low")
    assert activity is not None
    assert activity.priority == Priority.medium
    assert activity.actionable is True


def test_activity_high_when_many_recent_transactions() -> None:
    entries = [_expense(i, 100, date(2026, 10, 15)) for i in range(1, 22)]

    activity = _by_kind(InsightEngine().generate(entries, TODAY), "activity_high")

    assert activity is not None
    assert activity.data["count"] == 21


def test_weekday_rule_picks_highest_spending_day() -> None:
    entries = [
        _expense(1, 9_000, date(2026, 10, 16)),  # Friday
        _expense(2, 1_000, date(2026, 10, 14)),  # Wednesday
    ]

    weekday = _by_kind(InsightEngine().generate(entries, TODAY), "weekday_pattern")

    assert weekday is not None
    assert weekday.data["day"] == "Friday"
    assert weekday.priority == Priority.low


def test_category_suggestion_uses_tag_threshold() -> None:
    entries = [_expense(1, 120_000, date(2026, 10, 10), category="Alimentação", tag="food")]

    default = InsightEngine().generate(entries, TODAY)
    suggestion = _by_kind(default, "suggestion")
    assert suggestion is not None
    assert suggestion.data["tag"] == "food"

    raised = InsightConfig(
        suggestions={
            "food": replace(DEFAULT_SUGGESTIONS["food"], threshold_cents=200_000)
        }
    )
    assert _by_kind(InsightEngine(raised).generate(entries, TODAY), "suggestion") is None


def test_untagged_categories_never_trigger_suggestions() -> None:
    entries = [_expense(1, 500_000, date(2026, 10, 10), category="Food")]

    assert _by_kind(InsightEngine().generate(entries, TODAY), "suggestion") is None


def test_ranking_orders_by_priority() -> None:
    low = Insight("a", "Low", "", Priority.low)
    medium = Insight("b", "Medium", "", Priority.medium)
    critical = Insight("c", "Critical", "", Priority.critical)

    ranked = rank_insights([low, medium, critical])

    assert [i.priority for i in ranked] == [
        Priority.critical,
        Priority.medium,
        Priority.low,
    ]


def test_ranking_keeps_catalogue_order_for_ties() -> None:
    first = Insight("first", "", "", Priority.medium)
    second = Insight("second", "", "", Priority.medium)
    high = Insight("high", "", "", Priority.high)

    ranked = rank_insights([first, second, high])

    assert [i.kind for i in ranked] == ["high", "first", "second"]


def test_output_is_truncated_to_max_insights() -> None:
    entries = [
        _income(1, 100_000),
        _expense(2, 120_000, date(2026, 10, 16), tag="food"),
        _expense(3, 100_000, date(2026, 9, 10)),
    ]

    insights = InsightEngine(InsightConfig(max_insights=2)).generate(entries, TODAY)

    assert len(insights) == 2
    assert insights[0].priority == Priority.critical


def test_generate_is_idempotent() -> None:
    entries = [_income(1, 100_000), _expense(2, 95_000, date(2026, 10, 16))]
    engine = InsightEngine()

    assert engine.generate(entries, TODAY) == engine.generate(entries, TODAY)


class _BrokenLedger:
    def list_transactions(self, user_id: int, period: Period) -> list[LedgerEntry]:
        raise RuntimeError("database is locked")


def test_failure_degrades_to_single_unavailable_insight() -> None:
    insights = InsightEngine().generate_for(_BrokenLedger(), 1, TODAY)

    assert len(insights) == 1
    assert insights[0].kind == "analysis_unavailable"
    assert insights[0].priority == Priority.medium


def test_recommendations_without_data_suggest_getting_started() -> None:
    recommendations = InsightEngine().recommend([], TODAY)

    assert [r.kind for r in recommendations] == ["getting_started"]


def test_recommendations_flag_concentration_and_surplus() -> None:
    entries = [
        _income(1, 500_000, date(2026, 10, 1)),
        _expense(2, 150_000, date(2026, 10, 3), category="Housing"),
        _expense(3, 50_000, date(2026, 10, 4), category="Food"),
    ]

    recommendations = InsightEngine().recommend(entries, TODAY)
    kinds = [r.kind for r in recommendations]

    assert kinds[0] == "spending_concentration"
    assert recommendations[0].data["category"] == "Housing"
    assert "emergency_fund" in kinds
    assert "investment" in kinds
    assert "small_expenses" not in kinds
    assert len(recommendations) <= 5


def test_recommendations_flag_small_expenses() -> None:
    entries = [_income(1, 500_000, date(2026, 10, 1))]
    entries += [
        _expense(i, 4_000, date(2026, 10, 5), category="Coffee") for i in range(2, 12)
    ]
    entries.append(_expense(20, 100_000, date(2026, 10, 6), category="Housing"))

    kinds = [r.kind for r in InsightEngine().recommend(entries, TODAY)]

    # 40_000 in small expenses against 70_000 monthly expenses
    assert "small_expenses" in kinds


def test_predictions_apply_seasonal_multipliers() -> None:
    entries = []
    for idx, month in enumerate((7, 8, 9), start=1):
        entries.append(_income(idx * 10, 300_000, date(2026, month, 5)))
        entries.append(_expense(idx * 10 + 1, 200_000, date(2026, month, 6)))

    result = predict(entries, TODAY)
    rows = {row["month"]: row for row in result["predictions"]}

    assert list(rows) == ["2026-11", "2026-12", "2027-01"]
    assert rows["2026-11"]["predicted_expense_cents"] == 200_000
    assert rows["2026-12"]["predicted_expense_cents"] == 240_000
    assert rows["2027-01"]["predicted_expense_cents"] == 180_000
    assert rows["2026-12"]["predicted_balance_cents"] == 60_000
    assert rows["2026-11"]["confidence"] == "medium"
    assert result["based_on_months"] == 3


def test_predictions_with_short_history_are_low_confidence() -> None:
    result = predict([_expense(1, 10_000, date(2026, 10, 1))], TODAY)

    assert result["predictions"][0]["confidence"] == "low"
    assert result["avg_monthly_income_cents"] == 0


def test_period_report_compares_with_previous_half_month() -> None:
    entries = [
        _income(1, 200_000, date(2026, 10, 5)),
        _expense(2, 50_000, date(2026, 10, 10)),
        _expense(3, 100_000, date(2026, 9, 25)),
    ]

    report = build_period_report(entries, TODAY)

    assert report["start"] == date(2026, 10, 4)
    assert report["income_cents"] == 200_000
    assert report["expense_cents"] == 50_000
    assert report["savings_rate"] == 75.0
    assert report["improvement_pct"] == 50.0
    assert report["top_category"] == "Food"
    assert 2 <= len(report["tips"]) <= 3


def test_answer_question_matches_keywords() -> None:
    assert "save more" in answer_question("How can I save money?")
    assert "investing" in answer_question("Where should I INVEST?")
    assert answer_question("What's the weather like?") == DEFAULT_ANSWER


def test_insight_window_must_cover_a_month() -> None:
    with pytest.raises(ValueError):
        InsightConfig(window_months=0)
    with pytest.raises(ValueError):
        InsightConfig(recommendation_months=0)
