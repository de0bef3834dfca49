from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional

from backend.budget_engine import (
    HUNDRED,
    STATUS_OK,
    STATUS_OVER,
    STATUS_WARNING,
    ZERO,
    EnrichedBudget,
)

NEEDS_ATTENTION_LIMIT = 5


@dataclass(frozen=True)
class BudgetTotals:
    total_budgeted: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    overall_percentage: Decimal


@dataclass(frozen=True)
class BudgetSummary:
    totals: BudgetTotals
    over: List[EnrichedBudget] = field(default_factory=list)
    warning: List[EnrichedBudget] = field(default_factory=list)
    on_track: List[EnrichedBudget] = field(default_factory=list)
    needs_attention: List[EnrichedBudget] = field(default_factory=list)

    @property
    def budget_count(self) -> int:
        return len(self.over) + len(self.warning) + len(self.on_track)

    @property
    def issue_count(self) -> int:
        return len(self.over) + len(self.warning)


def sort_by_percentage(
    budgets: Iterable[EnrichedBudget], limit: Optional[int] = None
) -> List[EnrichedBudget]:
    """Most consumed first; ties keep their original order."""
    ordered = sorted(budgets, key=lambda budget: budget.percentage, reverse=True)
    if limit is not None:
        return ordered[:limit]
    return ordered


def compute_totals(budgets: Iterable[EnrichedBudget]) -> BudgetTotals:
    total_budgeted = ZERO
    total_spent = ZERO
    for budget in budgets:
        total_budgeted += budget.amount
        total_spent += budget.actual_spend
    overall = total_spent / total_budgeted * HUNDRED if total_budgeted > ZERO else ZERO
    return BudgetTotals(
        total_budgeted=total_budgeted,
        total_spent=total_spent,
        total_remaining=total_budgeted - total_spent,
        overall_percentage=overall,
    )


def summarize_budgets(budgets: Iterable[EnrichedBudget]) -> BudgetSummary:
    budgets = list(budgets)
    over = [budget for budget in budgets if budget.status == STATUS_OVER]
    warning = [budget for budget in budgets if budget.status == STATUS_WARNING]
    on_track = [budget for budget in budgets if budget.status == STATUS_OK]
    return BudgetSummary(
        totals=compute_totals(budgets),
        over=over,
        warning=warning,
        on_track=on_track,
        needs_attention=sort_by_percentage(over + warning, limit=NEEDS_ATTENTION_LIMIT),
    )
