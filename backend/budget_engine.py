from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import FrozenSet, Hashable, Iterable, List, Optional, Sequence, Tuple

ZERO = Decimal("0")
HUNDRED = Decimal("100")
WARNING_THRESHOLD = Decimal("90")
OVER_THRESHOLD = Decimal("100")
UNKNOWN_DISPLAY_NAME = "Unknown"

STATUS_OK = "ok"
STATUS_WARNING = "warning"
STATUS_OVER = "over"


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: date
    category_id: Optional[Hashable] = None


@dataclass(frozen=True)
class BudgetDefinition:
    """A monthly spending limit for one category or one category group.

    When ``group_id`` is set the budget is grouped and matches every
    transaction whose category is in ``linked_category_ids``; otherwise it
    matches ``category_id`` only.
    """

    id: Hashable
    period: date
    amount: Decimal
    category_id: Optional[Hashable] = None
    group_id: Optional[Hashable] = None
    linked_category_ids: FrozenSet[Hashable] = frozenset()
    category_name: Optional[str] = None
    group_name: Optional[str] = None
    note: Optional[str] = None
    is_recurring: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "linked_category_ids", frozenset(self.linked_category_ids or ())
        )

    @property
    def is_grouped(self) -> bool:
        return self.group_id is not None


@dataclass(frozen=True)
class BudgetStatus:
    percentage: Decimal
    status: str


@dataclass(frozen=True)
class EnrichedBudget:
    definition: BudgetDefinition
    actual_spend: Decimal
    percentage: Decimal
    status: str
    display_name: str
    remaining: Decimal
    over_budget: Decimal

    @property
    def id(self) -> Hashable:
        return self.definition.id

    @property
    def amount(self) -> Decimal:
        return _coerce_amount(self.definition.amount)


def month_start(value: date) -> date:
    return date(value.year, value.month, 1)


def month_bounds(period: date) -> Tuple[datetime, datetime]:
    """First and last instant (to the microsecond) of the month containing ``period``."""
    last_day = calendar.monthrange(period.year, period.month)[1]
    start = datetime(period.year, period.month, 1)
    end = datetime.combine(date(period.year, period.month, last_day), time.max)
    return start, end


def budget_matches(budget: BudgetDefinition, transaction: Transaction) -> bool:
    category_id = getattr(transaction, "category_id", None)
    if category_id is None:
        return False
    if budget.is_grouped:
        return category_id in budget.linked_category_ids
    if budget.category_id is None:
        return False
    return category_id == budget.category_id


def aggregate_spend(
    budget: BudgetDefinition,
    transactions: Iterable[Transaction],
    period_start: datetime,
    period_end: datetime,
) -> Decimal:
    start = _as_datetime(period_start)
    end = _as_datetime(period_end)
    total = ZERO
    for txn in transactions:
        if not _is_expense(txn):
            continue
        occurred_at = _as_datetime(txn.date)
        if occurred_at is None or not start <= occurred_at <= end:
            continue
        if not budget_matches(budget, txn):
            continue
        total += abs(_coerce_amount(txn.amount))
    return total


def classify_status(actual_spend: Decimal, budget_amount: Decimal) -> BudgetStatus:
    spend = _coerce_amount(actual_spend)
    amount = _coerce_amount(budget_amount)
    percentage = spend / amount * HUNDRED if amount > ZERO else ZERO

    if percentage > OVER_THRESHOLD:
        status = STATUS_OVER
    elif percentage > WARNING_THRESHOLD:
        status = STATUS_WARNING
    else:
        status = STATUS_OK
    return BudgetStatus(percentage=percentage, status=status)


def assemble_budgets(
    definitions: Sequence[BudgetDefinition],
    transactions: Sequence[Transaction],
    period: date,
) -> List[EnrichedBudget]:
    if definitions is None:
        raise TypeError("definitions must be a list of budget definitions, not None.")
    if transactions is None:
        raise TypeError("transactions must be a list of transactions, not None.")

    period_start, period_end = month_bounds(period)
    # Materialised once so generators are not exhausted by the first budget.
    expenses = [txn for txn in transactions if _is_expense(txn)]

    enriched: List[EnrichedBudget] = []
    for definition in definitions:
        amount = _coerce_amount(definition.amount)
        actual_spend = aggregate_spend(definition, expenses, period_start, period_end)
        result = classify_status(actual_spend, amount)
        enriched.append(
            EnrichedBudget(
                definition=definition,
                actual_spend=actual_spend,
                percentage=result.percentage,
                status=result.status,
                display_name=display_name_for(definition),
                remaining=max(ZERO, amount - actual_spend),
                over_budget=max(ZERO, actual_spend - amount),
            )
        )
    return enriched


def display_name_for(definition: BudgetDefinition) -> str:
    return definition.group_name or definition.category_name or UNKNOWN_DISPLAY_NAME


def _is_expense(txn: Transaction) -> bool:
    txn_type = getattr(txn, "type", None)
    if not isinstance(txn_type, str):
        return False
    return txn_type == "expense"


def _as_datetime(value: Optional[date]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    return None


def _coerce_amount(amount: Optional[Decimal]) -> Decimal:
    if amount is None:
        return ZERO
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
