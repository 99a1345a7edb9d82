from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from backend.currency_conversion import ConversionFailure, convert

ZERO = Decimal("0")


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: date
    currency: str = "USD"
    category: Optional[str] = None
    account_id: Optional[int] = None


@dataclass(frozen=True)
class BudgetRule:
    rule_type: str
    amount: Decimal
    category: Optional[str] = None
    account_id: Optional[int] = None


@dataclass(frozen=True)
class BudgetEvaluation:
    current_value: Decimal
    remaining: Decimal
    status: str
    source_currencies: list[str] = field(default_factory=list)
    unconverted_currencies: list[str] = field(default_factory=list)


def evaluate_budget(
    transactions: Iterable[Transaction],
    rule: BudgetRule,
    start_date: date,
    end_date: date,
    currency: str = "USD",
    rates: Mapping[str, Decimal] | None = None,
) -> BudgetEvaluation:
    """Evaluate ``rule`` with every amount expressed in ``currency``.

    Transactions that cannot be converted are left out of the totals and
    their currencies reported in ``unconverted_currencies``.
    """
    if start_date > end_date:
        raise ValueError("start_date must be on or before end_date.")
    if rule.amount <= ZERO:
        raise ValueError("rule.amount must be greater than zero.")

    filtered: list[Transaction] = []
    source_currencies: set[str] = set()
    unconverted: set[str] = set()
    for txn in transactions:
        if not start_date <= txn.date <= end_date:
            continue
        source_currencies.add(txn.currency)
        converted = convert(_coerce_amount(txn.amount), txn.currency, currency, rates)
        if isinstance(converted, ConversionFailure):
            unconverted.add(txn.currency)
            continue
        filtered.append(
            Transaction(
                amount=converted,
                type=txn.type,
                date=txn.date,
                currency=currency,
                category=txn.category,
                account_id=txn.account_id,
            )
        )

    rule_type = rule.rule_type.strip().lower()
    if rule_type == "category_cap":
        if not rule.category:
            raise ValueError("category_cap requires a category.")
        current_value = _sum_expenses(filtered, category=rule.category)
        remaining = rule.amount - current_value
        status = "ok" if current_value <= rule.amount else "over"
    elif rule_type == "account_cap":
        if rule.account_id is None:
            raise ValueError("account_cap requires an account_id.")
        current_value = _sum_expenses(filtered, account_id=rule.account_id)
        remaining = rule.amount - current_value
        status = "ok" if current_value <= rule.amount else "over"
    elif rule_type == "savings_target":
        current_value = _sum_income(filtered) - _sum_expenses(filtered)
        remaining = rule.amount - current_value
        status = "met" if current_value >= rule.amount else "short"
    else:
        raise ValueError(f"Unsupported rule_type: {rule.rule_type}")

    return BudgetEvaluation(
        current_value=current_value,
        remaining=remaining,
        status=status,
        source_currencies=sorted(source_currencies),
        unconverted_currencies=sorted(unconverted),
    )


def _sum_expenses(
    transactions: Iterable[Transaction],
    *,
    category: Optional[str] = None,
    account_id: Optional[int] = None,
) -> Decimal:
    total = ZERO
    for txn in transactions:
        if txn.type.strip().lower() != "expense":
            continue
        if category is not None and txn.category != category:
            continue
        if account_id is not None and txn.account_id != account_id:
            continue
        total += txn.amount
    return total


def _sum_income(transactions: Iterable[Transaction]) -> Decimal:
    total = ZERO
    for txn in transactions:
        if txn.type.strip().lower() == "income":
            total += txn.amount
    return total


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
