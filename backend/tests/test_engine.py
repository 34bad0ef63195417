from decimal import Decimal
from uuid import uuid4

import pytest

from ledger.engine import (
    AccountState,
    GoalState,
    ensure_owned,
    plan_allocate_to_goal,
    plan_create_expense,
    plan_create_income,
    plan_delete_expense,
    plan_delete_income,
    plan_transfer,
    plan_update_expense,
    plan_update_income,
)
from ledger.errors import Forbidden, GoalConstraintViolation, InsufficientFunds, NotFound, ValidationError

OWNER = uuid4()


def _account(balance: str) -> AccountState:
    return AccountState(id=uuid4(), user_id=OWNER, name="Main Account", current_balance=Decimal(balance))


def _goal(target: str, saved: str) -> GoalState:
    return GoalState(
        id=uuid4(),
        user_id=OWNER,
        name="Holiday",
        target_amount=Decimal(target),
        current_saved_amount=Decimal(saved),
    )


def test_create_expense_debits_account() -> None:
    account = _account("100.00")
    plan = plan_create_expense(account, Decimal("30.50"))
    change = plan.change_for(account.id)
    assert change.before == Decimal("100.00")
    assert change.after == Decimal("69.50")
    assert change.delta == Decimal("-30.50")


def test_create_expense_allows_spending_whole_balance() -> None:
    account = _account("40.00")
    assert plan_create_expense(account, Decimal("40.00")).changes[0].after == Decimal("0.00")


def test_create_expense_rejects_insufficient_funds_with_detail() -> None:
    account = _account("50.00")
    with pytest.raises(InsufficientFunds) as exc:
        plan_create_expense(account, Decimal("50.01"))
    assert exc.value.current_balance == Decimal("50.00")
    assert exc.value.requested_amount == Decimal("50.01")
    assert exc.value.account_id == account.id


@pytest.mark.parametrize("amount", ["0", "-5"])
def test_non_positive_amounts_are_rejected(amount: str) -> None:
    account = _account("100")
    with pytest.raises(ValidationError):
        plan_create_expense(account, Decimal(amount))
    with pytest.raises(ValidationError):
        plan_create_income(account, Decimal(amount))


def test_update_expense_increase_checks_sufficiency() -> None:
    account = _account("20")
    with pytest.raises(InsufficientFunds) as exc:
        plan_update_expense(account, Decimal("10"), Decimal("31"))
    assert exc.value.requested_amount == Decimal("21")
    assert plan_update_expense(account, Decimal("10"), Decimal("30")).changes[0].after == Decimal("0")


def test_update_expense_decrease_is_always_accepted() -> None:
    account = _account("0")
    plan = plan_update_expense(account, Decimal("80"), Decimal("30"))
    assert plan.changes[0].after == Decimal("50")


def test_update_expense_there_and_back_restores_balance() -> None:
    account = _account("100")
    raised = plan_update_expense(account, Decimal("10"), Decimal("25")).changes[0].after
    after_raise = AccountState(account.id, OWNER, account.name, raised)
    restored = plan_update_expense(after_raise, Decimal("25"), Decimal("10")).changes[0].after
    assert restored == Decimal("100")


def test_delete_expense_restores_funds() -> None:
    account = _account("70")
    assert plan_delete_expense(account, Decimal("30")).changes[0].after == Decimal("100")


def test_income_create_and_update() -> None:
    account = _account("10")
    assert plan_create_income(account, Decimal("5")).changes[0].after == Decimal("15")
    assert plan_update_income(account, Decimal("5"), Decimal("2")).changes[0].after == Decimal("7")


def test_delete_income_may_overdraw_and_reports_it() -> None:
    account = _account("20")
    change = plan_delete_income(account, Decimal("50")).changes[0]
    assert change.after == Decimal("-30")
    assert change.overdrawn is True


def test_transfer_conserves_total() -> None:
    source, destination = _account("100"), _account("5")
    plan = plan_transfer(source, destination, Decimal("60"))
    assert plan.change_for(source.id).after == Decimal("40")
    assert plan.change_for(destination.id).after == Decimal("65")
    assert sum(c.after for c in plan.changes) == Decimal("105")


def test_transfer_to_same_account_is_rejected() -> None:
    account = _account("100")
    with pytest.raises(ValidationError):
        plan_transfer(account, account, Decimal("1"))


def test_transfer_requires_funds() -> None:
    with pytest.raises(InsufficientFunds):
        plan_transfer(_account("10"), _account("0"), Decimal("10.01"))


def test_goal_allocation_to_exact_target_completes_goal() -> None:
    goal, account = _goal("500", "450"), _account("100")
    plan = plan_allocate_to_goal(goal, account, Decimal("50"))
    assert plan.goal is not None
    assert plan.goal.after == Decimal("500")
    assert plan.goal.is_completed is True
    assert plan.changes[0].after == Decimal("50")


def test_goal_allocation_over_target_reports_remaining() -> None:
    goal = _goal("500", "450")
    with pytest.raises(GoalConstraintViolation) as exc:
        plan_allocate_to_goal(goal, _account("1000"), Decimal("50.01"))
    assert exc.value.remaining_amount == Decimal("50")


def test_goal_allocation_rejected_when_completed() -> None:
    with pytest.raises(GoalConstraintViolation):
        plan_allocate_to_goal(_goal("100", "100"), _account("1000"), Decimal("1"))


def test_goal_allocation_requires_funds() -> None:
    with pytest.raises(InsufficientFunds):
        plan_allocate_to_goal(_goal("100", "0"), _account("10"), Decimal("20"))


def test_ensure_owned() -> None:
    row = {"id": uuid4(), "user_id": OWNER}
    assert ensure_owned(row, OWNER, "expense", row["id"]) is row
    with pytest.raises(Forbidden):
        ensure_owned(row, uuid4(), "expense", row["id"])
    with pytest.raises(NotFound):
        ensure_owned(None, OWNER, "expense", row["id"])
