from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from buckets import CategoryBucket
from database import Base
from models import CategoryGroup, DebtType
from rollover import compute_rollover
from schemas import BudgetMonthIn, CategoryIn, DebtAccountIn, PlannedItemIn
from services import (
    BudgetMonthService,
    CategoryService,
    DebtAccountService,
    PlannedItemService,
)

USER_ID = 1
JAN = date(2025, 1, 1)
FEB = date(2025, 2, 1)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_compute_rollover_prefers_override() -> None:
    carried = compute_rollover(
        FEB, planned_income_cents=500, planned_outflow_cents=200, previous_end_cents=1_000
    )
    pinned = compute_rollover(
        FEB,
        planned_income_cents=500,
        planned_outflow_cents=200,
        override_cents=0,
        previous_end_cents=1_000,
    )
    fresh = compute_rollover(FEB, planned_income_cents=0, planned_outflow_cents=300)

    assert (carried.available_start_cents, carried.available_end_cents) == (1_000, 1_300)
    assert not carried.start_overridden
    assert (pinned.available_start_cents, pinned.available_end_cents) == (0, 300)
    assert pinned.start_overridden
    assert fresh.available_end_cents == -300


def test_previous_end_carries_into_next_month() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)
    salary = categories.create(CategoryIn(group_name=CategoryGroup.income, name="Salary"))
    months = BudgetMonthService(session, USER_ID)
    planned = PlannedItemService(session, USER_ID)

    months.set_available_start(BudgetMonthIn(month=JAN, available_start_cents=15_000))
    planned.add(PlannedItemIn(month=FEB, category_id=salary.id, amount_cents=20_000))

    feb = months.get(FEB)
    assert feb.available_start_cents == 15_000
    assert feb.available_end_cents == 35_000
    assert not feb.start_overridden


def test_planning_changes_cascade_but_keep_overrides() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)
    salary = categories.create(CategoryIn(group_name=CategoryGroup.income, name="Salary"))
    rent = categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Rent"))
    months = BudgetMonthService(session, USER_ID)
    planned = PlannedItemService(session, USER_ID)
    months.set_available_start(BudgetMonthIn(month=JAN, available_start_cents=15_000))
    planned.add(PlannedItemIn(month=FEB, category_id=salary.id, amount_cents=20_000))

    planned.update_planned_total(JAN, CategoryBucket(rent.id), 5_000)

    jan, feb = months.get(JAN), months.get(FEB)
    assert (jan.available_start_cents, jan.available_end_cents) == (15_000, 10_000)
    assert jan.start_overridden
    assert (feb.available_start_cents, feb.available_end_cents) == (10_000, 30_000)

    months.set_available_start(BudgetMonthIn(month=FEB, available_start_cents=99_900))
    planned.update_planned_total(JAN, CategoryBucket(rent.id), 6_000)

    feb = months.get(FEB)
    assert feb.start_overridden
    assert (feb.available_start_cents, feb.available_end_cents) == (99_900, 119_900)


def test_clearing_an_override_goes_back_to_the_carried_amount() -> None:
    session = make_session()
    rent = CategoryService(session, USER_ID).create(
        CategoryIn(group_name=CategoryGroup.expense, name="Rent")
    )
    months = BudgetMonthService(session, USER_ID)
    planned = PlannedItemService(session, USER_ID)
    months.set_available_start(BudgetMonthIn(month=JAN, available_start_cents=15_000))
    planned.add(PlannedItemIn(month=JAN, category_id=rent.id, amount_cents=5_000))
    months.sync(FEB)

    months.clear_override(JAN)

    jan, feb = months.get(JAN), months.get(FEB)
    assert not jan.start_overridden
    assert (jan.available_start_cents, jan.available_end_cents) == (0, -5_000)
    assert (feb.available_start_cents, feb.available_end_cents) == (-5_000, -5_000)


def test_debt_account_changes_resync_every_stored_month() -> None:
    session = make_session()
    salary = CategoryService(session, USER_ID).create(
        CategoryIn(group_name=CategoryGroup.income, name="Salary")
    )
    months = BudgetMonthService(session, USER_ID)
    planned = PlannedItemService(session, USER_ID)
    planned.add(PlannedItemIn(month=JAN, category_id=salary.id, amount_cents=10_000))
    months.sync(FEB)
    assert months.get(JAN).available_end_cents == 10_000

    debts = DebtAccountService(session, USER_ID)
    loan = debts.create(
        DebtAccountIn(name="Car loan", debt_type=DebtType.loan, min_payment_cents=4_000)
    )

    assert months.planned_totals(JAN) == (10_000, 4_000)
    assert months.get(JAN).available_end_cents == 6_000
    assert (months.get(FEB).available_start_cents, months.get(FEB).available_end_cents) == (
        6_000,
        2_000,
    )

    debts.update(
        loan.id,
        DebtAccountIn(name="Car loan", debt_type=DebtType.loan, min_payment_cents=1_000),
    )
    assert months.get(JAN).available_end_cents == 9_000
    assert months.get(FEB).available_end_cents == 8_000

    debts.delete(loan.id)
    assert months.get(JAN).available_end_cents == 10_000
    assert months.get(FEB).available_end_cents == 10_000
