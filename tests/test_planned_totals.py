from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from buckets import CardBucket, CategoryBucket
from database import Base
from errors import AmbiguousStateError, ValidationError
from models import CategoryGroup, PlannedItemType
from schemas import CategoryIn, CreditCardIn, PlannedItemIn
from services import (
    PLANNED_TOTAL_NAME,
    CategoryService,
    CreditCardService,
    PlannedItemService,
)

USER_ID = 1
MAY = date(2025, 5, 1)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_multiple_rows_need_confirmation_before_collapsing() -> None:
    session = make_session()
    groceries = CategoryService(session, USER_ID).create(
        CategoryIn(group_name=CategoryGroup.expense, name="Groceries")
    )
    planned = PlannedItemService(session, USER_ID)
    first = planned.add(
        PlannedItemIn(month=MAY, category_id=groceries.id, name="Weekly shop", amount_cents=5_000)
    )
    second = planned.add(
        PlannedItemIn(month=MAY, category_id=groceries.id, name="Costco", amount_cents=7_500)
    )

    with pytest.raises(AmbiguousStateError) as excinfo:
        planned.update_planned_total(MAY, CategoryBucket(groceries.id), 20_000)
    assert excinfo.value.item_ids == sorted([first.id, second.id])
    assert sorted(i.amount_cents for i in planned.list_for_month(MAY)) == [5_000, 7_500]

    item = planned.update_planned_total(
        MAY, CategoryBucket(groceries.id), 20_000, confirm=True
    )

    remaining = planned.list_for_month(MAY)
    assert [(i.id, i.amount_cents, i.name) for i in remaining] == [
        (item.id, 20_000, PLANNED_TOTAL_NAME)
    ]
    assert item.type == PlannedItemType.expense


def test_single_row_is_updated_in_place() -> None:
    session = make_session()
    salary = CategoryService(session, USER_ID).create(
        CategoryIn(group_name=CategoryGroup.income, name="Salary")
    )
    planned = PlannedItemService(session, USER_ID)
    existing = planned.add(
        PlannedItemIn(month=date(2025, 5, 20), category_id=salary.id, name="Paycheck", amount_cents=1)
    )

    item = planned.update_planned_total(MAY, CategoryBucket(salary.id), 400_000)

    assert item.id == existing.id
    assert item.name == "Paycheck"
    assert item.amount_cents == 400_000
    assert item.month == MAY


def test_card_bucket_creates_credit_card_category_on_demand() -> None:
    session = make_session()
    visa = CreditCardService(session, USER_ID).create(CreditCardIn(name="Visa"))
    planned = PlannedItemService(session, USER_ID)

    item = planned.update_planned_total(MAY, CardBucket(credit_card_id=visa.id), 15_000)

    category = CategoryService(session, USER_ID).get(item.category_id)
    assert category.name == "Credit Card"
    assert category.is_credit_card_bucket
    assert item.credit_card_id == visa.id
    assert item.type == PlannedItemType.debt
    assert planned.items_in_bucket(MAY, CardBucket(credit_card_id=visa.id)) == [item]


def test_invalid_targets_are_rejected() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)
    home = categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Home"))
    categories.create(
        CategoryIn(group_name=CategoryGroup.expense, name="Repairs", parent_id=home.id)
    )
    planned = PlannedItemService(session, USER_ID)

    with pytest.raises(ValidationError):
        planned.update_planned_total(MAY, CategoryBucket(home.id), -1)
    with pytest.raises(ValidationError, match="Select a credit card"):
        planned.update_planned_total(MAY, CardBucket(), 1_000)
    with pytest.raises(ValidationError, match="subcategory"):
        planned.update_planned_total(MAY, CategoryBucket(home.id), 1_000)
    assert planned.list_for_month(MAY) == []


def test_delete_many_resyncs_the_month() -> None:
    session = make_session()
    salary = CategoryService(session, USER_ID).create(
        CategoryIn(group_name=CategoryGroup.income, name="Salary")
    )
    planned = PlannedItemService(session, USER_ID)
    first = planned.add(PlannedItemIn(month=MAY, category_id=salary.id, amount_cents=1_000))
    second = planned.add(PlannedItemIn(month=MAY, category_id=salary.id, amount_cents=2_000))
    assert planned.budget_months.get(MAY).available_end_cents == 3_000

    planned.delete_many([first.id, second.id])

    assert planned.list_for_month(MAY) == []
    assert planned.budget_months.get(MAY).available_end_cents == 0
    with pytest.raises(ValidationError):
        planned.delete_many([])


def test_card_bucket_collapse_needs_confirmation() -> None:
    session = make_session()
    card_category = CategoryService(session, USER_ID).ensure_credit_card_category()
    visa = CreditCardService(session, USER_ID).create(CreditCardIn(name="Visa"))
    planned = PlannedItemService(session, USER_ID)
    for amount in (5_000, 7_500):
        planned.add(
            PlannedItemIn(
                month=MAY,
                category_id=card_category.id,
                credit_card_id=visa.id,
                amount_cents=amount,
            )
        )
    bucket = CardBucket(credit_card_id=visa.id)

    with pytest.raises(AmbiguousStateError):
        planned.update_planned_total(MAY, bucket, 20_000)
    item = planned.update_planned_total(MAY, bucket, 20_000, confirm=True)

    assert planned.items_in_bucket(MAY, bucket) == [item]
    assert (item.amount_cents, item.category_id, item.credit_card_id) == (
        20_000,
        card_category.id,
        visa.id,
    )
    assert planned.budget_months.get(MAY).available_end_cents == -20_000


def test_rows_left_without_a_card_can_still_be_collapsed() -> None:
    session = make_session()
    card_category = CategoryService(session, USER_ID).ensure_credit_card_category()
    cards = CreditCardService(session, USER_ID)
    amex = cards.create(CreditCardIn(name="Amex"))
    planned = PlannedItemService(session, USER_ID)
    for amount in (3_000, 4_000):
        planned.add(
            PlannedItemIn(
                month=MAY,
                category_id=card_category.id,
                credit_card_id=amex.id,
                amount_cents=amount,
            )
        )
    cards.delete(amex.id)

    item = planned.update_planned_total(MAY, CardBucket(), 6_000, confirm=True)

    assert planned.list_for_month(MAY) == [item]
    assert (item.category_id, item.credit_card_id, item.debt_account_id) == (
        card_category.id,
        None,
        None,
    )
    assert item.amount_cents == 6_000
