from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ConflictError, NotFoundError, ValidationError
from models import CategoryGroup, PlannedItem, Transaction
from schemas import CategoryIn, PlannedItemIn, TransactionIn
from services import CategoryService, PlannedItemService, TransactionService

USER_ID = 1


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_create_appends_to_sibling_order() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)

    food = categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Food"))
    rent = categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Rent"))
    salary = categories.create(
        CategoryIn(group_name=CategoryGroup.income, name="  Salary ")
    )

    assert (food.sort_order, rent.sort_order) == (1, 2)
    assert salary.sort_order == 1
    assert salary.name == "Salary"


def test_names_are_unique_per_sibling_set_ignoring_case() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)
    categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Groceries"))

    with pytest.raises(ConflictError):
        categories.create(CategoryIn(group_name=CategoryGroup.expense, name="groceries"))

    # another section or another user is a different sibling set
    categories.create(CategoryIn(group_name=CategoryGroup.giving, name="Groceries"))
    CategoryService(session, 2).create(
        CategoryIn(group_name=CategoryGroup.expense, name="Groceries")
    )


def test_blank_name_is_rejected() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)

    with pytest.raises(ValidationError, match="name is required"):
        categories.create(CategoryIn(group_name=CategoryGroup.expense, name="   "))


def test_nesting_is_limited_to_one_level_in_the_same_section() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)
    auto = categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Auto"))
    fuel = categories.create(
        CategoryIn(group_name=CategoryGroup.expense, name="Fuel", parent_id=auto.id)
    )

    with pytest.raises(ValidationError, match="Parent cannot have a parent"):
        categories.create(
            CategoryIn(group_name=CategoryGroup.expense, name="Diesel", parent_id=fuel.id)
        )
    with pytest.raises(ValidationError, match="same section"):
        categories.create(
            CategoryIn(group_name=CategoryGroup.giving, name="Car wash", parent_id=auto.id)
        )
    with pytest.raises(NotFoundError):
        categories.create(
            CategoryIn(group_name=CategoryGroup.expense, name="Tolls", parent_id=999)
        )


def test_credit_card_flag_follows_name_and_parent() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)

    visa = categories.create(
        CategoryIn(group_name=CategoryGroup.debt, name="Visa Credit Card")
    )
    cards = categories.create(CategoryIn(group_name=CategoryGroup.debt, name="Credit Card"))
    chase = categories.create(
        CategoryIn(group_name=CategoryGroup.debt, name="Chase", parent_id=cards.id)
    )
    shop = categories.create(
        CategoryIn(group_name=CategoryGroup.expense, name="Credit card fees")
    )

    assert visa.is_credit_card_bucket
    assert chase.is_credit_card_bucket
    assert not shop.is_credit_card_bucket

    renamed = categories.rename(visa.id, "Car loan")
    assert not renamed.is_credit_card_bucket


def test_delete_refuses_parents_and_system_categories() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)
    home = categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Home"))
    categories.create(
        CategoryIn(group_name=CategoryGroup.expense, name="Repairs", parent_id=home.id)
    )
    card_category = categories.ensure_credit_card_category()

    with pytest.raises(ConflictError, match="subcategories"):
        categories.delete(home.id)
    assert card_category.is_protected
    with pytest.raises(ConflictError, match="Archive it instead"):
        categories.delete(card_category.id)


def test_user_categories_with_common_names_can_be_deleted() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)
    car = categories.create(CategoryIn(group_name=CategoryGroup.expense, name="My Car"))
    gas = categories.create(
        CategoryIn(group_name=CategoryGroup.expense, name="Gas", parent_id=car.id)
    )
    misc = categories.create(CategoryIn(group_name=CategoryGroup.misc, name="Misc"))

    assert not gas.is_protected
    assert not misc.is_protected
    categories.delete(gas.id)
    categories.delete(misc.id)

    assert [c.name for c in categories.list_all()] == ["My Car"]


def test_delete_resyncs_months_of_removed_planned_items() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)
    rent = categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Rent"))
    planned = PlannedItemService(session, USER_ID)
    planned.add(PlannedItemIn(month=date(2025, 1, 1), category_id=rent.id, amount_cents=5_000))
    planned.add(PlannedItemIn(month=date(2025, 2, 1), category_id=rent.id, amount_cents=5_000))
    assert planned.budget_months.get(date(2025, 2, 1)).available_end_cents == -10_000

    categories.delete(rent.id)

    assert planned.list_for_month(date(2025, 1, 1)) == []
    assert planned.budget_months.get(date(2025, 1, 1)).available_end_cents == 0
    assert planned.budget_months.get(date(2025, 2, 1)).available_end_cents == 0


def test_delete_detaches_archived_children_and_dependent_rows() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)
    hobbies = categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Hobbies"))
    models_kit = categories.create(
        CategoryIn(group_name=CategoryGroup.expense, name="Model kits", parent_id=hobbies.id)
    )
    categories.archive(models_kit.id)

    planned = PlannedItemService(session, USER_ID).add(
        PlannedItemIn(month=date(2025, 3, 1), category_id=hobbies.id, amount_cents=4_000)
    )
    txn = TransactionService(session, USER_ID).create(
        TransactionIn(date=date(2025, 3, 4), amount_cents=1_250, category_id=hobbies.id)
    )

    categories.delete(hobbies.id)

    assert session.get(PlannedItem, planned.id) is None
    assert session.get(Transaction, txn.id).category_id is None
    orphan = categories.get(models_kit.id)
    assert orphan.parent_id is None
    assert orphan.archived


def test_restore_conflicts_with_active_namesake() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)
    old = categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Pets"))
    categories.archive(old.id)
    categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Pets"))

    with pytest.raises(ConflictError):
        categories.restore(old.id)
    assert [c.name for c in categories.list_archived()] == ["Pets"]


def test_ensure_credit_card_category_reuses_existing_leaf() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)

    first = categories.ensure_credit_card_category()
    again = categories.ensure_credit_card_category()
    debt = categories.ensure_debt_payment_category()

    assert first.id == again.id
    assert first.name == "Credit Card"
    assert first.is_credit_card_bucket
    assert debt.name == "Debt Payment"
    assert not debt.is_credit_card_bucket


def test_tree_lists_active_children_under_their_parent() -> None:
    session = make_session()
    categories = CategoryService(session, USER_ID)
    travel = categories.create(CategoryIn(group_name=CategoryGroup.expense, name="Travel"))
    flights = categories.create(
        CategoryIn(group_name=CategoryGroup.expense, name="Flights", parent_id=travel.id)
    )
    hotels = categories.create(
        CategoryIn(group_name=CategoryGroup.expense, name="Hotels", parent_id=travel.id)
    )
    categories.archive(hotels.id)

    tree = categories.tree()

    assert [(parent.id, [c.id for c in kids]) for parent, kids in tree] == [
        (travel.id, [flights.id])
    ]
