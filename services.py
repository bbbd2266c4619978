from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Iterator, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from aggregation import Aggregator, BucketRow, MonthSummary
from buckets import (
    BucketKey,
    CardBucket,
    CategoryBucket,
    CategoryKind,
    DebtBucket,
    classify,
    is_credit_card_category,
    link_requirement_error,
    resolve_bucket_key,
)
from database import atomic
from errors import (
    AmbiguousStateError,
    ConflictError,
    NotFoundError,
    ReconciliationError,
    ValidationError,
)
from models import (
    BudgetMonth,
    Category,
    CategoryGroup,
    CreditCard,
    DebtAccount,
    DebtType,
    PlannedItem,
    PlannedItemType,
    Transaction,
)
from ordering import plan_reorder
from periods import month_start, month_window, next_month, previous_month
from rollover import compute_rollover
from schemas import (
    BudgetMonthIn,
    CategoryIn,
    CreditCardIn,
    DebtAccountIn,
    PlannedItemIn,
    TransactionIn,
)

logger = logging.getLogger(__name__)

PLANNED_TOTAL_NAME = "Planned total"
CREDIT_CARD_CATEGORY_NAME = "Credit Card"
DEBT_PAYMENT_CATEGORY_NAME = "Debt Payment"


@contextmanager
def reconciliation_unit(session: Session, action: str, **context: object) -> Iterator[None]:
    """Unit of work for a record write plus its balance compensation.

    A persistence failure anywhere inside rolls everything back and surfaces as
    ``ReconciliationError``; domain errors propagate unchanged.
    """
    try:
        with atomic(session):
            yield
    except SQLAlchemyError as exc:
        details = " ".join(f"{key}={value}" for key, value in context.items())
        logger.exception(f"reconciliation_failed: action={action} {details}".rstrip())
        raise ReconciliationError(
            "The change was not saved because the linked account balance "
            "could not be updated. Balances are unchanged."
        ) from exc


def planned_item_type(group_name: CategoryGroup) -> PlannedItemType:
    if group_name == CategoryGroup.income:
        return PlannedItemType.income
    if group_name == CategoryGroup.debt:
        return PlannedItemType.debt
    return PlannedItemType.expense


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found.")
        return category

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.group_name, Category.sort_order, Category.name)
        )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return list(self.session.scalars(stmt).all())

    def list_archived(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id, Category.archived_at.isnot(None))
            .order_by(Category.group_name, Category.name)
        )
        return list(self.session.scalars(stmt).all())

    def tree(self) -> list[tuple[Category, list[Category]]]:
        """Active top-level categories with their active children, in order."""
        active = self.list_all()
        children: dict[int, list[Category]] = {}
        for category in active:
            if category.parent_id is not None:
                children.setdefault(category.parent_id, []).append(category)
        return [
            (category, children.get(category.id, []))
            for category in active
            if category.parent_id is None
        ]

    def _ensure_name_free(
        self,
        group_name: CategoryGroup,
        parent_id: Optional[int],
        name: str,
        *,
        exclude_id: Optional[int] = None,
    ) -> None:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.group_name == group_name,
            Category.parent_id.is_(None)
            if parent_id is None
            else Category.parent_id == parent_id,
            Category.archived_at.is_(None),
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt.limit(1)) is not None:
            raise ConflictError(f'A category named "{name}" already exists here.')

    def _active_child_count(self, category_id: int) -> int:
        return int(
            self.session.execute(
                select(func.count(Category.id)).where(
                    Category.user_id == self.user_id,
                    Category.parent_id == category_id,
                    Category.archived_at.is_(None),
                )
            ).scalar_one()
            or 0
        )

    def _insert(
        self,
        group_name: CategoryGroup,
        name: str,
        parent_id: Optional[int],
        *,
        protected: bool = False,
    ) -> Category:
        name = name.strip()
        if not name:
            raise ValidationError("Category name is required.")
        parent: Optional[Category] = None
        if parent_id is not None:
            try:
                parent = self.get(parent_id)
            except NotFoundError:
                raise NotFoundError("Parent not found.") from None
            if parent.group_name != group_name:
                raise ValidationError("Parent must be in the same section.")
            if parent.parent_id is not None:
                raise ValidationError("Parent cannot have a parent.")
            if parent.archived:
                raise ValidationError("Parent is archived.")
        self._ensure_name_free(group_name, parent_id, name)

        max_order = self.session.execute(
            select(func.coalesce(func.max(Category.sort_order), 0)).where(
                Category.user_id == self.user_id,
                Category.group_name == group_name,
                Category.parent_id.is_(None)
                if parent_id is None
                else Category.parent_id == parent_id,
            )
        ).scalar_one()
        category = Category(
            user_id=self.user_id,
            group_name=group_name,
            name=name,
            parent_id=parent_id,
            sort_order=int(max_order or 0) + 1,
            is_credit_card_bucket=is_credit_card_category(group_name, name, parent),
            is_protected=protected,
        )
        self.session.add(category)
        self.session.flush()
        return category

    def create(self, data: CategoryIn) -> Category:
        with atomic(self.session):
            category = self._insert(data.group_name, data.name, data.parent_id)
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("Category name is required.")
        if not category.archived:
            self._ensure_name_free(
                category.group_name,
                category.parent_id,
                clean_name,
                exclude_id=category.id,
            )
        with atomic(self.session):
            category.name = clean_name
            category.is_credit_card_bucket = is_credit_card_category(
                category.group_name, clean_name, category.parent
            )
        return category

    def archive(self, category_id: int) -> None:
        category = self.get(category_id)
        if category.archived:
            return
        with atomic(self.session):
            category.archived_at = datetime.utcnow()

    def restore(self, category_id: int) -> None:
        category = self.get(category_id)
        if not category.archived:
            return
        self._ensure_name_free(
            category.group_name,
            category.parent_id,
            category.name,
            exclude_id=category.id,
        )
        with atomic(self.session):
            category.archived_at = None

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        if self._active_child_count(category.id):
            raise ConflictError(
                "This category has subcategories. Move or archive them first."
            )
        if category.is_protected:
            raise ConflictError("Default categories can't be deleted. Archive it instead.")

        with atomic(self.session):
            self.session.execute(
                update(Category)
                .where(Category.user_id == self.user_id, Category.parent_id == category.id)
                .values(parent_id=None),
                execution_options={"synchronize_session": "fetch"},
            )
            items = self.session.scalars(
                select(PlannedItem).where(
                    PlannedItem.user_id == self.user_id,
                    PlannedItem.category_id == category.id,
                )
            ).all()
            months = sorted({item.month for item in items})
            for item in items:
                self.session.delete(item)
            self.session.execute(
                update(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.category_id == category.id,
                )
                .values(category_id=None),
                execution_options={"synchronize_session": "fetch"},
            )
            self.session.delete(category)
            self.session.flush()
            budget_months = BudgetMonthService(self.session, self.user_id)
            for month in months:
                budget_months._sync(month)
        logger.info(f"category_deleted: user_id={self.user_id} category_id={category_id}")

    def _first_debt_category(self, *, credit_card: bool) -> Optional[Category]:
        candidates = [
            c
            for c in self.list_all()
            if c.group_name == CategoryGroup.debt
            and c.is_credit_card_bucket == credit_card
        ]
        leaves = [c for c in candidates if not self._active_child_count(c.id)]
        return leaves[0] if leaves else None

    def _ensure_credit_card_category(self) -> Category:
        existing = self._first_debt_category(credit_card=True)
        if existing is not None:
            return existing
        return self._insert(
            CategoryGroup.debt, CREDIT_CARD_CATEGORY_NAME, None, protected=True
        )

    def _ensure_debt_payment_category(self) -> Category:
        existing = self._first_debt_category(credit_card=False)
        if existing is not None:
            return existing
        return self._insert(
            CategoryGroup.debt, DEBT_PAYMENT_CATEGORY_NAME, None, protected=True
        )

    def ensure_credit_card_category(self) -> Category:
        with atomic(self.session):
            category = self._ensure_credit_card_category()
        return category

    def ensure_debt_payment_category(self) -> Category:
        with atomic(self.session):
            category = self._ensure_debt_payment_category()
        return category

    def reorder(self, dragged_id: int, target_id: int) -> bool:
        """Drop ``dragged_id`` onto ``target_id``; returns whether anything moved."""
        if dragged_id == target_id:
            return False
        dragged = self.get(dragged_id)
        target = self.get(target_id)
        if dragged.archived or target.archived:
            raise ValidationError("Archived categories can't be reordered.")

        categories = self.list_all(include_archived=True)
        plan = plan_reorder(categories, dragged.id, target.id)
        if plan is None:
            return False

        new_parent: Optional[Category] = None
        if plan.parent_changed:
            self._ensure_name_free(
                dragged.group_name, plan.parent_id, dragged.name, exclude_id=dragged.id
            )
            if plan.parent_id is not None:
                new_parent = self.get(plan.parent_id)

        by_id = {c.id: c for c in categories}
        with atomic(self.session):
            if plan.parent_changed:
                dragged.parent_id = plan.parent_id
                dragged.is_credit_card_bucket = is_credit_card_category(
                    dragged.group_name, dragged.name, new_parent
                )
            for category_id, sort_order in plan.sort_orders.items():
                by_id[category_id].sort_order = sort_order
        logger.info(
            f"category_reordered: user_id={self.user_id} dragged_id={dragged_id} "
            f"target_id={target_id} parent_id={plan.parent_id} "
            f"rows={len(plan.sort_orders)}"
        )
        return True


class CreditCardService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[CreditCard]:
        stmt = (
            select(CreditCard)
            .where(CreditCard.user_id == self.user_id)
            .order_by(CreditCard.name)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, card_id: int) -> CreditCard:
        card = self.session.get(CreditCard, card_id)
        if not card or card.user_id != self.user_id:
            raise NotFoundError("Credit card not found.")
        return card

    def create(self, data: CreditCardIn) -> CreditCard:
        if not data.name:
            raise ValidationError("Name is required.")
        card = CreditCard(
            user_id=self.user_id,
            name=data.name,
            apr_bps=data.apr_bps,
            current_balance_cents=data.current_balance_cents,
            min_payment_cents=data.min_payment_cents,
        )
        with atomic(self.session):
            self.session.add(card)
        self.session.refresh(card)
        return card

    def update(self, card_id: int, data: CreditCardIn) -> CreditCard:
        card = self.get(card_id)
        if not data.name:
            raise ValidationError("Name is required.")
        with atomic(self.session):
            card.name = data.name
            card.apr_bps = data.apr_bps
            card.current_balance_cents = data.current_balance_cents
            card.min_payment_cents = data.min_payment_cents
        self.session.refresh(card)
        return card

    def delete(self, card_id: int) -> None:
        card = self.get(card_id)
        with atomic(self.session):
            for model in (Transaction, PlannedItem):
                self.session.execute(
                    update(model)
                    .where(model.user_id == self.user_id, model.credit_card_id == card.id)
                    .values(credit_card_id=None),
                    execution_options={"synchronize_session": "fetch"},
                )
            self.session.delete(card)


class DebtAccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _resync_months(self) -> None:
        # minimum payments feed planned outflow of every month
        BudgetMonthService(self.session, self.user_id)._sync_all()

    def list_all(self) -> list[DebtAccount]:
        stmt = (
            select(DebtAccount)
            .where(DebtAccount.user_id == self.user_id)
            .order_by(DebtAccount.name)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> DebtAccount:
        account = self.session.get(DebtAccount, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Debt account not found.")
        return account

    def create(self, data: DebtAccountIn) -> DebtAccount:
        if not data.name:
            raise ValidationError("Name is required.")
        account = DebtAccount(
            user_id=self.user_id,
            name=data.name,
            debt_type=data.debt_type,
            balance_cents=data.balance_cents,
            apr_bps=data.apr_bps,
            min_payment_cents=data.min_payment_cents,
            due_date=data.due_date,
        )
        with atomic(self.session):
            self.session.add(account)
            self.session.flush()
            self._resync_months()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: DebtAccountIn) -> DebtAccount:
        account = self.get(account_id)
        if not data.name:
            raise ValidationError("Name is required.")
        with atomic(self.session):
            account.name = data.name
            account.debt_type = data.debt_type
            account.balance_cents = data.balance_cents
            account.apr_bps = data.apr_bps
            account.min_payment_cents = data.min_payment_cents
            account.due_date = data.due_date
            self.session.flush()
            self._resync_months()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        with atomic(self.session):
            for model in (Transaction, PlannedItem):
                self.session.execute(
                    update(model)
                    .where(
                        model.user_id == self.user_id,
                        model.debt_account_id == account.id,
                    )
                    .values(debt_account_id=None),
                    execution_options={"synchronize_session": "fetch"},
                )
            self.session.delete(account)
            self.session.flush()
            self._resync_months()


@dataclass(frozen=True)
class AccountLink:
    credit_card_id: Optional[int] = None
    debt_account_id: Optional[int] = None

    @classmethod
    def of(cls, record: Transaction) -> "AccountLink":
        return cls(record.credit_card_id, record.debt_account_id)

    @property
    def is_empty(self) -> bool:
        return self.credit_card_id is None and self.debt_account_id is None


class BalanceReconciler:
    """Keeps card and debt balances equal to starting balance minus payments.

    Balances are maintained incrementally: every write of a linked
    transaction goes through ``apply``/``reverse`` inside the same unit of
    work as the transaction row itself.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.cards = CreditCardService(session, user_id)
        self.debts = DebtAccountService(session, user_id)

    def accounts_for(
        self, link: AccountLink
    ) -> tuple[Optional[CreditCard], Optional[DebtAccount]]:
        card = self.cards.get(link.credit_card_id) if link.credit_card_id else None
        debt = self.debts.get(link.debt_account_id) if link.debt_account_id else None
        return card, debt

    def _adjust(self, link: AccountLink, delta_cents: int) -> None:
        if link.is_empty or delta_cents == 0:
            return
        card, debt = self.accounts_for(link)
        if card is not None:
            card.current_balance_cents += delta_cents
            logger.info(
                f"balance_adjusted: credit_card_id={card.id} delta_cents={delta_cents} "
                f"balance_cents={card.current_balance_cents}"
            )
        if debt is not None:
            debt.balance_cents += delta_cents
            logger.info(
                f"balance_adjusted: debt_account_id={debt.id} delta_cents={delta_cents} "
                f"balance_cents={debt.balance_cents}"
            )
        self.session.flush()

    def apply(self, link: AccountLink, amount_cents: int) -> None:
        self._adjust(link, -amount_cents)

    def reverse(self, link: AccountLink, amount_cents: int) -> None:
        self._adjust(link, amount_cents)

    def total_paid(self, column) -> dict[int, int]:
        rows = self.session.execute(
            select(column, func.coalesce(func.sum(Transaction.amount_cents), 0))
            .where(Transaction.user_id == self.user_id, column.isnot(None))
            .group_by(column)
        ).all()
        return {int(account_id): int(total or 0) for account_id, total in rows}

    def recalculate(
        self,
        card_starting_cents: Mapping[int, int],
        debt_starting_cents: Optional[Mapping[int, int]] = None,
    ) -> tuple[list[CreditCard], list[DebtAccount]]:
        """Rebuild balances as ``starting - sum(linked payments)``.

        Only the accounts named in the mappings are touched. Running it twice
        with the same starting balances gives the same result.
        """
        debt_starting_cents = debt_starting_cents or {}
        cards = [self.cards.get(card_id) for card_id in card_starting_cents]
        debts = [self.debts.get(account_id) for account_id in debt_starting_cents]
        paid_by_card = self.total_paid(Transaction.credit_card_id)
        paid_by_debt = self.total_paid(Transaction.debt_account_id)
        for card in cards:
            card.current_balance_cents = card_starting_cents[card.id] - paid_by_card.get(
                card.id, 0
            )
        for debt in debts:
            debt.balance_cents = debt_starting_cents[debt.id] - paid_by_debt.get(
                debt.id, 0
            )
        self.session.flush()
        logger.info(
            f"balances_recalculated: user_id={self.user_id} cards={len(cards)} "
            f"debt_accounts={len(debts)}"
        )
        return cards, debts


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.categories = CategoryService(session, user_id)
        self.reconciler = BalanceReconciler(session, user_id)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found.")
        return txn

    def list_for_month(self, month: date) -> list[Transaction]:
        window = month_window(month)
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date >= window.start,
                Transaction.date < window.end,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def recent(self, limit: int = 10) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def _validate(
        self, data: TransactionIn
    ) -> tuple[Optional[Category], Optional[CreditCard], Optional[DebtAccount]]:
        category = (
            self.categories.get(data.category_id)
            if data.category_id is not None
            else None
        )
        card, debt = self.reconciler.accounts_for(
            AccountLink(data.credit_card_id, data.debt_account_id)
        )
        error = link_requirement_error(
            category, data.credit_card_id, data.debt_account_id, debt
        )
        if error:
            raise ValidationError(error)
        return category, card, debt

    @staticmethod
    def fallback_name(
        category: Optional[Category],
        card: Optional[CreditCard],
        debt: Optional[DebtAccount],
    ) -> str:
        if category is None:
            return "Transaction"
        kind = classify(category)
        if kind == CategoryKind.credit_card:
            account_name = card.name if card else (debt.name if debt else "Credit Card")
            return f"Credit Card Payment - {account_name}"
        if kind == CategoryKind.debt_account:
            return f"Debt Payment - {debt.name if debt else 'Debt'}"
        return category.name

    def create(self, data: TransactionIn) -> Transaction:
        category, card, debt = self._validate(data)
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            name=data.name or self.fallback_name(category, card, debt),
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            credit_card_id=data.credit_card_id,
            debt_account_id=data.debt_account_id,
        )
        with reconciliation_unit(self.session, "insert", user_id=self.user_id):
            self.session.add(txn)
            self.session.flush()
            self.reconciler.apply(AccountLink.of(txn), txn.amount_cents)
        self.session.refresh(txn)
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        category, card, debt = self._validate(data)
        old_link = AccountLink.of(txn)
        old_amount = txn.amount_cents

        with reconciliation_unit(
            self.session, "update", user_id=self.user_id, transaction_id=txn.id
        ):
            # reverse against the old link before applying the new one
            self.reconciler.reverse(old_link, old_amount)
            txn.date = data.date
            txn.name = data.name or self.fallback_name(category, card, debt)
            txn.amount_cents = data.amount_cents
            txn.category_id = data.category_id
            txn.credit_card_id = data.credit_card_id
            txn.debt_account_id = data.debt_account_id
            self.session.flush()
            self.reconciler.apply(AccountLink.of(txn), txn.amount_cents)
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        link = AccountLink.of(txn)
        amount = txn.amount_cents
        with reconciliation_unit(
            self.session, "delete", user_id=self.user_id, transaction_id=txn.id
        ):
            self.session.delete(txn)
            self.session.flush()
            self.reconciler.reverse(link, amount)

    def recalculate_balances(
        self,
        card_starting_cents: Mapping[int, int],
        debt_starting_cents: Optional[Mapping[int, int]] = None,
    ) -> tuple[list[CreditCard], list[DebtAccount]]:
        with reconciliation_unit(self.session, "recalculate", user_id=self.user_id):
            return self.reconciler.recalculate(card_starting_cents, debt_starting_cents)


class BudgetMonthService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, month: date) -> Optional[BudgetMonth]:
        return self.session.scalar(
            select(BudgetMonth).where(
                BudgetMonth.user_id == self.user_id,
                BudgetMonth.month == month_start(month),
            )
        )

    def planned_totals(self, month: date) -> tuple[int, int]:
        month = month_start(month)
        categories = self.session.scalars(
            select(Category).where(Category.user_id == self.user_id)
        ).all()
        debts = self.session.scalars(
            select(DebtAccount).where(DebtAccount.user_id == self.user_id)
        ).all()
        items = self.session.scalars(
            select(PlannedItem).where(
                PlannedItem.user_id == self.user_id, PlannedItem.month == month
            )
        ).all()
        aggregator = Aggregator(categories, debt_accounts=debts)
        return aggregator.planned_income(items), aggregator.planned_outflow(items)

    def _recompute(self, month: date, row: Optional[BudgetMonth]) -> BudgetMonth:
        income, outflow = self.planned_totals(month)
        previous = self.get(previous_month(month))
        override = None
        if row is not None and row.start_overridden:
            override = row.available_start_cents
        result = compute_rollover(
            month,
            planned_income_cents=income,
            planned_outflow_cents=outflow,
            override_cents=override,
            previous_end_cents=previous.available_end_cents if previous else None,
        )
        if row is None:
            row = BudgetMonth(user_id=self.user_id, month=month)
            self.session.add(row)
        row.available_start_cents = result.available_start_cents
        row.available_end_cents = result.available_end_cents
        row.start_overridden = result.start_overridden
        self.session.flush()
        return row

    def _sync(self, month: date) -> BudgetMonth:
        month = month_start(month)
        row = self._recompute(month, self.get(month))
        # later months that already exist carry this month's end forward
        following = next_month(month)
        later = self.get(following)
        while later is not None:
            self._recompute(following, later)
            following = next_month(following)
            later = self.get(following)
        return row

    def _sync_all(self) -> None:
        rows = self.session.scalars(
            select(BudgetMonth)
            .where(BudgetMonth.user_id == self.user_id)
            .order_by(BudgetMonth.month)
        ).all()
        for row in rows:
            self._recompute(row.month, row)

    def sync(self, month: date) -> BudgetMonth:
        with atomic(self.session):
            row = self._sync(month)
        return row

    def set_available_start(self, data: BudgetMonthIn) -> BudgetMonth:
        """Pin (or with ``None``, unpin) the month's starting amount."""
        with atomic(self.session):
            row = self.get(data.month)
            if row is None:
                row = BudgetMonth(user_id=self.user_id, month=data.month)
                self.session.add(row)
            row.start_overridden = data.available_start_cents is not None
            if data.available_start_cents is not None:
                row.available_start_cents = data.available_start_cents
            self.session.flush()
            row = self._sync(data.month)
        return row

    def clear_override(self, month: date) -> BudgetMonth:
        return self.set_available_start(BudgetMonthIn(month=month))


class PlannedItemService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.categories = CategoryService(session, user_id)
        self.cards = CreditCardService(session, user_id)
        self.debts = DebtAccountService(session, user_id)
        self.budget_months = BudgetMonthService(session, user_id)

    def get(self, item_id: int) -> PlannedItem:
        item = self.session.get(PlannedItem, item_id)
        if not item or item.user_id != self.user_id:
            raise NotFoundError("Planned item not found.")
        return item

    def list_for_month(self, month: date) -> list[PlannedItem]:
        stmt = (
            select(PlannedItem)
            .where(
                PlannedItem.user_id == self.user_id,
                PlannedItem.month == month_start(month),
            )
            .order_by(PlannedItem.id)
        )
        return list(self.session.scalars(stmt).all())

    def add(self, data: PlannedItemIn) -> PlannedItem:
        category = self.categories.get(data.category_id)
        debt = self.debts.get(data.debt_account_id) if data.debt_account_id else None
        if data.credit_card_id:
            self.cards.get(data.credit_card_id)
        error = link_requirement_error(
            category, data.credit_card_id, data.debt_account_id, debt
        )
        if error:
            raise ValidationError(error)
        item = PlannedItem(
            user_id=self.user_id,
            month=data.month,
            type=planned_item_type(category.group_name),
            category_id=category.id,
            credit_card_id=data.credit_card_id,
            debt_account_id=data.debt_account_id,
            name=data.name,
            amount_cents=data.amount_cents,
        )
        with atomic(self.session):
            self.session.add(item)
            self.session.flush()
            self.budget_months._sync(data.month)
        self.session.refresh(item)
        return item

    def delete(self, item_id: int) -> None:
        self.delete_many([item_id])

    def delete_many(self, item_ids: Iterable[int]) -> None:
        items = [self.get(item_id) for item_id in item_ids]
        if not items:
            raise ValidationError("Ids are required.")
        months = {item.month for item in items}
        with atomic(self.session):
            for item in items:
                self.session.delete(item)
            self.session.flush()
            for month in sorted(months):
                self.budget_months._sync(month)

    def items_in_bucket(self, month: date, key: BucketKey) -> list[PlannedItem]:
        items = self.list_for_month(month)
        by_id = {c.id: c for c in self.categories.list_all(include_archived=True)}
        return [
            item
            for item in items
            if resolve_bucket_key(item, by_id.get(item.category_id)) == key
        ]

    def _target_for(
        self, key: BucketKey, items: list[PlannedItem]
    ) -> tuple[Category, Optional[int], Optional[int]]:
        """Validate ``key`` and return (category, card id, debt id) for a new row."""
        if isinstance(key, CategoryBucket):
            category = self.categories.get(key.category_id)
            if self.categories._active_child_count(category.id):
                raise ValidationError(
                    "Plan amounts on a subcategory, not on its parent."
                )
            if classify(category) == CategoryKind.credit_card:
                raise ValidationError("Select a credit card.")
            return category, None, None
        if isinstance(key, CardBucket):
            if key.is_unassigned:
                # rows whose card was deleted collapse in place, unlinked
                if not items:
                    raise ValidationError("Select a credit card.")
                return self.categories.get(items[0].category_id), None, None
            if key.credit_card_id is not None:
                self.cards.get(key.credit_card_id)
            else:
                account = self.debts.get(key.debt_account_id)
                if account.debt_type != DebtType.credit_card:
                    raise ValidationError(
                        "Only credit card debt accounts can be paid from a credit card category."
                    )
            return (
                self.categories._ensure_credit_card_category(),
                key.credit_card_id,
                key.debt_account_id,
            )
        if isinstance(key, DebtBucket):
            self.debts.get(key.debt_account_id)
            return (
                self.categories._ensure_debt_payment_category(),
                None,
                key.debt_account_id,
            )
        raise ValidationError("Unknown bucket.")

    def update_planned_total(
        self,
        month: date,
        key: BucketKey,
        amount_cents: int,
        *,
        confirm: bool = False,
    ) -> PlannedItem:
        """Make ``amount_cents`` the single planned amount of a bucket.

        When the bucket already holds several planned rows they are replaced
        by one "Planned total" row, which only happens with ``confirm=True``;
        otherwise ``AmbiguousStateError`` is raised and nothing is written.
        """
        if amount_cents is None or amount_cents < 0:
            raise ValidationError("Enter a valid amount.")
        month = month_start(month)
        items = self.items_in_bucket(month, key)
        if len(items) > 1 and not confirm:
            raise AmbiguousStateError(
                "This category has multiple planned items. "
                "Replace them with a single total?",
                item_ids=[item.id for item in items],
            )

        with atomic(self.session):
            if len(items) == 1:
                item = items[0]
                item.amount_cents = amount_cents
            else:
                category, card_id, debt_id = self._target_for(key, items)
                for old in items:
                    self.session.delete(old)
                item = PlannedItem(
                    user_id=self.user_id,
                    month=month,
                    type=planned_item_type(category.group_name),
                    category_id=category.id,
                    credit_card_id=card_id,
                    debt_account_id=debt_id,
                    name=PLANNED_TOTAL_NAME,
                    amount_cents=amount_cents,
                )
                self.session.add(item)
            self.session.flush()
            self.budget_months._sync(month)
        if len(items) > 1:
            logger.info(
                f"planned_items_collapsed: user_id={self.user_id} month={month} "
                f"replaced={len(items)} amount_cents={amount_cents}"
            )
        self.session.refresh(item)
        return item


@dataclass
class MonthSnapshot:
    month: date
    categories: list[Category]
    archived_categories: list[Category]
    credit_cards: list[CreditCard]
    debt_accounts: list[DebtAccount]
    planned_items: list[PlannedItem]
    transactions: list[Transaction]
    budget_month: Optional[BudgetMonth]

    def aggregator(self) -> Aggregator:
        return Aggregator(
            [*self.categories, *self.archived_categories],
            credit_cards=self.credit_cards,
            debt_accounts=self.debt_accounts,
        )


class BudgetService:
    """Month-level entry point used by the presentation layer."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.categories = CategoryService(session, user_id)
        self.cards = CreditCardService(session, user_id)
        self.debts = DebtAccountService(session, user_id)
        self.transactions = TransactionService(session, user_id)
        self.planned = PlannedItemService(session, user_id)
        self.budget_months = BudgetMonthService(session, user_id)

    def load_month(self, month: date) -> MonthSnapshot:
        month = month_start(month)
        return MonthSnapshot(
            month=month,
            categories=self.categories.list_all(),
            archived_categories=self.categories.list_archived(),
            credit_cards=self.cards.list_all(),
            debt_accounts=self.debts.list_all(),
            planned_items=self.planned.list_for_month(month),
            transactions=self.transactions.list_for_month(month),
            budget_month=self.budget_months.get(month),
        )

    def bucket_rows(self, month: date) -> list[BucketRow]:
        snapshot = self.load_month(month)
        return snapshot.aggregator().rows(
            snapshot.planned_items, snapshot.transactions
        )

    def summary(self, month: date) -> tuple[MonthSummary, Optional[BudgetMonth]]:
        snapshot = self.load_month(month)
        summary = snapshot.aggregator().summary(
            snapshot.planned_items, snapshot.transactions
        )
        return summary, snapshot.budget_month

    def mutate_planned_total(
        self,
        month: date,
        key: BucketKey,
        amount_cents: int,
        *,
        confirm: bool = False,
    ) -> PlannedItem:
        return self.planned.update_planned_total(
            month, key, amount_cents, confirm=confirm
        )

    def insert_transaction(self, data: TransactionIn) -> Transaction:
        return self.transactions.create(data)

    def edit_transaction(self, transaction_id: int, data: TransactionIn) -> Transaction:
        return self.transactions.update(transaction_id, data)

    def delete_transaction(self, transaction_id: int) -> None:
        self.transactions.delete(transaction_id)

    def reorder_category(self, dragged_id: int, target_id: int) -> bool:
        return self.categories.reorder(dragged_id, target_id)

    def recalculate_balances(
        self,
        card_starting_cents: Mapping[int, int],
        debt_starting_cents: Optional[Mapping[int, int]] = None,
    ) -> tuple[list[CreditCard], list[DebtAccount]]:
        return self.transactions.recalculate_balances(
            card_starting_cents, debt_starting_cents
        )
