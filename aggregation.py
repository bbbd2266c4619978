from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from buckets import (
    BucketKey,
    CardBucket,
    CategoryBucket,
    CategoryKind,
    DebtBucket,
    LinkedRecord,
    classify,
    resolve_bucket_key,
)
from models import (
    DIFFERENCE_GROUPS,
    Category,
    CategoryGroup,
    CreditCard,
    DebtAccount,
    DebtType,
    PlannedItem,
    Transaction,
)

UNASSIGNED_CARD_LABEL = "Unassigned card payments"
MISSING_ACCOUNT_LABEL = "Removed account"
MISSING_CATEGORY_LABEL = "Removed category"


@dataclass
class BucketTotals:
    planned_cents: int = 0
    actual_cents: int = 0

    @property
    def remaining_cents(self) -> int:
        return self.planned_cents - self.actual_cents

    def add(self, other: "BucketTotals") -> None:
        self.planned_cents += other.planned_cents
        self.actual_cents += other.actual_cents


@dataclass(frozen=True)
class BucketRow:
    key: BucketKey
    label: str
    group_name: CategoryGroup
    category_id: Optional[int]
    parent_id: Optional[int]
    planned_cents: int
    actual_cents: int

    @property
    def remaining_cents(self) -> int:
        return self.planned_cents - self.actual_cents

    @property
    def is_difference(self) -> bool:
        return self.group_name in DIFFERENCE_GROUPS

    @property
    def is_overspent(self) -> bool:
        return not self.is_difference and self.remaining_cents < 0


@dataclass(frozen=True)
class MonthSummary:
    planned_income_cents: int
    planned_outflow_cents: int
    actual_income_cents: int
    actual_outflow_cents: int
    debt_payments_cents: int

    @property
    def planned_net_cents(self) -> int:
        return self.planned_income_cents - self.planned_outflow_cents

    @property
    def actual_net_cents(self) -> int:
        return self.actual_income_cents - self.actual_outflow_cents


def _display_order(category: Category) -> tuple[int, str, int]:
    return (category.sort_order, category.name.lower(), category.id)


@dataclass
class Aggregator:
    """Sums planned and actual amounts per bucket for one month of records.

    ``categories`` should include archived rows so that records filed under
    them still resolve to a bucket.
    """

    categories: Sequence[Category]
    credit_cards: Sequence[CreditCard] = ()
    debt_accounts: Sequence[DebtAccount] = ()
    _by_id: dict[int, Category] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._by_id = {c.id: c for c in self.categories}

    def category_for(self, record: LinkedRecord) -> Optional[Category]:
        if record.category_id is None:
            return None
        return self._by_id.get(record.category_id)

    def key_for(self, record: LinkedRecord) -> Optional[BucketKey]:
        return resolve_bucket_key(record, self.category_for(record))

    def aggregate(
        self,
        planned_items: Iterable[PlannedItem],
        transactions: Iterable[Transaction],
    ) -> dict[BucketKey, BucketTotals]:
        result: dict[BucketKey, BucketTotals] = {}
        for item in planned_items:
            key = self.key_for(item)
            if key is None:
                continue
            result.setdefault(key, BucketTotals()).planned_cents += item.amount_cents
        for txn in transactions:
            key = self.key_for(txn)
            if key is None:
                continue
            result.setdefault(key, BucketTotals()).actual_cents += txn.amount_cents
        return result

    def _active_children(self) -> dict[int, list[Category]]:
        children: dict[int, list[Category]] = {}
        for category in self.categories:
            if category.parent_id is not None and not category.archived:
                children.setdefault(category.parent_id, []).append(category)
        for siblings in children.values():
            siblings.sort(key=_display_order)
        return children

    def _leaves(self) -> list[Category]:
        children = self._active_children()
        top_level = sorted(
            (c for c in self.categories if c.parent_id is None and not c.archived),
            key=lambda c: (list(CategoryGroup).index(c.group_name), *_display_order(c)),
        )
        leaves: list[Category] = []
        for parent in top_level:
            kids = children.get(parent.id)
            if kids:
                leaves.extend(kids)
            else:
                leaves.append(parent)
        return leaves

    def _card_rows(self) -> list[tuple[BucketKey, str]]:
        rows: list[tuple[BucketKey, str]] = [
            (CardBucket(credit_card_id=card.id), card.name)
            for card in sorted(self.credit_cards, key=lambda c: c.name.lower())
        ]
        rows.extend(
            (CardBucket(debt_account_id=account.id), account.name)
            for account in sorted(self.debt_accounts, key=lambda a: a.name.lower())
            if account.debt_type == DebtType.credit_card
        )
        return rows

    def _debt_rows(self) -> list[tuple[BucketKey, str]]:
        return [
            (DebtBucket(account.id), account.name)
            for account in sorted(self.debt_accounts, key=lambda a: a.name.lower())
            if account.debt_type != DebtType.credit_card
        ]

    def _label_for(self, key: BucketKey) -> tuple[str, CategoryGroup, Optional[Category]]:
        if isinstance(key, CategoryBucket):
            category = self._by_id.get(key.category_id)
            if category is None:
                return MISSING_CATEGORY_LABEL, CategoryGroup.misc, None
            return category.name, category.group_name, category
        if isinstance(key, CardBucket):
            if key.is_unassigned:
                return UNASSIGNED_CARD_LABEL, CategoryGroup.debt, None
            if key.credit_card_id is not None:
                card = next(
                    (c for c in self.credit_cards if c.id == key.credit_card_id), None
                )
                return (card.name if card else MISSING_ACCOUNT_LABEL), CategoryGroup.debt, None
        debt_id = key.debt_account_id
        account = next((a for a in self.debt_accounts if a.id == debt_id), None)
        return (account.name if account else MISSING_ACCOUNT_LABEL), CategoryGroup.debt, None

    def rows(
        self,
        planned_items: Iterable[PlannedItem],
        transactions: Iterable[Transaction],
    ) -> list[BucketRow]:
        """Display rows for the month, one per bucket, in category order.

        Credit-card categories are pooled: the first one expands into a row per
        card and the others contribute to the same card rows. The first plain
        Debt category expands into a row per non-card debt account. Buckets
        holding amounts without a natural row are appended so no total is lost.
        """
        totals = self.aggregate(planned_items, transactions)
        rows: list[BucketRow] = []
        emitted: set[BucketKey] = set()

        def emit(
            key: BucketKey,
            label: str,
            group_name: CategoryGroup,
            anchor: Optional[Category],
        ) -> None:
            if key in emitted:
                return
            emitted.add(key)
            amounts = totals.get(key, BucketTotals())
            rows.append(
                BucketRow(
                    key=key,
                    label=label,
                    group_name=group_name,
                    category_id=anchor.id if anchor else None,
                    parent_id=anchor.parent_id if anchor else None,
                    planned_cents=amounts.planned_cents,
                    actual_cents=amounts.actual_cents,
                )
            )

        card_anchor_done = False
        debt_anchor_done = False
        for leaf in self._leaves():
            kind = classify(leaf)
            if kind == CategoryKind.credit_card:
                if card_anchor_done:
                    continue
                card_anchor_done = True
                for key, label in self._card_rows():
                    emit(key, label, CategoryGroup.debt, leaf)
                if CardBucket() in totals:
                    emit(CardBucket(), UNASSIGNED_CARD_LABEL, CategoryGroup.debt, leaf)
                continue
            if kind == CategoryKind.debt_account:
                if not debt_anchor_done:
                    debt_anchor_done = True
                    for key, label in self._debt_rows():
                        emit(key, label, CategoryGroup.debt, leaf)
                if CategoryBucket(leaf.id) in totals:
                    emit(CategoryBucket(leaf.id), leaf.name, leaf.group_name, leaf)
                continue
            emit(CategoryBucket(leaf.id), leaf.name, leaf.group_name, leaf)

        for key in totals:
            if key in emitted:
                continue
            label, group_name, anchor = self._label_for(key)
            emit(key, label, group_name, anchor)
        return rows

    @staticmethod
    def rollup(rows: Iterable[BucketRow]) -> dict[int, BucketTotals]:
        """Parent category id -> sum of the rows filed beneath it."""
        result: dict[int, BucketTotals] = {}
        for row in rows:
            if row.parent_id is None:
                continue
            result.setdefault(row.parent_id, BucketTotals()).add(
                BucketTotals(row.planned_cents, row.actual_cents)
            )
        return result

    @staticmethod
    def group_totals(rows: Iterable[BucketRow]) -> dict[CategoryGroup, BucketTotals]:
        result: dict[CategoryGroup, BucketTotals] = {}
        for row in rows:
            result.setdefault(row.group_name, BucketTotals()).add(
                BucketTotals(row.planned_cents, row.actual_cents)
            )
        return result

    def planned_income(self, planned_items: Iterable[PlannedItem]) -> int:
        total = 0
        for item in planned_items:
            category = self.category_for(item)
            if category is not None and category.group_name == CategoryGroup.income:
                total += item.amount_cents
        return total

    def planned_outflow(self, planned_items: Sequence[PlannedItem]) -> int:
        """Planned spending plus minimum payments nobody planned explicitly."""
        total = 0
        planned_keys: set[BucketKey] = set()
        for item in planned_items:
            category = self.category_for(item)
            if category is None:
                continue
            key = self.key_for(item)
            if key is not None:
                planned_keys.add(key)
            if category.group_name != CategoryGroup.income:
                total += item.amount_cents
        for account in self.debt_accounts:
            candidates = {
                DebtBucket(account.id),
                CardBucket(debt_account_id=account.id),
            }
            if candidates & planned_keys:
                continue
            total += account.min_payment_cents or 0
        return total

    def summary(
        self,
        planned_items: Sequence[PlannedItem],
        transactions: Sequence[Transaction],
    ) -> MonthSummary:
        actual_income = 0
        actual_outflow = 0
        debt_payments = 0
        for txn in transactions:
            category = self.category_for(txn)
            if category is None:
                # uncategorised spending still leaves the account
                actual_outflow += txn.amount_cents
                continue
            if category.group_name == CategoryGroup.income:
                actual_income += txn.amount_cents
                continue
            if category.group_name != CategoryGroup.savings:
                actual_outflow += txn.amount_cents
            if category.group_name == CategoryGroup.debt:
                debt_payments += txn.amount_cents
        return MonthSummary(
            planned_income_cents=self.planned_income(planned_items),
            planned_outflow_cents=self.planned_outflow(planned_items),
            actual_income_cents=actual_income,
            actual_outflow_cents=actual_outflow,
            debt_payments_cents=debt_payments,
        )
