"""Bucket classification for planned items and transactions.

A bucket is the unit planned and actual amounts are compared in. Plain
categories are their own bucket; credit-card payment categories are split per
card and other Debt categories are split per debt account.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Union

from models import Category, CategoryGroup, DebtAccount, DebtType

CREDIT_CARD_LABEL = "credit card"


@dataclass(frozen=True)
class CategoryBucket:
    category_id: int


@dataclass(frozen=True)
class CardBucket:
    """Payments toward one card.

    A card is either a ``CreditCard`` row or a credit-card-typed
    ``DebtAccount``; both ids unset is the pool of unlinked card payments.
    """

    credit_card_id: Optional[int] = None
    debt_account_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.credit_card_id is not None and self.debt_account_id is not None:
            raise ValueError("A card bucket references one account")

    @property
    def is_unassigned(self) -> bool:
        return self.credit_card_id is None and self.debt_account_id is None


@dataclass(frozen=True)
class DebtBucket:
    debt_account_id: int


BucketKey = Union[CategoryBucket, CardBucket, DebtBucket]


class CategoryKind(str, Enum):
    plain = "plain"
    credit_card = "credit_card"
    debt_account = "debt_account"


class LinkedRecord(Protocol):
    category_id: Optional[int]
    credit_card_id: Optional[int]
    debt_account_id: Optional[int]


def is_credit_card_label(name: Optional[str]) -> bool:
    return CREDIT_CARD_LABEL in (name or "").lower()


def is_credit_card_category(
    group_name: CategoryGroup, name: str, parent: Optional[Category] = None
) -> bool:
    """Substring rule stored on ``Category.is_credit_card_bucket`` at write time."""
    if group_name != CategoryGroup.debt:
        return False
    if is_credit_card_label(name):
        return True
    return parent is not None and is_credit_card_label(parent.name)


def classify(category: Category) -> CategoryKind:
    if category.group_name != CategoryGroup.debt:
        return CategoryKind.plain
    if category.is_credit_card_bucket:
        return CategoryKind.credit_card
    return CategoryKind.debt_account


def resolve_bucket_key(
    record: LinkedRecord, category: Optional[Category]
) -> Optional[BucketKey]:
    if category is None or record.category_id is None:
        return None
    if classify(category) == CategoryKind.credit_card:
        if record.credit_card_id is not None:
            return CardBucket(credit_card_id=record.credit_card_id)
        if record.debt_account_id is not None:
            return CardBucket(debt_account_id=record.debt_account_id)
        return CardBucket()
    if record.debt_account_id is not None:
        return DebtBucket(record.debt_account_id)
    return CategoryBucket(record.category_id)


def link_requirement_error(
    category: Optional[Category],
    credit_card_id: Optional[int],
    debt_account_id: Optional[int],
    debt_account: Optional[DebtAccount] = None,
) -> Optional[str]:
    """Return why a card/debt link is invalid for ``category``, or ``None``."""
    has_link = credit_card_id is not None or debt_account_id is not None
    if category is None:
        if has_link:
            return "Choose a Debt category for card or debt payments."
        return None
    kind = classify(category)
    if kind == CategoryKind.plain:
        if has_link:
            return "Invalid payment mapping for non-debt category."
        return None
    if kind == CategoryKind.credit_card:
        if not has_link:
            return "Select a credit card."
        if credit_card_id is not None and debt_account_id is not None:
            return "Link either a credit card or a debt account, not both."
        if debt_account is not None and debt_account.debt_type != DebtType.credit_card:
            return "Only credit card debt accounts can be paid from a credit card category."
        return None
    if debt_account_id is None:
        return "Select a debt account."
    if credit_card_id is not None:
        return "Credit card only allowed for credit card categories."
    return None
