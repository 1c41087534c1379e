from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

UNCATEGORIZED_ID = "uncategorized"
UNCATEGORIZED_NAME = "Uncategorized"
UNCATEGORIZED_COLOR = "#999999"


@dataclass(frozen=True)
class Category:
    id: int | str
    name: str
    color: str


UNCATEGORIZED = Category(
    id=UNCATEGORIZED_ID,
    name=UNCATEGORIZED_NAME,
    color=UNCATEGORIZED_COLOR,
)


@dataclass(frozen=True)
class Subscription:
    """A subscription as the spend engine sees it.

    ``cost`` is the charge for one billing cycle in ``currency``.
    """

    id: int
    name: str
    cost: Decimal
    currency: str
    billing_frequency: str
    start_date: date
    end_date: date | None = None
    category: Category | None = None

    @property
    def category_or_default(self) -> Category:
        return self.category or UNCATEGORIZED

    def is_active_on(self, value: date) -> bool:
        return self.end_date is None or self.end_date > value


def category_key(category: Category) -> str:
    return str(category.id)
