from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from .config import Settings


class Platform(str, enum.Enum):
    STORE = "STORE"
    POS = "POS"

    @property
    def other(self) -> "Platform":
        return Platform.POS if self is Platform.STORE else Platform.STORE


class Direction(str, enum.Enum):
    STORE_TO_POS = "storeToPos"
    POS_TO_STORE = "posToStore"

    @property
    def source(self) -> Platform:
        return Platform.STORE if self is Direction.STORE_TO_POS else Platform.POS

    @property
    def target(self) -> Platform:
        return self.source.other

    @property
    def tag(self) -> str:
        return f"[{self.source.value} ➝ {self.target.value}]"


def quantize(amount: Any, decimals: int) -> Decimal:
    """Round a platform amount to its native precision. No currency conversion."""
    value = Decimal(str(amount if amount not in (None, "") else "0"))
    return value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineItem:
    sku: str
    quantity: int
    unit_price: Decimal = Decimal("0")
    name: str = ""


@dataclass(frozen=True)
class ChangeRecord:
    source_platform: Platform
    source_id: str
    occurred_at: datetime
    line_items: tuple[LineItem, ...]
    total_amount: Decimal
    reference: str = ""
    customer_label: str = ""
    customer_email: str | None = None
    origin: Platform | None = None

    @property
    def from_other_platform(self) -> bool:
        return self.origin is not None and self.origin is not self.source_platform


@dataclass(frozen=True)
class ProductIdentity:
    sku: str
    store_product_id: str | None = None
    pos_product_id: str | None = None
    pos_variant_id: str | None = None
    store_variant_id: str | None = None
    reported_stock: int | None = None
    name: str = ""


class _Unmatched:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNMATCHED"

    def __bool__(self):
        return False


UNMATCHED = _Unmatched()


@dataclass
class ReconcileResult:
    processed: int = 1
    success: int = 0
    skipped: int = 0
    stock_moved: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        return "success" if self.success else "error"


@dataclass
class DirectionAggregate:
    direction: Direction
    processed: int = 0
    success: int = 0
    skipped: int = 0
    stock_moved: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    aborted: bool = False

    def add(self, res: ReconcileResult):
        self.processed += res.processed
        self.success += res.success
        self.skipped += res.skipped
        self.stock_moved += res.stock_moved
        self.errors.extend(res.errors)
        self.warnings.extend(res.warnings)

    def to_dict(self) -> dict:
        moved_key = "stockDeducted" if self.direction is Direction.STORE_TO_POS else "stockUpdated"
        return {
            "processed": self.processed,
            "success": self.success,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            moved_key: self.stock_moved,
            "aborted": self.aborted,
        }


@dataclass
class SyncContext:
    """Everything one pass needs, passed explicitly instead of read from globals."""
    connection_id: str
    settings: "Settings"
    session: "Session"
    store: Any  # WooCommerceClient
    pos: Any    # ProkipClient
