from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from typing import Optional, List, Any
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


# ─────────────── Enums ───────────────

class RuleKind(str, Enum):
    buy_x_get_y = "BUY_X_GET_Y"
    product_discount = "PRODUCT_DISCOUNT"
    order_discount = "ORDER_DISCOUNT"


class PromotionStatus(str, Enum):
    active = "ACTIVE"
    paused = "PAUSED"
    upcoming = "UPCOMING"
    expired = "EXPIRED"
    cancelled = "CANCELLED"


class DiscountKind(str, Enum):
    percentage = "PERCENTAGE"
    fixed_amount = "FIXED_AMOUNT"


class GiftDiscountKind(str, Enum):
    free = "FREE"
    percentage = "PERCENTAGE"
    fixed_amount = "FIXED_AMOUNT"


class ApplyScope(str, Enum):
    all = "ALL"
    product = "PRODUCT"


class AppliedDiscountKind(str, Enum):
    percentage = "percentage"
    fixed = "fixed"


def _check_magnitude(kind, magnitude: Optional[Decimal]) -> None:
    if kind == GiftDiscountKind.free:
        return
    if magnitude is None:
        raise ValueError("Discount magnitude is required")
    if kind in (DiscountKind.percentage, GiftDiscountKind.percentage):
        if not (0 < magnitude <= 100):
            raise ValueError("Percentage discount must be in (0, 100]")
    elif magnitude <= 0:
        raise ValueError("Fixed discount must be a positive amount")


def _check_positive(v: Optional[int]) -> Optional[int]:
    if v is not None and v < 1:
        raise ValueError("Must be at least 1")
    return v


def _check_non_negative(v: Optional[Decimal]) -> Optional[Decimal]:
    if v is not None and v < 0:
        raise ValueError("Must not be negative")
    return v


# ─────────────── Rule detail sub-schemas ───────────────

class BuyXGetYDetails(BaseModel):
    buy_product_ref: str
    buy_min_quantity: int
    gift_product_ref: str
    gift_quantity_per_set: Optional[int] = None  # None => 1 per set
    gift_max_sets: Optional[int] = None          # None => uncapped
    gift_discount_kind: GiftDiscountKind = GiftDiscountKind.free
    gift_discount_magnitude: Optional[Decimal] = None

    @field_validator("buy_min_quantity", "gift_quantity_per_set", "gift_max_sets")
    @classmethod
    def at_least_one(cls, v: Optional[int]) -> Optional[int]:
        return _check_positive(v)

    @model_validator(mode="after")
    def check_gift_discount(self) -> "BuyXGetYDetails":
        _check_magnitude(self.gift_discount_kind, self.gift_discount_magnitude)
        return self


class ProductDiscountDetails(BaseModel):
    apply_scope: ApplyScope = ApplyScope.all
    apply_product_ref: Optional[str] = None
    discount_kind: DiscountKind
    discount_magnitude: Decimal
    min_quantity: Optional[int] = None
    min_line_value: Optional[Decimal] = None

    @field_validator("min_quantity")
    @classmethod
    def quantity_floor(cls, v: Optional[int]) -> Optional[int]:
        return _check_positive(v)

    @field_validator("min_line_value")
    @classmethod
    def value_floor(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _check_non_negative(v)

    @model_validator(mode="after")
    def check_scope_and_magnitude(self) -> "ProductDiscountDetails":
        if self.apply_scope == ApplyScope.product and not self.apply_product_ref:
            raise ValueError("apply_product_ref is required when apply_scope is PRODUCT")
        _check_magnitude(self.discount_kind, self.discount_magnitude)
        return self


class OrderDiscountDetails(BaseModel):
    discount_kind: DiscountKind
    discount_magnitude: Decimal
    max_discount_cap: Optional[Decimal] = None  # percentage only
    min_order_value: Optional[Decimal] = None
    min_order_quantity: Optional[int] = None

    @field_validator("min_order_quantity")
    @classmethod
    def quantity_floor(cls, v: Optional[int]) -> Optional[int]:
        return _check_positive(v)

    @field_validator("max_discount_cap", "min_order_value")
    @classmethod
    def amounts_non_negative(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _check_non_negative(v)

    @model_validator(mode="after")
    def check_magnitude(self) -> "OrderDiscountDetails":
        _check_magnitude(self.discount_kind, self.discount_magnitude)
        return self


DETAIL_SCHEMAS = {
    RuleKind.buy_x_get_y: BuyXGetYDetails,
    RuleKind.product_discount: ProductDiscountDetails,
    RuleKind.order_discount: OrderDiscountDetails,
}


# ─────────────── Catalog snapshots (engine input) ───────────────

class CatalogProduct(BaseModel):
    ref: str
    name: str
    unit_label: str
    price: Decimal

    model_config = ConfigDict(from_attributes=True, frozen=True)


class CampaignSnapshot(BaseModel):
    id: int
    name: str
    status: str
    start_at: datetime
    end_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class RuleSnapshot(BaseModel):
    """A rule line as loaded from the catalog. details stay raw until the engine parses them."""
    id: int
    code: str
    description: Optional[str] = None
    kind: str
    status: str
    start_at: datetime
    end_at: datetime
    max_total_usage: Optional[int] = None
    current_usage_count: int = 0
    campaign: CampaignSnapshot
    details: Any

    model_config = ConfigDict(from_attributes=True, frozen=True)


# ─────────────── Cart schemas ───────────────

class CartLineRequest(BaseModel):
    product_ref: str
    quantity: int  # checked by the engine, see NegativeOrZeroQuantity


class CartRequest(BaseModel):
    items: List[CartLineRequest]


# ─────────────── Evaluation result ───────────────

class PromotionApplication(BaseModel):
    rule_code: str
    rule_description: str
    rule_detail_id: int
    summary_text: str
    discount_kind: AppliedDiscountKind
    discount_magnitude: Decimal
    source_line_id: Optional[int] = None  # set on gift lines only


class ResolvedLineItem(BaseModel):
    sequence_id: int
    product_ref: str
    unit_label: str
    product_label: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    eligible_for_gift_promotion: Optional[bool] = None
    applied_promotion: Optional[PromotionApplication] = None


class Summary(BaseModel):
    subtotal: Decimal
    order_discount: Decimal
    line_discount_total: Decimal
    grand_total: Decimal


class EvaluationResult(BaseModel):
    lines: List[ResolvedLineItem]
    summary: Summary
    applied_order_promotions: List[PromotionApplication]


# ─────────────── Catalog CRUD ───────────────

def _to_naive_utc(v: Optional[datetime]) -> Optional[datetime]:
    # Stored as naive UTC
    if v is not None and v.tzinfo is not None:
        return v.astimezone(timezone.utc).replace(tzinfo=None)
    return v


class ProductCreate(BaseModel):
    ref: str
    name: str
    unit_label: str = "unit"
    price: Decimal

    @field_validator("price")
    @classmethod
    def price_non_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Price must not be negative")
        return v


class ProductResponse(BaseModel):
    id: int
    ref: str
    name: str
    unit_label: str
    price: Decimal

    model_config = {"from_attributes": True}


class CampaignCreate(BaseModel):
    name: str
    description: Optional[str] = None
    status: PromotionStatus = PromotionStatus.active
    start_at: datetime
    end_at: datetime

    @field_validator("start_at", "end_at")
    @classmethod
    def naive_utc(cls, v: datetime) -> datetime:
        return _to_naive_utc(v)

    @model_validator(mode="after")
    def check_window(self) -> "CampaignCreate":
        if self.end_at < self.start_at:
            raise ValueError("end_at must not precede start_at")
        return self


class CampaignUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[PromotionStatus] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None

    @field_validator("start_at", "end_at")
    @classmethod
    def naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(v)


class CampaignResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    status: PromotionStatus
    start_at: datetime
    end_at: datetime

    model_config = {"from_attributes": True}


class RuleCreate(BaseModel):
    code: str
    description: Optional[str] = None
    kind: RuleKind
    status: PromotionStatus = PromotionStatus.active
    start_at: datetime
    end_at: datetime
    max_total_usage: Optional[int] = None
    details: Any  # Validated per kind in validator below

    @field_validator("start_at", "end_at")
    @classmethod
    def naive_utc(cls, v: datetime) -> datetime:
        return _to_naive_utc(v)

    @field_validator("max_total_usage")
    @classmethod
    def usage_positive(cls, v: Optional[int]) -> Optional[int]:
        return _check_positive(v)

    @model_validator(mode="after")
    def validate_details_by_kind(self) -> "RuleCreate":
        if self.end_at < self.start_at:
            raise ValueError("end_at must not precede start_at")
        self.details = DETAIL_SCHEMAS[self.kind].model_validate(self.details).model_dump(mode="json")
        return self


class RuleUpdate(BaseModel):
    description: Optional[str] = None
    status: Optional[PromotionStatus] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    max_total_usage: Optional[int] = None
    details: Optional[Any] = None  # Validated against the stored kind by the route

    @field_validator("start_at", "end_at")
    @classmethod
    def naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(v)

    @field_validator("max_total_usage")
    @classmethod
    def usage_positive(cls, v: Optional[int]) -> Optional[int]:
        return _check_positive(v)


class RuleResponse(BaseModel):
    id: int
    campaign_id: int
    code: str
    description: Optional[str] = None
    kind: RuleKind
    status: PromotionStatus
    start_at: datetime
    end_at: datetime
    max_total_usage: Optional[int] = None
    current_usage_count: int
    details: Any

    model_config = {"from_attributes": True}
