"""
promotion_engine.py
===================
Promotion resolution and discount calculation for a priced cart.

Evaluation order:
-----------------
1. Rule filter:
   - A rule counts only while its campaign and its own line are ACTIVE,
     "now" sits inside both time windows, and its usage quota is not used up.

2. Per cart line, in input order:
   - product discount: the single best PRODUCT_DISCOUNT rule for the line.
   - gifts: every matching BUY_X_GET_Y rule adds its own gift line right
     after the purchase line. Gift rules are additive.

3. Order discount:
   - The single best ORDER_DISCOUNT rule, judged against the total left
     after line discounts (never the raw subtotal).

4. Summary:
   - subtotal, line discount total, order discount, grand total.

Percentages are rounded half-up to 2 places where they are computed.
"Best" means the strictly greatest amount; on a tie the rule seen first in
catalog order wins. A rule that would discount nothing is never chosen.

Nothing here writes. Usage counters are incremented by checkout, so the
result is a preview that checkout must re-validate.
"""

import itertools
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from exceptions import InvalidRuleData, NegativeOrZeroQuantity, ProductNotFound
from schemas import (
    DETAIL_SCHEMAS, AppliedDiscountKind, ApplyScope, CartLineRequest, CatalogProduct,
    DiscountKind, EvaluationResult, GiftDiscountKind, PromotionApplication, PromotionStatus,
    ResolvedLineItem, RuleKind, RuleSnapshot, Summary,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0.00")


def round_money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, magnitude: Decimal) -> Decimal:
    return round_money(amount * magnitude / HUNDRED)


def _fmt_money(value: Decimal) -> str:
    return f"{round_money(value):,.2f}"


def _fmt_percent(value: Decimal) -> str:
    return f"{Decimal(value).normalize():f}%"


# ─────────────────────────── Rule filter ───────────────────────────

def _as_utc(moment: datetime) -> datetime:
    # Naive timestamps are stored as UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _within(now: datetime, start: datetime, end: datetime) -> bool:
    return _as_utc(start) <= now <= _as_utc(end)


def is_rule_eligible(rule: RuleSnapshot, now: datetime) -> bool:
    now = _as_utc(now)
    campaign = rule.campaign
    if campaign.status != PromotionStatus.active or rule.status != PromotionStatus.active:
        return False
    if not _within(now, campaign.start_at, campaign.end_at):
        return False
    if not _within(now, rule.start_at, rule.end_at):
        return False
    if rule.max_total_usage is not None and rule.current_usage_count >= rule.max_total_usage:
        return False
    return True


def active_rules(catalog, kind: RuleKind, now: datetime) -> List[RuleSnapshot]:
    """Every rule of `kind` that may apply at `now`, in catalog order."""
    return [
        rule for rule in catalog.list_rules(kind)
        if rule.kind == kind and is_rule_eligible(rule, now)
    ]


# ─────────────────────────── Rule parsing ───────────────────────────

def parse_details(rule: RuleSnapshot):
    """Validate a rule's stored details against its kind, or raise InvalidRuleData."""
    try:
        schema = DETAIL_SCHEMAS[RuleKind(rule.kind)]
    except ValueError:
        raise InvalidRuleData(rule.id, f"unknown rule kind {rule.kind!r}")
    try:
        return schema.model_validate(rule.details)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(part) for part in first["loc"]) or "details"
        raise InvalidRuleData(rule.id, f"{where}: {first['msg']}") from e


def load_candidates(rules: Iterable[RuleSnapshot]) -> List[Tuple[RuleSnapshot, object]]:
    """Pair each rule with its parsed details, skipping malformed rules."""
    candidates = []
    for rule in rules:
        try:
            candidates.append((rule, parse_details(rule)))
        except InvalidRuleData as e:
            logger.warning(f"Skipping promotion rule {rule.code}: {e.message}")
    return candidates


# ─────────────────────────── Product discount ───────────────────────────

def product_discount_amount(details, line_total: Decimal) -> Decimal:
    if details.discount_kind == DiscountKind.percentage:
        amount = percent_of(line_total, details.discount_magnitude)
    else:
        amount = details.discount_magnitude
    return max(ZERO, min(round_money(amount), line_total))


def _matches_line(details, product_ref: str, quantity: int, line_total: Decimal) -> bool:
    if details.apply_scope == ApplyScope.product and details.apply_product_ref != product_ref:
        return False
    if details.min_quantity is not None and quantity < details.min_quantity:
        return False
    if details.min_line_value is not None and line_total < details.min_line_value:
        return False
    return True


def select_product_discount(line: CartLineRequest, unit_price: Decimal, candidates):
    """
    Returns (rule, details, amount) for the best PRODUCT_DISCOUNT rule, or None.
    """
    line_total = round_money(unit_price * line.quantity)
    best = None
    best_amount = ZERO
    for rule, details in candidates:
        if not _matches_line(details, line.product_ref, line.quantity, line_total):
            continue
        amount = product_discount_amount(details, line_total)
        if amount > best_amount:
            best, best_amount = (rule, details, amount), amount
    return best


def _product_discount_summary(details, product: CatalogProduct) -> str:
    if details.discount_kind == DiscountKind.percentage:
        text = f"{_fmt_percent(details.discount_magnitude)} off"
    else:
        text = f"{_fmt_money(details.discount_magnitude)} off"

    if details.apply_scope == ApplyScope.all:
        text += " all products"
    else:
        text += f" {product.name}"

    if details.min_quantity is not None:
        text += f" (min {details.min_quantity} items)"
    elif details.min_line_value is not None:
        text += f" (min value {_fmt_money(details.min_line_value)})"
    return text


# ─────────────────────────── Buy X get Y ───────────────────────────

def gift_quantity(details, quantity: int) -> int:
    """Gift units earned by buying `quantity` units of the trigger product."""
    eligible_sets = quantity // details.buy_min_quantity
    if details.gift_max_sets is not None:
        eligible_sets = min(eligible_sets, details.gift_max_sets)
    return eligible_sets * (details.gift_quantity_per_set or 1)


def gift_unit_discount(details, gift_unit_price: Decimal) -> Decimal:
    """
    Discount on one gift unit; never more than the unit's price.

    A fixed gift discount larger than the gift price is capped at that price,
    so the reported magnitude (per-unit discount x gift quantity) is what the
    customer actually saves, not the configured amount x gift quantity.
    """
    if details.gift_discount_kind == GiftDiscountKind.free:
        return gift_unit_price
    if details.gift_discount_kind == GiftDiscountKind.percentage:
        return min(percent_of(gift_unit_price, details.gift_discount_magnitude), gift_unit_price)
    return min(round_money(details.gift_discount_magnitude), gift_unit_price)


def _gift_product(rule: RuleSnapshot, details, products: Dict[str, CatalogProduct]) -> CatalogProduct:
    product = products.get(details.gift_product_ref)
    if product is None:
        raise InvalidRuleData(rule.id, f"gift product {details.gift_product_ref!r} not found")
    return product


def _gift_summary(details, buy_product: CatalogProduct, gift_product: CatalogProduct, quantity: int) -> str:
    per_set = details.gift_quantity_per_set or 1
    text = f"Buy {details.buy_min_quantity} {buy_product.name} get "
    if per_set > 1:
        text += f"{per_set} "
    text += gift_product.name
    if quantity != per_set:
        text += f" ({quantity} items)"

    if details.gift_discount_kind == GiftDiscountKind.free:
        text += " (free)"
    elif details.gift_discount_kind == GiftDiscountKind.percentage:
        text += f" ({_fmt_percent(details.gift_discount_magnitude)} off)"
    else:
        text += f" ({_fmt_money(details.gift_discount_magnitude)} off)"
    return text


def synthesize_gifts(
    line: CartLineRequest,
    source_line_id: int,
    candidates,
    products: Dict[str, CatalogProduct],
    sequence,
) -> List[ResolvedLineItem]:
    """
    One gift line per BUY_X_GET_Y rule triggered by `line`.

    `products` must already hold the trigger product and every resolvable
    gift product. A rule whose gift product is missing is skipped.
    """
    buy_product = products[line.product_ref]
    gifts = []

    for rule, details in candidates:
        if details.buy_product_ref != line.product_ref:
            continue
        if line.quantity < details.buy_min_quantity:
            continue

        quantity = gift_quantity(details, line.quantity)
        if quantity <= 0:
            continue

        try:
            gift_product = _gift_product(rule, details, products)
        except InvalidRuleData as e:
            logger.warning(f"Skipping promotion rule {rule.code}: {e.message}")
            continue

        unit_price = round_money(gift_product.price)
        per_unit = gift_unit_discount(details, unit_price)
        net_unit_price = max(ZERO, unit_price - per_unit)

        if details.gift_discount_kind == GiftDiscountKind.percentage:
            kind = AppliedDiscountKind.percentage
            magnitude = details.gift_discount_magnitude
        else:
            kind = AppliedDiscountKind.fixed
            magnitude = per_unit * quantity

        per_set = details.gift_quantity_per_set or 1
        gifts.append(ResolvedLineItem(
            sequence_id=next(sequence),
            product_ref=gift_product.ref,
            unit_label=gift_product.unit_label,
            product_label=gift_product.name,
            quantity=quantity,
            unit_price=unit_price,
            line_total=round_money(net_unit_price * quantity),
            eligible_for_gift_promotion=None,
            applied_promotion=PromotionApplication(
                rule_code=rule.code,
                rule_description=rule.description or f"Buy {details.buy_min_quantity} get {per_set}",
                rule_detail_id=rule.id,
                summary_text=_gift_summary(details, buy_product, gift_product, quantity),
                discount_kind=kind,
                discount_magnitude=round_money(magnitude),
                source_line_id=source_line_id,
            ),
        ))
        logger.debug(f"Rule {rule.code} adds {quantity} x {gift_product.ref} to line {source_line_id}")

    return gifts


# ─────────────────────────── Order discount ───────────────────────────

def order_discount_amount(details, total: Decimal) -> Decimal:
    if details.discount_kind == DiscountKind.percentage:
        amount = percent_of(total, details.discount_magnitude)
        if details.max_discount_cap is not None and amount > details.max_discount_cap:
            amount = details.max_discount_cap
    else:
        amount = details.discount_magnitude
    return max(ZERO, min(round_money(amount), total))


def select_order_discount(total: Decimal, total_quantity: int, candidates):
    """
    Returns (rule, details, amount) for the best ORDER_DISCOUNT rule, or None.

    `total` is the cart total after line discounts.
    """
    best = None
    best_amount = ZERO
    for rule, details in candidates:
        if details.min_order_value is not None and total < details.min_order_value:
            continue
        if details.min_order_quantity is not None and total_quantity < details.min_order_quantity:
            continue
        amount = order_discount_amount(details, total)
        if amount > best_amount:
            best, best_amount = (rule, details, amount), amount
    return best


def _order_discount_summary(details) -> str:
    if details.discount_kind == DiscountKind.percentage:
        text = f"{_fmt_percent(details.discount_magnitude)} off order"
        if details.max_discount_cap is not None:
            text += f", up to {_fmt_money(details.max_discount_cap)}"
    else:
        text = f"{_fmt_money(details.discount_magnitude)} off order"

    if details.min_order_value is not None:
        text += f" (min order {_fmt_money(details.min_order_value)})"
    if details.min_order_quantity is not None:
        text += f" (min {details.min_order_quantity} items)"
    return text


# ─────────────────────────── Aggregation ───────────────────────────

def _is_gift(line: ResolvedLineItem) -> bool:
    return line.applied_promotion is not None and line.applied_promotion.source_line_id is not None


def aggregate(lines: List[ResolvedLineItem], order_candidates) -> Tuple[Summary, List[PromotionApplication]]:
    """
    Returns (summary, applied_order_promotions).

    subtotal counts every line, gifts included, at its undiscounted value.
    """
    subtotal = ZERO
    line_discount_total = ZERO
    total_quantity = 0

    for line in lines:
        gross = round_money(line.unit_price * line.quantity)
        subtotal += gross
        if line.applied_promotion is not None:
            line_discount_total += gross - line.line_total
        if not _is_gift(line):
            total_quantity += line.quantity

    total_after_line_discounts = subtotal - line_discount_total

    order_discount = ZERO
    applied = []
    best = select_order_discount(total_after_line_discounts, total_quantity, order_candidates)
    if best is not None:
        rule, details, order_discount = best
        applied.append(PromotionApplication(
            rule_code=rule.code,
            rule_description=rule.description or "Order discount",
            rule_detail_id=rule.id,
            summary_text=_order_discount_summary(details),
            discount_kind=(
                AppliedDiscountKind.percentage
                if details.discount_kind == DiscountKind.percentage
                else AppliedDiscountKind.fixed
            ),
            discount_magnitude=round_money(details.discount_magnitude),
        ))
        logger.debug(f"Order rule {rule.code} takes {order_discount} off {total_after_line_discounts}")

    summary = Summary(
        subtotal=round_money(subtotal),
        order_discount=round_money(order_discount),
        line_discount_total=round_money(line_discount_total),
        grand_total=round_money(total_after_line_discounts - order_discount),
    )
    return summary, applied


# ─────────────────────────── Evaluation ───────────────────────────

def _resolve_purchase_line(
    line: CartLineRequest,
    products: Dict[str, CatalogProduct],
    product_candidates,
    gift_candidates,
    sequence,
) -> List[ResolvedLineItem]:
    product = products[line.product_ref]
    unit_price = round_money(product.price)
    line_total = round_money(unit_price * line.quantity)
    sequence_id = next(sequence)

    applied = None
    best = select_product_discount(line, unit_price, product_candidates)
    if best is not None:
        rule, details, amount = best
        line_total -= amount
        applied = PromotionApplication(
            rule_code=rule.code,
            rule_description=rule.description or "Product discount",
            rule_detail_id=rule.id,
            summary_text=_product_discount_summary(details, product),
            discount_kind=(
                AppliedDiscountKind.percentage
                if details.discount_kind == DiscountKind.percentage
                else AppliedDiscountKind.fixed
            ),
            discount_magnitude=round_money(details.discount_magnitude),
        )
        logger.debug(f"Rule {rule.code} takes {amount} off line {sequence_id} ({line.product_ref})")

    gifts = synthesize_gifts(line, sequence_id, gift_candidates, products, sequence)

    purchase = ResolvedLineItem(
        sequence_id=sequence_id,
        product_ref=product.ref,
        unit_label=product.unit_label,
        product_label=product.name,
        quantity=line.quantity,
        unit_price=unit_price,
        line_total=line_total,
        eligible_for_gift_promotion=bool(gifts),
        applied_promotion=applied,
    )
    return [purchase] + gifts


def validate_cart(items: List[CartLineRequest]) -> None:
    for item in items:
        if item.quantity <= 0:
            raise NegativeOrZeroQuantity(item.product_ref, item.quantity)


def evaluate(items: List[CartLineRequest], catalog, now: Optional[datetime] = None) -> EvaluationResult:
    """
    Price `items` against every promotion active at `now` (default: current UTC time).

    Raises:
        NegativeOrZeroQuantity: a line asks for fewer than one unit.
        ProductNotFound: a requested product does not exist.
        CatalogUnavailable: the catalog could not be read.
    """
    validate_cart(items)
    now = _as_utc(now or datetime.now(timezone.utc))
    logger.info(f"Evaluating promotions for {len(items)} cart lines at {now.isoformat()}")

    refs = [item.product_ref for item in items]
    products = dict(catalog.resolve_products(refs))
    for ref in refs:
        if ref not in products:
            raise ProductNotFound(ref)

    product_candidates = load_candidates(active_rules(catalog, RuleKind.product_discount, now))
    gift_candidates = load_candidates(active_rules(catalog, RuleKind.buy_x_get_y, now))
    order_candidates = load_candidates(active_rules(catalog, RuleKind.order_discount, now))

    gift_refs = {details.gift_product_ref for _, details in gift_candidates} - set(products)
    products.update(catalog.resolve_products(gift_refs))

    sequence = itertools.count(1)
    lines = []
    for item in items:
        lines.extend(_resolve_purchase_line(item, products, product_candidates, gift_candidates, sequence))

    summary, applied_order_promotions = aggregate(lines, order_candidates)
    logger.info(
        f"Evaluated {len(lines)} lines: subtotal={summary.subtotal} "
        f"line_discounts={summary.line_discount_total} order_discount={summary.order_discount} "
        f"grand_total={summary.grand_total}"
    )
    return EvaluationResult(
        lines=lines,
        summary=summary,
        applied_order_promotions=applied_order_promotions,
    )
