"""
Pure aggregation over fetched storefront records.

Nothing here performs I/O; every function takes typed records and returns
new values, so the same inputs always produce the same outputs. Sorting
uses Python's stable `sorted`, so ties keep their first-seen order.
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Sequence

from storesync.models import (
    CENTS,
    ZERO,
    CouponStat,
    CouponUsage,
    Customer,
    DailyBucket,
    DailyStat,
    DiscountCode,
    Order,
    PeriodWindow,
    ProductSales,
)

BLEEDING_THRESHOLD = Decimal("0.30")


def _percent(part: int, whole: int) -> int:
    """Whole-number percentage, half rounded up; 0 when whole is 0."""
    if whole == 0:
        return 0
    return int((Decimal(part) * 100 / Decimal(whole)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _money(value: Decimal) -> str:
    return str(value.quantize(CENTS, rounding=ROUND_HALF_UP))


# ═══════════════════════════════════════════════════════════════════════════════
# RESULT TYPES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class OrderTotals:
    """Money totals over a set of orders."""
    gross_sales: Decimal = ZERO
    net_sales: Decimal = ZERO
    discounts: Decimal = ZERO
    tax: Decimal = ZERO
    order_count: int = 0
    avg_order_value: Decimal = ZERO

    def to_dict(self) -> dict:
        return {
            "gross_sales": _money(self.gross_sales),
            "net_sales": _money(self.net_sales),
            "discounts": _money(self.discounts),
            "tax": _money(self.tax),
            "order_count": self.order_count,
            "avg_order_value": _money(self.avg_order_value),
        }


@dataclass(frozen=True)
class TopProducts:
    """Leaderboards over product line-item totals."""
    by_revenue: List[ProductSales] = field(default_factory=list)
    by_quantity: List[ProductSales] = field(default_factory=list)
    total: int = 0

    def to_dict(self) -> dict:
        return {
            "by_revenue": [p.to_dict() for p in self.by_revenue],
            "by_quantity": [p.to_dict() for p in self.by_quantity],
            "total": self.total,
        }


@dataclass(frozen=True)
class ReturningCustomers:
    unique: int = 0
    returning: int = 0
    rate: int = 0


@dataclass(frozen=True)
class CustomerSummary:
    """Headline numbers over a customer list."""
    total_customers: int = 0
    total_spent: Decimal = ZERO
    avg_lifetime_value: Decimal = ZERO
    new_customers: int = 0
    returning_customers: int = 0
    returning_rate: int = 0

    def to_dict(self) -> dict:
        return {
            "total_customers": self.total_customers,
            "total_spent": _money(self.total_spent),
            "avg_lifetime_value": _money(self.avg_lifetime_value),
            "new_customers": self.new_customers,
            "returning_customers": self.returning_customers,
            "returning_rate": self.returning_rate,
        }


@dataclass(frozen=True)
class PeriodStats:
    """Dashboard stats for one period window."""
    window: PeriodWindow
    total_sales: Decimal
    total_sales_gross: Decimal
    total_discounts: Decimal
    order_count: int
    avg_order_value: Decimal
    unique_customers: int
    returning_customers: int
    returning_rate: int
    today_sales: Decimal
    today_orders: int

    def to_dict(self) -> dict:
        return {
            "period": self.window.to_dict(),
            "total_sales": _money(self.total_sales),
            "total_sales_gross": _money(self.total_sales_gross),
            "total_discounts": _money(self.total_discounts),
            "order_count": self.order_count,
            "avg_order_value": _money(self.avg_order_value),
            "unique_customers": self.unique_customers,
            "returning_customers": self.returning_customers,
            "returning_rate": self.returning_rate,
            "today_sales": _money(self.today_sales),
            "today_orders": self.today_orders,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# ORDERS
# ═══════════════════════════════════════════════════════════════════════════════

def order_totals(orders: Sequence[Order]) -> OrderTotals:
    """Gross (subtotal + discount), net (total), discount and tax sums."""
    gross = net = discounts = tax = ZERO
    for order in orders:
        gross += order.gross
        net += order.total
        discounts += order.discount
        tax += order.tax

    count = len(orders)
    return OrderTotals(
        gross_sales=gross,
        net_sales=net,
        discounts=discounts,
        tax=tax,
        order_count=count,
        avg_order_value=(net / count) if count else ZERO,
    )


def bucket_daily_sales(orders: Iterable[Order], window: PeriodWindow) -> List[DailyBucket]:
    """
    Net sales and order count per day.

    Every day of the window is present (zero-seeded), so the series has
    exactly `window.num_days` entries. Orders outside the window are ignored.
    """
    sales: Dict[date, Decimal] = {day: ZERO for day in window.days()}
    counts: Dict[date, int] = {day: 0 for day in sales}

    for order in orders:
        day = order.created_date
        if day in sales:
            sales[day] += order.total
            counts[day] += 1

    return [DailyBucket(date=day, sales=sales[day], orders=counts[day]) for day in sales]


def daily_stats(buckets: Iterable[DailyBucket]) -> List[DailyStat]:
    return [DailyStat.from_bucket(bucket) for bucket in buckets]


# ═══════════════════════════════════════════════════════════════════════════════
# PRODUCTS
# ═══════════════════════════════════════════════════════════════════════════════

def product_sales(orders: Iterable[Order]) -> List[ProductSales]:
    """
    Group line items by product id.

    Line items without a product id (deleted products, custom items) are
    dropped. The title is the latest one seen. `order_count` counts each
    order once even when it has several lines for the same product.
    Result keeps first-seen product order.
    """
    titles: Dict[str, str] = {}
    quantity: Dict[str, int] = {}
    revenue: Dict[str, Decimal] = {}
    order_ids: Dict[str, set] = {}

    for order in orders:
        for item in order.line_items:
            if not item.product_id:
                continue
            pid = item.product_id
            if pid not in titles:
                quantity[pid] = 0
                revenue[pid] = ZERO
                order_ids[pid] = set()
            titles[pid] = item.title
            quantity[pid] += item.quantity
            revenue[pid] += item.revenue
            order_ids[pid].add(order.id)

    return [
        ProductSales(
            product_id=pid,
            title=titles[pid],
            quantity=quantity[pid],
            revenue=revenue[pid],
            order_count=len(order_ids[pid]),
        )
        for pid in titles
    ]


def top_products(orders: Iterable[Order], limit: int = 10) -> TopProducts:
    """Top-N products by revenue and by quantity (stable descending sort)."""
    products = product_sales(orders)
    return TopProducts(
        by_revenue=sorted(products, key=lambda p: p.revenue, reverse=True)[:limit],
        by_quantity=sorted(products, key=lambda p: p.quantity, reverse=True)[:limit],
        total=len(products),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# COUPONS
# ═══════════════════════════════════════════════════════════════════════════════

def coupon_usage(orders: Iterable[Order]) -> Dict[str, CouponUsage]:
    """
    Per-code redemptions observed in orders.

    An order's discount is split evenly across all codes applied to it;
    its full net total counts as revenue for each code.
    """
    usage: Dict[str, CouponUsage] = {}
    for order in orders:
        codes = order.discount_codes
        if not codes:
            continue
        share = order.discount / len(codes)
        for code in codes:
            current = usage.get(code, CouponUsage())
            usage[code] = CouponUsage(
                times_used=current.times_used + 1,
                discount_given=current.discount_given + share,
                revenue_generated=current.revenue_generated + order.total,
            )
    return usage


def is_bleeding(discount: Decimal, revenue: Decimal, threshold: Decimal = BLEEDING_THRESHOLD) -> bool:
    """A coupon bleeds money when discount / revenue strictly exceeds the threshold."""
    if revenue <= 0:
        return False
    return discount / revenue > threshold


def coupon_stats(discounts: Iterable[DiscountCode], usage: Dict[str, CouponUsage]) -> List[CouponStat]:
    """
    One CouponStat per distinct code.

    `times_used` falls back to the remote usage count when the code was not
    seen in the order window.
    """
    stats: List[CouponStat] = []
    seen = set()
    for discount in discounts:
        if discount.code in seen:
            continue
        seen.add(discount.code)

        observed = usage.get(discount.code, CouponUsage())
        stats.append(CouponStat(
            coupon_code=discount.code,
            coupon_type=discount.value_type or "unknown",
            discount_value=discount.value if discount.value is not None else ZERO,
            times_used=observed.times_used or discount.usage_count,
            total_discount_given=observed.discount_given,
            total_revenue_generated=observed.revenue_generated,
            is_active=discount.is_active,
            status=discount.status,
            is_bleeding_money=is_bleeding(observed.discount_given, observed.revenue_generated),
        ))
    return stats


# ═══════════════════════════════════════════════════════════════════════════════
# CUSTOMERS
# ═══════════════════════════════════════════════════════════════════════════════

def returning_customers(orders: Iterable[Order]) -> ReturningCustomers:
    """Customers with more than one order in the data count as returning."""
    per_customer: Dict[str, int] = {}
    for order in orders:
        if order.customer_id:
            per_customer[order.customer_id] = per_customer.get(order.customer_id, 0) + 1

    unique = len(per_customer)
    returning = sum(1 for count in per_customer.values() if count > 1)
    return ReturningCustomers(unique=unique, returning=returning, rate=_percent(returning, unique))


def customer_summary(customers: Sequence[Customer]) -> CustomerSummary:
    """Totals over customers; new vs returning by their lifetime order count."""
    total = len(customers)
    spent = sum((c.total_spent for c in customers), ZERO)
    returning = sum(1 for c in customers if c.is_returning)
    return CustomerSummary(
        total_customers=total,
        total_spent=spent,
        avg_lifetime_value=(spent / total) if total else ZERO,
        new_customers=total - returning,
        returning_customers=returning,
        returning_rate=_percent(returning, total),
    )


def period_stats(orders: Sequence[Order], window: PeriodWindow, today: Optional[date] = None) -> PeriodStats:
    """
    Headline stats for a window.

    `today_*` only counts orders created on `today` (if given).
    """
    totals = order_totals(orders)
    customers = returning_customers(orders)
    todays = [o for o in orders if today is not None and o.created_date == today]

    return PeriodStats(
        window=window,
        total_sales=totals.net_sales,
        total_sales_gross=totals.gross_sales,
        total_discounts=totals.discounts,
        order_count=totals.order_count,
        avg_order_value=totals.avg_order_value,
        unique_customers=customers.unique,
        returning_customers=customers.returning,
        returning_rate=customers.rate,
        today_sales=sum((o.total for o in todays), ZERO),
        today_orders=len(todays),
    )
