"""
Domain models for storefront data.

Remote records (orders, customers, products, discount codes) are immutable
snapshots built with `from_api()` at the fetch boundary. Aggregate records
(daily / product / customer / coupon stats) are what the sync orchestrator
upserts into the durable store.

Monetary amounts arrive as decimal strings and are kept as `Decimal`.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

from storesync.exceptions import StorefrontDataError
from storesync.observability import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")
CENTS = Decimal("0.01")


# ═══════════════════════════════════════════════════════════════════════════════
# PARSING HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def dig(data: Optional[Dict[str, Any]], *path: str) -> Any:
    """Walk nested dicts, returning None as soon as a level is missing."""
    current: Any = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def parse_money(value: Any, field_name: str = "amount") -> Decimal:
    """
    Parse a monetary amount.

    Missing amounts (None / empty string) count as zero. Anything else that
    is not a finite decimal raises StorefrontDataError.
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise StorefrontDataError(
            f"Invalid monetary amount for {field_name}",
            expected="decimal string",
            got=repr(value),
        )
    if not amount.is_finite():
        raise StorefrontDataError(
            f"Invalid monetary amount for {field_name}",
            expected="finite decimal",
            got=repr(value),
        )
    return amount


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require(data: Dict[str, Any], key: str, record: str) -> Any:
    value = data.get(key) if isinstance(data, dict) else None
    if value is None or value == "":
        raise StorefrontDataError(f"{record} is missing required field '{key}'", expected=key, got=None)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def utc_today(now: Optional[datetime] = None) -> date:
    """Current calendar day in UTC, the day boundary every PeriodWindow uses."""
    moment = now or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).date()


# ═══════════════════════════════════════════════════════════════════════════════
# PERIOD WINDOW
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PeriodWindow:
    """
    Inclusive date window.

    Queries cover `start 00:00:00` through `end 23:59:59.999` (UTC).
    A window with start > end is empty; start == end is a single day.
    """
    start: date
    end: date

    @classmethod
    def parse(cls, start: str, end: str) -> "PeriodWindow":
        """Create from YYYY-MM-DD strings."""
        return cls(date.fromisoformat(start), date.fromisoformat(end))

    @classmethod
    def last_days(cls, days: int, today: date) -> "PeriodWindow":
        """Window of `days` days back from today, today included."""
        return cls(today - timedelta(days=days), today)

    @property
    def is_empty(self) -> bool:
        return self.start > self.end

    @property
    def num_days(self) -> int:
        if self.is_empty:
            return 0
        return (self.end - self.start).days + 1

    def days(self) -> List[date]:
        """Every calendar day in the window, in order."""
        return [self.start + timedelta(days=offset) for offset in range(self.num_days)]

    def query_bounds(self) -> Tuple[datetime, datetime]:
        """First and last instant covered by the window."""
        start = datetime.combine(self.start, time.min, tzinfo=timezone.utc)
        end = datetime.combine(self.end, time(23, 59, 59, 999000), tzinfo=timezone.utc)
        return start, end

    def contains(self, moment: Optional[datetime]) -> bool:
        if moment is None or self.is_empty:
            return False
        start, end = self.query_bounds()
        return start <= moment <= end

    def to_search_query(self) -> str:
        """Creation-date filter in the remote search syntax."""
        start, end = self.query_bounds()
        return (
            f"created_at:>={start.isoformat(timespec='milliseconds').replace('+00:00', 'Z')} "
            f"AND created_at:<={end.isoformat(timespec='milliseconds').replace('+00:00', 'Z')}"
        )

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


# ═══════════════════════════════════════════════════════════════════════════════
# REMOTE RECORDS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LineItem:
    """Product line within an order."""
    title: str
    quantity: int
    revenue: Decimal
    product_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "LineItem":
        """Create LineItem from a GraphQL `lineItems` node."""
        try:
            quantity = int(data.get("quantity") or 0)
        except (TypeError, ValueError):
            raise StorefrontDataError("Invalid line item quantity", expected="int", got=repr(data.get("quantity")))
        return cls(
            title=data.get("title") or "Unknown",
            quantity=quantity,
            revenue=parse_money(dig(data, "originalTotalSet", "shopMoney", "amount"), "originalTotalSet"),
            product_id=dig(data, "product", "id"),
        )


def _parse_line_items(order_id: str, nodes: List[Any]) -> Tuple[LineItem, ...]:
    """Parse line items, dropping malformed ones without losing the order."""
    items = []
    for node in nodes:
        if not isinstance(node, dict):
            logger.warning("Dropping line item that is not an object", extra={"order_id": order_id})
            continue
        try:
            items.append(LineItem.from_api(node))
        except StorefrontDataError as e:
            logger.warning(f"Dropping malformed line item: {e}", extra={"order_id": order_id})
    return tuple(items)


@dataclass(frozen=True)
class Order:
    """Order from the storefront."""
    id: str
    created_at: datetime
    total: Decimal
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    tax: Decimal = ZERO
    name: Optional[str] = None
    currency: Optional[str] = None
    financial_status: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_orders_count: int = 0
    discount_codes: Tuple[str, ...] = ()
    line_items: Tuple[LineItem, ...] = ()

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Order":
        """
        Create Order from a GraphQL `orders` node.

        Raises:
            StorefrontDataError: missing id / createdAt or malformed order amount
        """
        order_id = _require(data, "id", "Order")
        created_at = parse_datetime(_require(data, "createdAt", "Order"))
        if created_at is None:
            raise StorefrontDataError("Order has unparseable createdAt", expected="ISO-8601", got=data.get("createdAt"))

        customer = data.get("customer") or {}
        line_nodes = dig(data, "lineItems", "nodes") or []

        return cls(
            id=order_id,
            created_at=created_at,
            total=parse_money(dig(data, "totalPriceSet", "shopMoney", "amount"), "totalPriceSet"),
            subtotal=parse_money(dig(data, "subtotalPriceSet", "shopMoney", "amount"), "subtotalPriceSet"),
            discount=parse_money(dig(data, "totalDiscountsSet", "shopMoney", "amount"), "totalDiscountsSet"),
            tax=parse_money(dig(data, "totalTaxSet", "shopMoney", "amount"), "totalTaxSet"),
            name=data.get("name"),
            currency=dig(data, "totalPriceSet", "shopMoney", "currencyCode"),
            financial_status=data.get("displayFinancialStatus"),
            customer_id=customer.get("id"),
            customer_email=customer.get("email"),
            customer_orders_count=int(customer.get("ordersCount") or 0),
            discount_codes=tuple(code for code in (data.get("discountCodes") or []) if code),
            line_items=_parse_line_items(order_id, line_nodes),
        )

    @property
    def gross(self) -> Decimal:
        """Price before discounts."""
        return self.subtotal + self.discount

    @property
    def created_date(self) -> date:
        return self.created_at.date()


@dataclass(frozen=True)
class Customer:
    """Customer with lifetime totals."""
    id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    orders_count: int = 0
    total_spent: Decimal = ZERO
    created_at: Optional[datetime] = None
    last_order_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Customer":
        """Create Customer from a GraphQL `customers` node."""
        return cls(
            id=_require(data, "id", "Customer"),
            email=data.get("email") or "",
            first_name=data.get("firstName") or "",
            last_name=data.get("lastName") or "",
            orders_count=int(data.get("ordersCount") or 0),
            total_spent=parse_money(dig(data, "totalSpentV2", "amount"), "totalSpentV2"),
            created_at=parse_datetime(data.get("createdAt")),
            last_order_at=parse_datetime(dig(data, "lastOrder", "createdAt")),
        )

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.last_name]
        return " ".join(p for p in parts if p) or "Unknown"

    @property
    def is_returning(self) -> bool:
        return self.orders_count > 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "name": self.full_name,
            "email": self.email,
            "orders_count": self.orders_count,
            "total_spent": str(self.total_spent),
            "last_order_at": _iso(self.last_order_at),
        }


@dataclass(frozen=True)
class Product:
    """Product from the REST catalog."""
    id: str
    title: str
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    status: Optional[str] = None
    total_inventory: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Product":
        """Create Product from a REST `products` entry."""
        variants = data.get("variants") or []
        inventory = sum(int(v.get("inventory_quantity") or 0) for v in variants)
        return cls(
            id=str(_require(data, "id", "Product")),
            title=data.get("title") or "Unknown",
            vendor=data.get("vendor"),
            product_type=data.get("product_type") or None,
            status=data.get("status"),
            total_inventory=inventory,
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass(frozen=True)
class DiscountCode:
    """A single redeemable code of a code discount."""
    id: str
    code: str
    title: str = ""
    value: Optional[Decimal] = None
    value_type: str = "unknown"
    usage_count: int = 0
    usage_limit: Optional[int] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    status: str = "unknown"
    is_active: bool = False

    @classmethod
    def list_from_api(cls, node: Dict[str, Any]) -> List["DiscountCode"]:
        """
        Expand a `codeDiscountNodes` node into one DiscountCode per code.

        Percentages arrive as fractions (0.15) and are stored as 15.
        """
        discount = node.get("codeDiscount")
        if not discount:
            return []
        node_id = _require(node, "id", "DiscountCode")

        value = None
        value_type = "unknown"
        percentage = dig(discount, "customerGets", "value", "percentage")
        amount = dig(discount, "customerGets", "value", "amount", "amount")
        if percentage:
            value = parse_money(percentage, "percentage") * 100
            value_type = "percentage"
        elif amount:
            value = parse_money(amount, "amount")
            value_type = "fixed_amount"

        raw_status = discount.get("status")
        codes = []
        for code_node in dig(discount, "codes", "nodes") or []:
            code = code_node.get("code")
            if not code:
                continue
            codes.append(cls(
                id=node_id,
                code=code,
                title=discount.get("title") or "",
                value=value,
                value_type=value_type,
                usage_count=int(code_node.get("usageCount") or 0),
                usage_limit=discount.get("usageLimit"),
                starts_at=parse_datetime(discount.get("startsAt")),
                ends_at=parse_datetime(discount.get("endsAt")),
                status=raw_status.lower() if raw_status else "unknown",
                is_active=raw_status == "ACTIVE",
            ))
        return codes

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "value": str(self.value) if self.value is not None else None,
            "value_type": self.value_type,
            "usage_count": self.usage_count,
            "usage_limit": self.usage_limit,
            "status": self.status,
            "is_active": self.is_active,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# AGGREGATION RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DailyBucket:
    """Sales for one calendar day."""
    date: date
    sales: Decimal = ZERO
    orders: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date.isoformat(), "sales": str(self.sales), "orders": self.orders}


@dataclass(frozen=True)
class ProductSales:
    """Line-item totals for one product."""
    product_id: str
    title: str
    quantity: int
    revenue: Decimal
    order_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "title": self.title,
            "quantity": self.quantity,
            "revenue": str(self.revenue),
            "order_count": self.order_count,
        }


@dataclass(frozen=True)
class CouponUsage:
    """Observed redemptions of one code inside a window."""
    times_used: int = 0
    discount_given: Decimal = ZERO
    revenue_generated: Decimal = ZERO


@dataclass(frozen=True)
class DailyStat:
    """Durable per-day sales aggregate."""
    date: date
    total_sales: Decimal
    order_count: int
    avg_order_value: Decimal

    @classmethod
    def from_bucket(cls, bucket: DailyBucket) -> "DailyStat":
        avg = (bucket.sales / bucket.orders).quantize(CENTS) if bucket.orders else ZERO
        return cls(
            date=bucket.date,
            total_sales=bucket.sales,
            order_count=bucket.orders,
            avg_order_value=avg,
        )


@dataclass(frozen=True)
class ProductStat:
    """Durable per-product sales aggregate."""
    product_id: str
    title: str
    total_quantity_sold: int
    total_revenue: Decimal
    order_count: int
    current_stock: int = 0


@dataclass(frozen=True)
class CustomerStat:
    """Durable per-customer lifetime aggregate."""
    customer_id: str
    email: str
    first_name: str
    last_name: str
    total_orders: int
    total_spent: Decimal
    last_order_at: Optional[datetime] = None

    @classmethod
    def from_customer(cls, customer: Customer) -> "CustomerStat":
        return cls(
            customer_id=customer.id,
            email=customer.email,
            first_name=customer.first_name,
            last_name=customer.last_name,
            total_orders=customer.orders_count,
            total_spent=customer.total_spent,
            last_order_at=customer.last_order_at,
        )


@dataclass(frozen=True)
class CouponStat:
    """Durable per-code usage aggregate with the bleeding-money flag."""
    coupon_code: str
    coupon_type: str
    discount_value: Decimal
    times_used: int
    total_discount_given: Decimal
    total_revenue_generated: Decimal
    is_active: bool
    status: str
    is_bleeding_money: bool
    bleeding_changed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "coupon_code": self.coupon_code,
            "coupon_type": self.coupon_type,
            "discount_value": str(self.discount_value),
            "times_used": self.times_used,
            "total_discount_given": str(self.total_discount_given),
            "total_revenue_generated": str(self.total_revenue_generated),
            "is_active": self.is_active,
            "status": self.status,
            "is_bleeding_money": self.is_bleeding_money,
            "bleeding_changed_at": _iso(self.bleeding_changed_at),
        }


class SyncStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class SyncLog:
    """Append-only record of one sync run."""
    sync_type: str
    status: SyncStatus
    started_at: datetime
    records_processed: int = 0
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sync_type": self.sync_type,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "error_message": self.error_message,
            "details": self.details,
            "duration_ms": self.duration_ms,
            "started_at": _iso(self.started_at),
        }
