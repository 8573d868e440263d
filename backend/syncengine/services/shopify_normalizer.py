"""Normalize Shopify GraphQL order nodes into fact-ready rows.

WHAT:
    `normalize_order(node)` turns one `orders.edges[].node` into a
    NormalizedShopifyOrder (money as Decimal, GIDs stripped, line items
    flattened) while keeping the original node for the raw mirror.

WHY:
    Fact rows are re-derived from the raw mirror on every run that touches a
    date, so normalization must depend on the payload alone.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from syncengine.services.windowing import parse_iso_timestamp

DEFAULT_SALES_CHANNEL = "Online Store"


@dataclass
class NormalizedLineItem:
    shopify_product_id: Optional[str]
    shopify_variant_id: Optional[str]
    product_title: str
    variant_title: Optional[str]
    sku: Optional[str]
    quantity: int
    unit_price: Decimal
    line_total: Decimal


@dataclass
class NormalizedShopifyOrder:
    shopify_order_id: str
    order_name: str
    order_created_at: str
    order_updated_at: Optional[str]
    order_date: date
    order_status: Optional[str]
    financial_status: Optional[str]
    fulfillment_status: Optional[str]
    cancelled_at: Optional[str]
    total_gross: Decimal
    total_net: Decimal
    refund_total: Decimal
    subtotal: Decimal
    total_discounts: Decimal
    total_shipping: Decimal
    total_tax: Decimal
    currency: Optional[str]
    shopify_customer_id: Optional[str]
    is_first_order: bool
    sales_channel: str
    source_name: Optional[str]
    shipping_country: Optional[str]
    shipping_region: Optional[str]
    customer_email: Optional[str] = None
    customer_first_name: Optional[str] = None
    customer_last_name: Optional[str] = None
    customer_orders_count: int = 0
    customer_tags: List[str] = field(default_factory=list)
    line_items: List[NormalizedLineItem] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)


def parse_money(price_set: Optional[Dict[str, Any]]) -> Decimal:
    """Amount of a `*PriceSet` (shopMoney) as Decimal; 0 when absent or unparsable."""
    if not price_set:
        return Decimal("0")
    money = price_set.get("shopMoney") or {}
    amount = money.get("amount")
    if amount in (None, ""):
        return Decimal("0")
    try:
        return Decimal(str(amount))
    except InvalidOperation:
        return Decimal("0")


def extract_gid(gid: Optional[str], resource: str) -> Optional[str]:
    """Numeric id from a Shopify GID (gid://shopify/Product/123 -> 123); other strings pass through."""
    if not gid:
        return None
    match = re.match(rf"gid://shopify/{resource}/(\d+)", gid)
    return match.group(1) if match else gid


def _order_status(node: Dict[str, Any]) -> Optional[str]:
    segments = [s for s in (node.get("displayFinancialStatus"), node.get("displayFulfillmentStatus")) if s]
    return " / ".join(segments) if segments else None


def _sales_channel(node: Dict[str, Any]) -> str:
    definition = (node.get("channelInformation") or {}).get("channelDefinition") or {}
    return (
        definition.get("channelName")
        or definition.get("handle")
        or node.get("sourceName")
        or DEFAULT_SALES_CHANNEL
    )


def _line_items(node: Dict[str, Any]) -> List[NormalizedLineItem]:
    items = []
    for edge in (node.get("lineItems") or {}).get("edges") or []:
        item = edge.get("node") or {}
        product = item.get("product") or {}
        variant = item.get("variant") or {}
        quantity = int(item.get("quantity") or 0)
        unit_price = parse_money(item.get("discountedUnitPriceSet")) or parse_money(item.get("originalUnitPriceSet"))
        items.append(
            NormalizedLineItem(
                shopify_product_id=extract_gid(product.get("id"), "Product"),
                shopify_variant_id=extract_gid(variant.get("id"), "ProductVariant"),
                product_title=product.get("title") or item.get("title") or "Unknown Product",
                variant_title=variant.get("title") or item.get("variantTitle"),
                sku=variant.get("sku") or item.get("sku"),
                quantity=quantity,
                unit_price=unit_price,
                line_total=unit_price * quantity,
            )
        )
    return items


def normalize_order(node: Dict[str, Any]) -> NormalizedShopifyOrder:
    """Normalize one GraphQL order node.

    Gross revenue prefers the current total (after edits) over the original
    total; net revenue is gross minus refunds, floored at zero. The order date
    is the UTC calendar date of `createdAt`.
    """
    gross = parse_money(node.get("currentTotalPriceSet")) or parse_money(node.get("totalPriceSet"))
    refund_total = parse_money(node.get("totalRefundedSet"))
    net = max(gross - refund_total, Decimal("0"))

    created_at = node["createdAt"]
    order_date = parse_iso_timestamp(created_at).date()

    currency = (
        node.get("currencyCode")
        or ((node.get("currentTotalPriceSet") or {}).get("shopMoney") or {}).get("currencyCode")
        or ((node.get("totalPriceSet") or {}).get("shopMoney") or {}).get("currencyCode")
    )

    order_id = node["id"]
    order_name = node.get("name")
    if not order_name:
        order_number = node.get("orderNumber")
        order_name = f"#{order_number}" if isinstance(order_number, int) else order_id.replace("gid://shopify/Order/", "order_")

    customer = node.get("customer") or {}
    orders_count = customer.get("numberOfOrders")
    if orders_count is None:
        orders_count = customer.get("ordersCount")
    orders_count = int(orders_count or 0)

    shipping = node.get("shippingAddress") or {}

    return NormalizedShopifyOrder(
        shopify_order_id=order_id,
        order_name=order_name,
        order_created_at=created_at,
        order_updated_at=node.get("updatedAt"),
        order_date=order_date,
        order_status=_order_status(node),
        financial_status=node.get("displayFinancialStatus"),
        fulfillment_status=node.get("displayFulfillmentStatus"),
        cancelled_at=node.get("cancelledAt"),
        total_gross=gross,
        total_net=net,
        refund_total=refund_total,
        subtotal=parse_money(node.get("subtotalPriceSet")),
        total_discounts=parse_money(node.get("totalDiscountsSet")),
        total_shipping=parse_money(node.get("totalShippingPriceSet")),
        total_tax=parse_money(node.get("totalTaxSet")),
        currency=currency,
        shopify_customer_id=extract_gid(customer.get("id"), "Customer") if customer else None,
        is_first_order=orders_count <= 1,
        sales_channel=_sales_channel(node),
        source_name=node.get("sourceName"),
        shipping_country=shipping.get("country") or shipping.get("countryCodeV2"),
        shipping_region=shipping.get("province") or shipping.get("provinceCode"),
        customer_email=customer.get("email"),
        customer_first_name=customer.get("firstName"),
        customer_last_name=customer.get("lastName"),
        customer_orders_count=orders_count,
        customer_tags=list(customer.get("tags") or []),
        line_items=_line_items(node),
        raw=node,
    )
