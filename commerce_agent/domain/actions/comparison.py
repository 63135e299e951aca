from typing import Dict, Any, List
import asyncio

from commerce_agent.domain.models.action import (
    ActionDefinition, ActionContext, ActionResult, CachePolicy, Capability,
)
from commerce_agent.domain.models.commands import PresentProducts
from commerce_agent.domain.models.conversation_state import Mode


COMPARE_ATTRIBUTES = ["price", "availability", "brand", "category"]

COMPARE_PRODUCTS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "product_ids": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
            "minItems": 2,
            "maxItems": 5,
            "uniqueItems": True,
        },
        "attributes": {
            "type": "array",
            "items": {"type": "string", "enum": COMPARE_ATTRIBUTES},
            "minItems": 1,
            "uniqueItems": True,
        },
    },
    "required": ["product_ids"],
    "additionalProperties": False,
}


def _row(product: Dict[str, Any], price: Dict[str, Any], stock: Dict[str, Any], attributes: List[str]) -> Dict[str, Any]:
    row: Dict[str, Any] = {"product_id": product["id"], "name": product["name"]}
    if "price" in attributes:
        row["unit_price"] = price["unit_price"]
        row["list_price"] = price.get("list_price", price["unit_price"])
    if "availability" in attributes:
        row["in_stock"] = stock["in_stock"]
        row["available"] = stock["available"]
    if "brand" in attributes:
        row["brand"] = product["brand"]
    if "category" in attributes:
        row["category"] = product["category"]
    return row


async def compare_products(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    ids = params["product_ids"]
    attributes = params.get("attributes") or COMPARE_ATTRIBUTES
    details, pricing, inventory = await asyncio.gather(
        context.data_access.custom_extension("getProductDetails", {"product_ids": ids}),
        context.data_access.get_pricing(ids, context.mode.value),
        context.data_access.get_inventory(ids),
    )

    rows = [
        _row(product, pricing[product_id], inventory[product_id], attributes)
        for product_id, product in details.items()
    ]
    prices = {product_id: pricing[product_id]["unit_price"] for product_id in details}
    best = min(prices, key=prices.get)
    summary = {
        "price_range": {"min": min(prices.values()), "max": max(prices.values())},
        "best_value": best,
        "in_stock": [product_id for product_id in details if inventory[product_id]["in_stock"]],
    }

    lines = []
    for row in rows:
        parts = [row["name"]]
        if "unit_price" in row:
            parts.append(f"${row['unit_price']:,.2f}")
        if "in_stock" in row:
            parts.append("in stock" if row["in_stock"] else "out of stock")
        if "brand" in row:
            parts.append(row["brand"])
        lines.append("- " + ", ".join(parts))

    message = (
        f"Comparing {len(rows)} products:\n" + "\n".join(lines)
        + f"\nLowest price: {details[best]['name']} at ${prices[best]:,.2f}."
    )
    if context.mode == Mode.B2B:
        message += " Volume discounts apply from 50 units; ask for bulk pricing on any of these."

    return ActionResult(
        action="compare_products",
        data={"comparison": rows, "summary": summary, "attributes": attributes},
        message=message,
        commands=[PresentProducts(products=list(details.values()))],
    )


def compare_products_action() -> ActionDefinition:
    return ActionDefinition(
        name="compare_products",
        description="Compare two to five products side by side on price, availability, brand and category",
        parameter_schema=COMPARE_PRODUCTS_SCHEMA,
        execute=compare_products,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS],
        category="search",
        cache_policy=CachePolicy(ttl_seconds=60, tags_fn=lambda params, context: ["pricing", "inventory"]),
    )
