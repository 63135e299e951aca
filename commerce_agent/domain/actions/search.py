from typing import Dict, Any

from commerce_agent.domain.models.action import (
    ActionDefinition, ActionContext, ActionResult, CachePolicy, Capability,
)
from commerce_agent.domain.models.commands import PresentProducts, MergeContext


SEARCH_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "minLength": 1, "maxLength": 200},
        "filters": {
            "type": "object",
            "properties": {
                "category": {"type": "string"},
                "brand": {"type": "string"},
                "minPrice": {"type": "number", "minimum": 0},
                "maxPrice": {"type": "number", "minimum": 0},
            },
            "additionalProperties": False,
        },
        "limit": {"type": "integer", "minimum": 1, "maximum": 50, "default": 10},
    },
    "required": ["query"],
    "additionalProperties": False,
}

PRODUCT_IDS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "product_ids": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
            "minItems": 1,
            "maxItems": 50,
        },
    },
    "required": ["product_ids"],
    "additionalProperties": False,
}


def _format_price(value: float, currency: str = "USD") -> str:
    return f"${value:,.2f}" if currency == "USD" else f"{value:,.2f} {currency}"


async def search_products(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    filters = params.get("filters") or {}
    products = await context.data_access.search_catalog(params["query"], filters, limit=params.get("limit", 10))

    if products:
        lines = [f"- {p['name']} ({_format_price(p['price'], p.get('currency', 'USD'))})" for p in products]
        message = f"I found {len(products)} products matching \"{params['query']}\":\n" + "\n".join(lines)
    else:
        message = f"I couldn't find any products matching \"{params['query']}\". Try a broader search?"

    return ActionResult(
        action="search_products",
        data={"products": products, "query": params["query"], "filters": filters},
        message=message,
        commands=[
            PresentProducts(products=products, query=params["query"]),
            MergeContext(values={"last_search": {"query": params["query"], "filters": filters, "count": len(products)}}),
        ],
    )


async def check_inventory(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    inventory = await context.data_access.get_inventory(params["product_ids"])
    lines = [
        f"- {product_id}: {'in stock' if item['in_stock'] else 'out of stock'} ({item['available']} available)"
        for product_id, item in inventory.items()
    ]
    return ActionResult(action="check_inventory", data={"inventory": inventory}, message="Stock levels:\n" + "\n".join(lines))


async def get_pricing(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    pricing = await context.data_access.get_pricing(params["product_ids"], context.mode.value)
    lines = [f"- {product_id}: {_format_price(item['unit_price'], item['currency'])}" for product_id, item in pricing.items()]
    return ActionResult(action="get_pricing", data={"pricing": pricing}, message="Current prices:\n" + "\n".join(lines))


def search_products_action() -> ActionDefinition:
    return ActionDefinition(
        name="search_products",
        description="Search the product catalogue by free text with optional category, brand and price filters",
        parameter_schema=SEARCH_SCHEMA,
        execute=search_products,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS],
        category="search",
        cache_policy=CachePolicy(ttl_seconds=300, tags_fn=lambda params, context: ["catalog"]),
    )


def check_inventory_action() -> ActionDefinition:
    return ActionDefinition(
        name="check_inventory",
        description="Check stock availability for one or more products",
        parameter_schema=PRODUCT_IDS_SCHEMA,
        execute=check_inventory,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS],
        category="inventory",
        cache_policy=CachePolicy(ttl_seconds=30, tags_fn=lambda params, context: ["inventory"]),
    )


def get_pricing_action() -> ActionDefinition:
    return ActionDefinition(
        name="get_pricing",
        description="Get current prices for one or more products in the active shopping mode",
        parameter_schema=PRODUCT_IDS_SCHEMA,
        execute=get_pricing,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS],
        category="pricing",
        cache_policy=CachePolicy(ttl_seconds=60, tags_fn=lambda params, context: ["pricing"]),
    )
