from typing import Dict, Any, List

from commerce_agent.domain.errors import ValidationError
from commerce_agent.domain.models.action import (
    ActionDefinition, ActionContext, ActionResult, CachePolicy, Capability,
)
from commerce_agent.domain.models.commands import MergeCart
from commerce_agent.domain.models.conversation_state import CartItem, Mode


LINE_QUANTITY_LIMITS = {Mode.B2C: 100, Mode.B2B: 10000}

ADD_TO_CART_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "product_id": {"type": "string", "minLength": 1},
        "variant_id": {"type": "string"},
        "quantity": {"type": "integer", "minimum": 1, "default": 1},
    },
    "required": ["product_id"],
    "additionalProperties": False,
}

UPDATE_CART_ITEM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "product_id": {"type": "string", "minLength": 1},
        "variant_id": {"type": "string"},
        "quantity": {"type": "integer", "minimum": 0},
    },
    "required": ["product_id", "quantity"],
    "additionalProperties": False,
}

VIEW_CART_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {},
    "additionalProperties": False,
}

CLEAR_CART_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "confirm": {"type": "boolean", "default": False},
    },
    "additionalProperties": False,
}


def cart_tag(cart_identity: str) -> str:
    return f"cart:{cart_identity}"


def _line_quantity(context: ActionContext, product_id: str, variant_id: Any) -> int:
    key = f"{product_id}::{variant_id or ''}"
    for item in context.state.cart.items:
        if item.line_key == key:
            return item.quantity
    return 0


def _check_line_limit(quantity: int, context: ActionContext) -> None:
    limit = LINE_QUANTITY_LIMITS.get(context.mode, LINE_QUANTITY_LIMITS[Mode.B2C])
    if quantity > limit:
        raise ValidationError(
            f"Line quantity {quantity} exceeds the {context.mode.value} limit of {limit}",
            user_message=f"You can order up to {limit:,} units of an item here.",
            details={"quantity": quantity, "limit": limit},
        )


def limit_add_quantity(params: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
    existing = _line_quantity(context, params["product_id"], params.get("variant_id"))
    _check_line_limit(existing + params.get("quantity", 1), context)
    return params


def limit_set_quantity(params: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
    _check_line_limit(params["quantity"], context)
    return params


def _cart_commands(cart: Dict[str, Any], touched: List[CartItem]) -> List[MergeCart]:
    items = [CartItem(**line) for line in cart["items"]]
    present = {item.line_key for item in items}
    # Lines the backend dropped are merged back as explicit removals
    removed = [item.model_copy(update={"quantity": 0}) for item in touched if item.line_key not in present]
    return [MergeCart(items=items + removed, cart_id=cart["cart_id"], currency=cart.get("currency"))]


async def add_to_cart(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    cart = await context.data_access.mutate_cart({
        "op": "add",
        "cart_id": context.state.cart.cart_id,
        "product_id": params["product_id"],
        "variant_id": params.get("variant_id"),
        "quantity": params.get("quantity", 1),
    })
    line = next((item for item in cart["items"] if item["product_id"] == params["product_id"]), None)
    name = line["name"] if line else params["product_id"]
    return ActionResult(
        action="add_to_cart",
        data={"cart": cart},
        message=f"Added {params.get('quantity', 1)} x {name} to your cart.",
        commands=_cart_commands(cart, []),
    )


async def update_cart_item(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    cart = await context.data_access.mutate_cart({
        "op": "set",
        "cart_id": context.state.cart.cart_id,
        "product_id": params["product_id"],
        "variant_id": params.get("variant_id"),
        "quantity": params["quantity"],
    })
    touched = CartItem(product_id=params["product_id"], variant_id=params.get("variant_id"), quantity=params["quantity"])
    if params["quantity"] == 0:
        message = f"Removed {params['product_id']} from your cart."
    else:
        message = f"Updated {params['product_id']} to {params['quantity']} in your cart."
    return ActionResult(action="update_cart_item", data={"cart": cart}, message=message, commands=_cart_commands(cart, [touched]))


async def clear_cart(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    cart = context.state.cart
    if not cart.items:
        return ActionResult(action="clear_cart", data={"cleared": 0}, message="Your cart is already empty.")
    if not params.get("confirm", False):
        count = sum(item.quantity for item in cart.items)
        return ActionResult(
            action="clear_cart",
            data={"cleared": 0, "requires_confirmation": True},
            message=f"This removes all {count} item(s) from your cart. Reply to confirm and I'll clear it.",
        )

    result = await context.data_access.mutate_cart({"op": "clear", "cart_id": cart.cart_id})
    return ActionResult(
        action="clear_cart",
        data={"cart": result, "cleared": len(cart.items)},
        message="Your cart is now empty.",
        commands=_cart_commands(result, list(cart.items)),
    )


def pin_cart_identity(params: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
    """Key the summary on cart identity and contents"""
    return dict(
        params,
        cart_id=context.state.cart_identity,
        cart_version=context.state.cart.totals_cache_version,
    )


async def view_cart(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    cart = context.state.cart
    if not cart.items:
        return ActionResult(action="view_cart", data={"items": [], "subtotal": 0.0}, message="Your cart is empty.")

    pricing = await context.data_access.get_pricing([item.product_id for item in cart.items], context.mode.value)
    lines = []
    subtotal = 0.0
    for item in cart.items:
        unit_price = pricing.get(item.product_id, {}).get("unit_price", item.unit_price or 0.0)
        line_total = round(unit_price * item.quantity, 2)
        subtotal += line_total
        lines.append({
            "product_id": item.product_id,
            "variant_id": item.variant_id,
            "name": item.name,
            "quantity": item.quantity,
            "unit_price": unit_price,
            "line_total": line_total,
        })

    subtotal = round(subtotal, 2)
    text = "\n".join(f"- {line['quantity']} x {line['name'] or line['product_id']}: ${line['line_total']:,.2f}" for line in lines)
    return ActionResult(
        action="view_cart",
        data={"cart_id": params.get("cart_id"), "items": lines, "subtotal": subtotal, "currency": cart.currency},
        message=f"Your cart:\n{text}\nSubtotal: ${subtotal:,.2f}",
    )


def add_to_cart_action() -> ActionDefinition:
    return ActionDefinition(
        name="add_to_cart",
        description="Add a product to the shopping cart",
        parameter_schema=ADD_TO_CART_SCHEMA,
        execute=add_to_cart,
        pre_process=limit_add_quantity,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS, Capability.CART_MUTATION],
        category="cart",
    )


def update_cart_item_action() -> ActionDefinition:
    return ActionDefinition(
        name="update_cart_item",
        description="Set the quantity of a cart line; quantity 0 removes it",
        parameter_schema=UPDATE_CART_ITEM_SCHEMA,
        execute=update_cart_item,
        pre_process=limit_set_quantity,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS, Capability.CART_MUTATION],
        category="cart",
    )


def view_cart_action() -> ActionDefinition:
    return ActionDefinition(
        name="view_cart",
        description="Summarize the current cart with prices for the active shopping mode",
        parameter_schema=VIEW_CART_SCHEMA,
        execute=view_cart,
        pre_process=pin_cart_identity,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS],
        category="cart",
        cache_policy=CachePolicy(
            ttl_seconds=60,
            tags_fn=lambda params, context: [cart_tag(params["cart_id"])],
        ),
    )


def clear_cart_action() -> ActionDefinition:
    return ActionDefinition(
        name="clear_cart",
        description="Remove every item from the cart; asks for confirmation unless confirm is true",
        parameter_schema=CLEAR_CART_SCHEMA,
        execute=clear_cart,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS, Capability.CART_MUTATION],
        category="cart",
    )
