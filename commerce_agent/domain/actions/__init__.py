from typing import Callable, Dict, List

from commerce_agent.domain.actions.b2b import (
    get_bulk_pricing_action, check_bulk_availability_action, get_account_credit_action,
    request_product_samples_action, schedule_product_demo_action, apply_tax_exemption_action,
)
from commerce_agent.domain.actions.cart import (
    add_to_cart_action, update_cart_item_action, view_cart_action, clear_cart_action,
)
from commerce_agent.domain.actions.comparison import compare_products_action
from commerce_agent.domain.actions.search import search_products_action, check_inventory_action, get_pricing_action
from commerce_agent.domain.models.action import ActionDefinition


# Closed handler table: action documents may only bind to these names
HANDLERS: Dict[str, Callable[[], ActionDefinition]] = {
    "search_products": search_products_action,
    "check_inventory": check_inventory_action,
    "get_pricing": get_pricing_action,
    "compare_products": compare_products_action,
    "add_to_cart": add_to_cart_action,
    "update_cart_item": update_cart_item_action,
    "view_cart": view_cart_action,
    "clear_cart": clear_cart_action,
    "get_bulk_pricing": get_bulk_pricing_action,
    "check_bulk_availability": check_bulk_availability_action,
    "get_account_credit": get_account_credit_action,
    "request_product_samples": request_product_samples_action,
    "schedule_product_demo": schedule_product_demo_action,
    "apply_tax_exemption": apply_tax_exemption_action,
}


def default_actions() -> List[ActionDefinition]:
    """Built-in action catalogue"""
    return [factory() for factory in HANDLERS.values()]
