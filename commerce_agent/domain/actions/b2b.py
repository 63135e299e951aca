from typing import Dict, Any, Callable
from datetime import datetime

from commerce_agent.domain.errors import ValidationError
from commerce_agent.domain.models.action import (
    ActionDefinition, ActionContext, ActionResult, CachePolicy, Capability,
)
from commerce_agent.domain.models.commands import MergeContext
from commerce_agent.domain.models.conversation_state import Mode


QUANTITY_TIERS = [(5000, "5000+"), (1000, "1000-4999"), (500, "500-999"), (250, "250-499"), (100, "100-249"), (50, "50-99"), (1, "1-49")]

BULK_PRICING_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "sku": {"type": "string", "minLength": 1},
        "quantity": {"type": "integer", "minimum": 1},
    },
    "required": ["sku", "quantity"],
    "additionalProperties": False,
}

BULK_AVAILABILITY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "sku": {"type": "string", "minLength": 1},
        "quantity": {"type": "integer", "minimum": 1},
    },
    "required": ["sku", "quantity"],
    "additionalProperties": False,
}

ACCOUNT_CREDIT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "include_invoices": {"type": "boolean", "default": True},
    },
    "additionalProperties": False,
}

PRODUCT_LIST: Dict[str, Any] = {
    "type": "array",
    "items": {"type": "string", "minLength": 1},
    "minItems": 1,
    "maxItems": 5,
    "uniqueItems": True,
}
ISO_DATE: Dict[str, Any] = {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}$"}
STATE_CODE: Dict[str, Any] = {"type": "string", "pattern": "^[A-Z]{2}$"}

PRODUCT_SAMPLES_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "product_ids": PRODUCT_LIST,
        "shipping_state": STATE_CODE,
        "notes": {"type": "string", "maxLength": 500},
    },
    "required": ["product_ids"],
    "additionalProperties": False,
}

PRODUCT_DEMO_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "product_ids": PRODUCT_LIST,
        "date": ISO_DATE,
        "time": {"type": "string", "pattern": "^([01]\\d|2[0-3]):[0-5]\\d$"},
        "demo_type": {"type": "string", "enum": ["virtual", "in_person"], "default": "virtual"},
        "attendees": {
            "type": "array",
            "items": {"type": "string", "pattern": r"^[^@\s]+@[^@\s]+\.[^@\s]+$"},
            "maxItems": 10,
        },
    },
    "required": ["product_ids", "date", "time"],
    "additionalProperties": False,
}

TAX_EXEMPTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "certificate": {"type": "string", "pattern": "^[A-Z]{2}-[A-Z0-9]{5}-[A-Z0-9]{4}$"},
        "state": STATE_CODE,
        "expiration_date": ISO_DATE,
    },
    "required": ["certificate", "state"],
    "additionalProperties": False,
}


def quantity_tier(quantity: int) -> str:
    for threshold, label in QUANTITY_TIERS:
        if quantity >= threshold:
            return label
    return QUANTITY_TIERS[-1][1]


def bulk_pricing_key(params: Dict[str, Any], mode: str) -> str:
    """Quotes within a tier share one cache entry"""
    return f"bulk_pricing:{params['sku'].strip().upper()}:{quantity_tier(params['quantity'])}:{mode}"


async def get_bulk_pricing(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    quote = await context.data_access.custom_extension(
        "getBulkPricing", {"sku": params["sku"], "quantity": params["quantity"]}
    )
    tier = quote["pricing_tiers"][0]
    message = (
        f"Bulk pricing for {quote['name']} ({quote['product_id']}) at {tier['quantity']:,} units: "
        f"${tier['unit_price']:,.2f} per unit ({tier['discount']}% off list ${quote['base_price']:,.2f}), "
        f"${tier['total_price']:,.2f} total. Lead time: {tier['lead_time']}."
    )
    if quote.get("contact_for_quote"):
        message += " " + quote["contact_for_quote"]["message"] + "."

    return ActionResult(
        action="get_bulk_pricing",
        data={"quote": quote, "tier": quantity_tier(params["quantity"])},
        message=message,
    )


async def check_bulk_availability(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    availability = await context.data_access.custom_extension(
        "getBulkAvailability", {"sku": params["sku"], "quantity": params["quantity"]}
    )
    if availability["production_quantity"]:
        message = (
            f"{availability['available_now']:,} units of {availability['product_id']} ship now; "
            f"the remaining {availability['production_quantity']:,} follow by {availability['estimated_date']}."
        )
    else:
        message = f"All {availability['requested_quantity']:,} units of {availability['product_id']} are available now."

    return ActionResult(
        action="check_bulk_availability",
        data={"availability": availability},
        message=message,
        commands=[MergeContext(values={"detected_intent": "bulk_availability"})],
    )


def get_bulk_pricing_action() -> ActionDefinition:
    return ActionDefinition(
        name="get_bulk_pricing",
        description="Get tiered volume pricing for a SKU and quantity (business accounts)",
        parameter_schema=BULK_PRICING_SCHEMA,
        execute=get_bulk_pricing,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS, Capability.BULK_PRICING_EXTENSION],
        modes=[Mode.B2B],
        category="b2b",
        cache_policy=CachePolicy(
            ttl_seconds=600,
            key_fn=bulk_pricing_key,
            tags_fn=lambda params, context: ["pricing", "bulk_pricing"],
        ),
    )


def check_bulk_availability_action() -> ActionDefinition:
    return ActionDefinition(
        name="check_bulk_availability",
        description="Check immediate and production availability for a bulk quantity of a SKU",
        parameter_schema=BULK_AVAILABILITY_SCHEMA,
        execute=check_bulk_availability,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS, Capability.BULK_PRICING_EXTENSION],
        modes=[Mode.B2B],
        category="b2b",
        cache_policy=CachePolicy(ttl_seconds=60, tags_fn=lambda params, context: ["inventory"]),
    )


def requires_customer(user_message: str) -> Callable[[Dict[str, Any], ActionContext], Dict[str, Any]]:
    """Account-scoped actions run for the signed-in customer only; the cache key carries it too"""

    def pin(params: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
        customer_id = context.state.context.customer_id
        if not customer_id:
            raise ValidationError(
                "Account action requested without a signed-in customer",
                user_message=user_message,
            )
        return dict(params, customer_id=customer_id)

    return pin


pin_customer = requires_customer("Please sign in to your business account to see credit details.")


def demo_in_future(params: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
    params = requires_customer("Please sign in to your business account to book a product demo.")(params, context)
    try:
        when = datetime.strptime(f"{params['date']} {params['time']}", "%Y-%m-%d %H:%M")
    except ValueError:
        raise ValidationError(
            f"Invalid demo date {params['date']!r}",
            user_message="Please give the demo date as YYYY-MM-DD.",
        )
    if when <= datetime.utcnow():
        raise ValidationError(
            f"Demo requested in the past: {params['date']} {params['time']}",
            user_message="Please pick a demo date and time in the future.",
            details={"date": params["date"], "time": params["time"]},
        )
    return params


async def request_product_samples(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    request = await context.data_access.custom_extension("requestProductSamples", {
        "customer_id": params["customer_id"],
        "product_ids": params["product_ids"],
        "shipping_state": params.get("shipping_state"),
        "notes": params.get("notes"),
    })
    names = ", ".join(p["name"] for p in request["products"])
    rep = request["sales_rep"]
    message = (
        f"Sample request {request['request_id']} for {names} is {request['status']}; "
        f"estimated delivery {request['estimated_delivery']}. Your contact is {rep['name']} ({rep['email']})."
    )
    if request["approval_required"]:
        message += " Requests for this many products need sales approval first."

    return ActionResult(action="request_product_samples", data={"request": request}, message=message)


async def schedule_product_demo(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    demo = await context.data_access.custom_extension("scheduleProductDemo", {
        "customer_id": params["customer_id"],
        "product_ids": params["product_ids"],
        "date": params["date"],
        "time": params["time"],
        "demo_type": params.get("demo_type", "virtual"),
        "attendees": params.get("attendees") or [],
    })
    when = demo["scheduled_time"]
    meeting = demo["meeting"]
    kind = "virtual demo" if meeting["type"] == "virtual" else "in-person demo"
    message = (
        f"Your {kind} ({demo['demo_id']}) is booked for {when['date']} at {when['time']} "
        f"({when['duration_minutes']} minutes) with {demo['specialist']['name']}. "
        f"Location: {meeting['location']}."
    )
    return ActionResult(action="schedule_product_demo", data={"demo": demo}, message=message)


async def apply_tax_exemption(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    exemption = await context.data_access.custom_extension("applyTaxExemption", {
        "customer_id": params["customer_id"],
        "certificate": params["certificate"],
        "state": params["state"],
        "expiration_date": params.get("expiration_date"),
        "cart_id": context.state.cart.cart_id,
    })
    if exemption["status"] == "expired":
        return ActionResult(
            action="apply_tax_exemption",
            data={"exemption": exemption},
            message=f"Certificate {exemption['certificate_number']} expired on {exemption['expiration_date']}; please upload a current one.",
        )

    message = (
        f"Tax exemption {exemption['exemption_id']} is active for {', '.join(exemption['valid_states'])} "
        f"until {exemption['expiration_date']}."
    )
    savings = exemption.get("tax_savings")
    if exemption["applied_to_cart"] and savings:
        message += f" Your current cart saves ${savings['net_savings']:,.2f} in sales tax."

    return ActionResult(
        action="apply_tax_exemption",
        data={"exemption": exemption},
        message=message,
        commands=[MergeContext(values={"tax_exempt": True})],
    )


async def get_account_credit(params: Dict[str, Any], context: ActionContext) -> ActionResult:
    credit = await context.data_access.custom_extension(
        "getAccountCredit", {"customer_id": params["customer_id"]}
    )
    message = (
        f"Account {credit['account_id']}: ${credit['available_credit']:,.2f} available of a "
        f"${credit['credit_limit']:,.2f} limit, payment terms {credit['payment_terms']}."
    )
    if credit["credit_status"] != "active":
        message += " The account is on credit hold; please contact your account manager."

    invoices = credit.get("outstanding_invoices") or []
    overdue = [invoice for invoice in invoices if invoice["days_past_due"] > 0]
    if params.get("include_invoices", True) and invoices:
        message += f" {len(invoices)} open invoice(s)"
        message += f", {len(overdue)} past due." if overdue else "."
    else:
        credit = dict(credit, outstanding_invoices=[])

    commands = []
    if credit.get("account_type"):
        commands.append(MergeContext(values={"customer_tier": credit["account_type"]}))
    return ActionResult(action="get_account_credit", data={"credit": credit}, message=message, commands=commands)


def get_account_credit_action() -> ActionDefinition:
    return ActionDefinition(
        name="get_account_credit",
        description="Show the business account's credit limit, available credit, payment terms and open invoices",
        parameter_schema=ACCOUNT_CREDIT_SCHEMA,
        execute=get_account_credit,
        pre_process=pin_customer,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS, Capability.ACCOUNT_CONTEXT_EXTENSION],
        modes=[Mode.B2B],
        category="b2b",
        cache_policy=CachePolicy(
            ttl_seconds=120,
            tags_fn=lambda params, context: [f"account:{params['customer_id']}"],
        ),
    )


def request_product_samples_action() -> ActionDefinition:
    return ActionDefinition(
        name="request_product_samples",
        description="Request free samples of up to five products for evaluation (business accounts)",
        parameter_schema=PRODUCT_SAMPLES_SCHEMA,
        execute=request_product_samples,
        pre_process=requires_customer("Please sign in to your business account to request samples."),
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS, Capability.ACCOUNT_CONTEXT_EXTENSION],
        modes=[Mode.B2B],
        category="b2b",
    )


def schedule_product_demo_action() -> ActionDefinition:
    return ActionDefinition(
        name="schedule_product_demo",
        description="Book a virtual or in-person product demo with a solutions specialist",
        parameter_schema=PRODUCT_DEMO_SCHEMA,
        execute=schedule_product_demo,
        pre_process=demo_in_future,
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS, Capability.ACCOUNT_CONTEXT_EXTENSION],
        modes=[Mode.B2B],
        category="b2b",
    )


def apply_tax_exemption_action() -> ActionDefinition:
    return ActionDefinition(
        name="apply_tax_exemption",
        description="Register a sales tax exemption certificate and apply it to the current cart",
        parameter_schema=TAX_EXEMPTION_SCHEMA,
        execute=apply_tax_exemption,
        pre_process=requires_customer("Please sign in to your business account to apply a tax exemption."),
        required_capabilities=[Capability.UNIFIED_DATA_ACCESS, Capability.ACCOUNT_CONTEXT_EXTENSION],
        modes=[Mode.B2B],
        category="b2b",
    )
