from typing import Dict, Any, List, Optional, Callable, Awaitable
from collections import Counter
from datetime import datetime, timedelta
import asyncio
import copy
import uuid
import structlog

from commerce_agent.domain.errors import CapabilityUnavailable, PermanentDependencyError
from commerce_agent.infrastructure.udl.unified_data_access import UnifiedDataAccess

logger = structlog.get_logger(__name__)


SEED_CATALOG: List[Dict[str, Any]] = [
    {"id": "LAP-001", "sku": "LAP-001", "name": "Acme UltraBook 14", "category": "laptops", "brand": "Acme", "price": 899.0, "stock": 42},
    {"id": "LAP-002", "sku": "LAP-002", "name": "Acme ProBook 16", "category": "laptops", "brand": "Acme", "price": 1499.0, "stock": 12},
    {"id": "LAP-003", "sku": "LAP-003", "name": "Nimbus StudentBook 13", "category": "laptops", "brand": "Nimbus", "price": 549.0, "stock": 80},
    {"id": "LAP-004", "sku": "LAP-004", "name": "Vertex Gaming Laptop 17", "category": "laptops", "brand": "Vertex", "price": 1899.0, "stock": 5},
    {"id": "SKU123", "sku": "SKU123", "name": "ErgoPro Office Chair", "category": "furniture", "brand": "ErgoPro", "price": 249.0, "stock": 6000},
    {"id": "SKU456", "sku": "SKU456", "name": "Nimbus Wireless Mouse", "category": "accessories", "brand": "Nimbus", "price": 29.99, "stock": 15000},
    {"id": "MON-027", "sku": "MON-027", "name": "Vertex 27in 4K Monitor", "category": "monitors", "brand": "Vertex", "price": 329.0, "stock": 64},
    {"id": "HP-100", "sku": "HP-100", "name": "Acme Noise Cancelling Headphones", "category": "headphones", "brand": "Acme", "price": 199.0, "stock": 150},
    {"id": "DSK-140", "sku": "DSK-140", "name": "ErgoPro Standing Desk", "category": "furniture", "brand": "ErgoPro", "price": 499.0, "stock": 300},
]

BULK_DISCOUNT_TIERS = [
    (5000, 30, "3-4 weeks"),
    (1000, 25, "2-3 weeks"),
    (500, 20, "7-10 business days"),
    (250, 15, "5-7 business days"),
    (100, 10, "3-5 business days"),
    (50, 5, "3-5 business days"),
]
CONTACT_FOR_QUOTE_THRESHOLD = 10000
DEFAULT_CREDIT_LIMIT = 50000.0
CREDIT_UTILIZATION = 0.3
B2B_CONTRACT_DISCOUNT = 0.05
SALES_TAX_RATE = 0.0825
SAMPLE_MIN_PRICE = 50.0
SAMPLE_APPROVAL_THRESHOLD = 3
DEMO_DURATION_MINUTES = 45

SALES_REPS = {
    "TX": {"name": "John Smith", "email": "john.smith@example.com", "phone": "+1-555-0123"},
    "CA": {"name": "Sarah Johnson", "email": "sarah.johnson@example.com", "phone": "+1-555-0124"},
    "NY": {"name": "Michael Davis", "email": "michael.davis@example.com", "phone": "+1-555-0125"},
    "FL": {"name": "Emily Wilson", "email": "emily.wilson@example.com", "phone": "+1-555-0126"},
}
DEFAULT_SALES_REP = {"name": "General Sales Team", "email": "sales@example.com", "phone": "+1-555-0100"}
DEMO_SPECIALIST = {
    "name": "Robert Chen", "email": "robert.chen@example.com", "phone": "+1-555-0201",
    "title": "Solutions Specialist",
}

EXEMPTION_STATES = {
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA", "HI", "ID", "IL", "IN", "IA", "KS", "KY",
    "LA", "ME", "MD", "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ", "NM", "NY", "NC", "ND",
    "OH", "OK", "OR", "PA", "RI", "SC", "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY",
}
# Certificate validity in years by state; others default to one year
EXEMPTION_VALIDITY_YEARS = {"TX": 4, "CA": 3, "NY": 2, "FL": 5}
# Multi-state ("MS-") certificates cover the primary state's region
EXEMPTION_REGIONS = {
    "TX": ["TX", "OK", "AR", "LA", "NM"],
    "CA": ["CA", "OR", "WA", "NV", "AZ"],
    "NY": ["NY", "NJ", "CT", "PA", "MA"],
}


def bulk_discount(quantity: int) -> Dict[str, Any]:
    """Discount percent and lead time for a bulk quantity"""
    for threshold, discount, lead_time in BULK_DISCOUNT_TIERS:
        if quantity >= threshold:
            return {"discount": discount, "lead_time": lead_time}
    return {"discount": 0, "lead_time": "3-5 business days"}


class InMemoryCommerceBackend(UnifiedDataAccess):
    """Seeded commerce backend for development and tests

    Supports per-operation latency and failure injection and counts every call.
    """

    def __init__(
        self,
        catalog: Optional[List[Dict[str, Any]]] = None,
        latency: Optional[Dict[str, float]] = None,
        failures: Optional[Dict[str, Exception]] = None,
        order_volumes: Optional[Dict[str, int]] = None,
        accounts: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.catalog: Dict[str, Dict[str, Any]] = {p["id"]: dict(p) for p in (catalog or copy.deepcopy(SEED_CATALOG))}
        self.latency: Dict[str, float] = dict(latency or {})
        self.failures: Dict[str, Exception] = dict(failures or {})
        self.order_volumes: Dict[str, int] = dict(order_volumes or {})
        self.accounts: Dict[str, Dict[str, Any]] = dict(accounts or {})
        self.carts: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: Counter = Counter()
        self._extensions: Dict[str, Callable[[Dict[str, Any]], Awaitable[Any]]] = {
            "getBulkPricing": self._bulk_pricing,
            "getBulkAvailability": self._bulk_availability,
            "getOrderVolume": self._order_volume,
            "getAccountContext": self._account_context,
            "getAccountCredit": self._account_credit,
            "getProductDetails": self._product_details,
            "requestProductSamples": self._product_samples,
            "scheduleProductDemo": self._product_demo,
            "applyTaxExemption": self._tax_exemption,
        }

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        delay = self.latency.get(operation, self.latency.get("*", 0.0))
        if delay:
            await asyncio.sleep(delay)
        failure = self.failures.get(operation) or self.failures.get("*")
        if failure is not None:
            raise failure

    def _product(self, product_id: str) -> Dict[str, Any]:
        product = self.catalog.get(product_id)
        if product is None:
            for candidate in self.catalog.values():
                if candidate["sku"].lower() == str(product_id).lower():
                    return candidate
            raise PermanentDependencyError(f"Unknown product '{product_id}'", details={"product_id": product_id})
        return product

    async def search_catalog(self, query: str, filters: Optional[Dict[str, Any]] = None, limit: int = 10) -> List[Dict[str, Any]]:
        await self._enter("search_catalog")
        filters = filters or {}
        terms = [t.rstrip("s") for t in query.lower().split() if t]

        results = []
        for product in self.catalog.values():
            haystack = " ".join([product["name"], product["category"], product["brand"], product["sku"]]).lower()
            if terms and not all(term in haystack for term in terms):
                continue
            if filters.get("category") and product["category"] != str(filters["category"]).lower():
                continue
            if filters.get("brand") and product["brand"].lower() != str(filters["brand"]).lower():
                continue
            if filters.get("maxPrice") is not None and product["price"] > filters["maxPrice"]:
                continue
            if filters.get("minPrice") is not None and product["price"] < filters["minPrice"]:
                continue
            results.append(self._normalize(product))

        results.sort(key=lambda p: p["price"])
        return results[:limit]

    async def get_inventory(self, product_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        await self._enter("get_inventory")
        inventory = {}
        for product_id in product_ids:
            product = self._product(product_id)
            inventory[product["id"]] = {"available": product["stock"], "in_stock": product["stock"] > 0}
        return inventory

    async def get_pricing(self, product_ids: List[str], mode: str) -> Dict[str, Dict[str, Any]]:
        await self._enter("get_pricing")
        pricing = {}
        for product_id in product_ids:
            product = self._product(product_id)
            price = product["price"]
            if mode == "b2b":
                price = round(price * (1 - B2B_CONTRACT_DISCOUNT), 2)
            pricing[product["id"]] = {"unit_price": price, "list_price": product["price"], "currency": "USD", "mode": mode}
        return pricing

    async def mutate_cart(self, operation: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("mutate_cart")
        cart_id = operation.get("cart_id") or f"cart_{uuid.uuid4().hex[:8]}"
        lines = self.carts.setdefault(cart_id, {})
        op = operation.get("op")

        if op in ("add", "set"):
            product = self._product(operation["product_id"])
            line_key = f"{product['id']}::{operation.get('variant_id') or ''}"
            current = lines.get(line_key, {}).get("quantity", 0)
            quantity = current + operation["quantity"] if op == "add" else operation["quantity"]
            if quantity > product["stock"]:
                raise PermanentDependencyError(
                    f"Insufficient stock for '{product['id']}'",
                    user_message=f"Sorry, only {product['stock']} of {product['name']} are available.",
                )
            if quantity <= 0:
                lines.pop(line_key, None)
            else:
                lines[line_key] = {
                    "product_id": product["id"],
                    "variant_id": operation.get("variant_id"),
                    "quantity": quantity,
                    "unit_price": product["price"],
                    "name": product["name"],
                }
        elif op == "remove":
            lines.pop(f"{operation['product_id']}::{operation.get('variant_id') or ''}", None)
        elif op == "clear":
            lines.clear()
        elif op != "get":
            raise PermanentDependencyError(f"Unsupported cart operation '{op}'")

        return {"cart_id": cart_id, "currency": "USD", "items": [dict(line) for line in lines.values()]}

    async def custom_extension(self, name: str, args: Dict[str, Any]) -> Any:
        handler = self._extensions.get(name)
        if handler is None:
            raise CapabilityUnavailable(f"Custom extension '{name}' is not available")
        await self._enter(name)
        return await handler(args)

    async def _bulk_pricing(self, args: Dict[str, Any]) -> Dict[str, Any]:
        product = self._product(args["sku"])
        quantities = args.get("quantities") or [args["quantity"]]
        tiers = []
        for quantity in quantities:
            tier = bulk_discount(quantity)
            unit_price = round(product["price"] * (1 - tier["discount"] / 100), 2)
            tiers.append({
                "quantity": quantity,
                "unit_price": unit_price,
                "total_price": round(unit_price * quantity, 2),
                "discount": tier["discount"],
                "lead_time": tier["lead_time"],
                "minimum_order_quantity": 50 if quantity < 50 else None,
            })

        response = {
            "product_id": product["id"],
            "name": product["name"],
            "currency": "USD",
            "base_price": product["price"],
            "pricing_tiers": tiers,
            "contact_for_quote": None,
        }
        if max(quantities) >= CONTACT_FOR_QUOTE_THRESHOLD:
            response["contact_for_quote"] = {
                "threshold": CONTACT_FOR_QUOTE_THRESHOLD,
                "message": "Contact our sales team for custom pricing on orders over 10,000 units",
            }
        return response

    async def _bulk_availability(self, args: Dict[str, Any]) -> Dict[str, Any]:
        product = self._product(args["sku"])
        requested = args["quantity"]
        immediate = min(requested, product["stock"])
        production = requested - immediate
        lead_days = 21 if production else 0
        return {
            "product_id": product["id"],
            "requested_quantity": requested,
            "available_now": immediate,
            "production_quantity": production,
            "production_lead_days": lead_days,
            "estimated_date": (datetime.utcnow() + timedelta(days=lead_days)).date().isoformat(),
            "split_shipment": bool(immediate and production),
        }

    async def _order_volume(self, args: Dict[str, Any]) -> Dict[str, Any]:
        customer_id = args.get("customer_id")
        return {"customer_id": customer_id, "units_last_90_days": self.order_volumes.get(customer_id, 0)}

    async def _account_context(self, args: Dict[str, Any]) -> Dict[str, Any]:
        customer_id = args.get("customer_id")
        account = self.accounts.get(customer_id)
        if account is None:
            return {"customer_id": customer_id, "account_type": "standard", "payment_terms": None, "tax_exempt": False}
        return dict(account, customer_id=customer_id)

    async def _account_credit(self, args: Dict[str, Any]) -> Dict[str, Any]:
        customer_id = args.get("customer_id")
        account = self.accounts.get(customer_id)
        if account is None:
            raise PermanentDependencyError(
                f"No business account for customer '{customer_id}'",
                user_message="Account credit is only available for business accounts.",
            )

        limit = float(account.get("credit_limit", DEFAULT_CREDIT_LIMIT))
        used = round(limit * CREDIT_UTILIZATION, 2)
        pending = float(account.get("pending_charges", 0.0))
        available = round(limit - used - pending, 2)
        today = datetime.utcnow()
        invoices = [
            {"invoice_number": f"INV-{customer_id}-1", "amount": round(used * 0.6, 2),
             "due_date": (today + timedelta(days=5)).date().isoformat(), "days_past_due": 0},
            {"invoice_number": f"INV-{customer_id}-2", "amount": round(used * 0.4, 2),
             "due_date": (today - timedelta(days=15)).date().isoformat(), "days_past_due": 15},
        ] if used else []
        return {
            "account_id": account.get("account_id") or f"ACC-{customer_id}",
            "customer_id": customer_id,
            "account_type": account.get("account_type"),
            "credit_limit": limit,
            "used_credit": used,
            "available_credit": max(0.0, available),
            "currency": "USD",
            "payment_terms": account.get("payment_terms") or "Net 30",
            "credit_status": "active" if available > limit * 0.1 else "hold",
            "outstanding_invoices": invoices,
        }

    def _business_account(self, customer_id: Optional[str], feature: str) -> Dict[str, Any]:
        account = self.accounts.get(customer_id)
        if account is None:
            raise PermanentDependencyError(
                f"No business account for customer '{customer_id}'",
                user_message=f"{feature} are only available for business accounts.",
            )
        return account

    async def _product_details(self, args: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        return {product["id"]: self._normalize(product) for product in map(self._product, args["product_ids"])}

    async def _product_samples(self, args: Dict[str, Any]) -> Dict[str, Any]:
        self._business_account(args.get("customer_id"), "Product samples")
        products = [self._product(product_id) for product_id in args["product_ids"]]

        ineligible = [p["name"] for p in products if p["price"] <= SAMPLE_MIN_PRICE]
        if ineligible:
            raise PermanentDependencyError(
                f"Products not eligible for samples: {', '.join(ineligible)}",
                user_message=f"These products aren't eligible for samples: {', '.join(ineligible)}.",
            )

        state = args.get("shipping_state")
        return {
            "request_id": f"SR-{uuid.uuid4().hex[:8].upper()}",
            "status": "pending",
            "products": [
                {"product_id": p["id"], "name": p["name"], "sample_sku": f"SAMPLE-{p['sku']}", "approved": True}
                for p in products
            ],
            "estimated_delivery": (datetime.utcnow() + timedelta(days=5)).date().isoformat(),
            "approval_required": len(products) > SAMPLE_APPROVAL_THRESHOLD,
            "sales_rep": dict(SALES_REPS.get(state, DEFAULT_SALES_REP)),
            "notes": args.get("notes"),
        }

    async def _product_demo(self, args: Dict[str, Any]) -> Dict[str, Any]:
        self._business_account(args.get("customer_id"), "Product demos")
        products = [self._product(product_id) for product_id in args["product_ids"]]
        demo_id = f"DEMO-{uuid.uuid4().hex[:8].upper()}"

        if args.get("demo_type") == "in_person":
            meeting = {
                "type": "in_person",
                "location": "123 Business Park, Suite 400, Dallas, TX 75201",
                "join_instructions": "Please check in at reception. Free parking is available in Lot B.",
            }
        else:
            meeting = {
                "type": "virtual",
                "location": f"https://meet.example.com/demo/{demo_id}",
                "join_instructions": "Open the link to join; no download required.",
            }

        return {
            "demo_id": demo_id,
            "status": "scheduled",
            "scheduled_time": {"date": args["date"], "time": args["time"], "duration_minutes": DEMO_DURATION_MINUTES},
            "meeting": meeting,
            "specialist": dict(DEMO_SPECIALIST),
            "products": [{"product_id": p["id"], "name": p["name"]} for p in products],
            "attendees": list(args.get("attendees") or []),
            "calendar_invite": f"https://calendar.example.com/demos/{demo_id}/invite.ics",
        }

    async def _tax_exemption(self, args: Dict[str, Any]) -> Dict[str, Any]:
        self._business_account(args.get("customer_id"), "Tax exemptions")
        certificate, state = args["certificate"], args["state"]
        if state not in EXEMPTION_STATES:
            raise PermanentDependencyError(
                f"Invalid state code '{state}'",
                user_message=f"Tax exemption certificates aren't accepted for {state}.",
            )

        today = datetime.utcnow()
        response: Dict[str, Any] = {
            "exemption_id": f"EX-{uuid.uuid4().hex[:8].upper()}",
            "certificate_number": certificate,
            "valid_states": [state],
            "applied_to_cart": False,
            "tax_savings": None,
        }

        expiration = args.get("expiration_date")
        if expiration and datetime.fromisoformat(expiration) < today:
            return dict(response, status="expired", expiration_date=expiration)

        if certificate.startswith("MS-"):
            response["valid_states"] = list(EXEMPTION_REGIONS.get(state, [state]))
        years = EXEMPTION_VALIDITY_YEARS.get(state, 1)
        response["expiration_date"] = expiration or (today + timedelta(days=365 * years)).date().isoformat()

        lines = self.carts.get(args.get("cart_id") or "")
        if lines:
            subtotal = sum(line["unit_price"] * line["quantity"] for line in lines.values())
            tax = round(subtotal * SALES_TAX_RATE, 2)
            response["applied_to_cart"] = True
            response["tax_savings"] = {"original_tax": tax, "exempted_tax": 0.0, "net_savings": tax}

        return dict(response, status="active")

    @staticmethod
    def _normalize(product: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": product["id"],
            "sku": product["sku"],
            "name": product["name"],
            "category": product["category"],
            "brand": product["brand"],
            "price": product["price"],
            "currency": "USD",
            "in_stock": product["stock"] > 0,
        }
