"""Tests for B2C/B2B mode detection."""

from commerce_agent.domain.context.mode_detector import ModeDetector
from commerce_agent.domain.models.conversation_state import CartItem, CartSnapshot, ConversationState, Mode
from commerce_agent.infrastructure.udl.mock_backend import InMemoryCommerceBackend


def _make_state(mode: Mode = Mode.B2C, cart_units: int = 0) -> ConversationState:
    items = [CartItem(product_id="SKU123", quantity=cart_units, unit_price=249.0)] if cart_units else []
    return ConversationState(session_id="session-1", mode=mode, cart=CartSnapshot(items=items))


class TestAnalyze:
    def test_consumer_search_stays_b2c(self):
        detection = ModeDetector().analyze(_make_state(), "show me laptops under $1000")
        assert detection.mode == Mode.B2C
        assert not detection.changed

    def test_bulk_request_flips_to_b2b(self):
        detection = ModeDetector().analyze(_make_state(), "I need bulk pricing for 100 units of SKU123")
        assert detection.mode == Mode.B2B
        assert detection.changed
        assert "bulk_pricing" in detection.indicators
        assert "large_quantity" in detection.indicators
        assert detection.b2b_score == 8

    def test_b2b_is_sticky_on_weak_consumer_signal(self):
        detection = ModeDetector().analyze(_make_state(Mode.B2B), "show me desks")
        assert detection.mode == Mode.B2B

    def test_strong_consumer_signals_flip_back(self):
        detection = ModeDetector().analyze(
            _make_state(Mode.B2B), "a birthday gift for my family, home delivery, paying with paypal"
        )
        assert detection.mode == Mode.B2C
        assert detection.previous_mode == Mode.B2B

    def test_tie_keeps_current_mode(self):
        detection = ModeDetector().analyze(_make_state(), "our company needs one")
        assert detection.b2b_score == detection.b2c_score
        assert detection.mode == Mode.B2C

    def test_bulk_cart_counts_towards_b2b(self):
        detector = ModeDetector()
        assert detector.detect_mode(_make_state(cart_units=60), "please send an invoice") == Mode.B2B
        assert detector.detect_mode(_make_state(cart_units=2), "please send an invoice") == Mode.B2C

    def test_order_volume_counts_towards_b2b(self):
        detector = ModeDetector()
        assert detector.detect_mode(_make_state(), "send an invoice to accounts", order_volume=800) == Mode.B2B
        assert detector.detect_mode(_make_state(), "send an invoice to accounts", order_volume=20) == Mode.B2C

    def test_unknown_mode_treated_as_b2c(self):
        detection = ModeDetector().analyze(_make_state(Mode.UNKNOWN), "hello there")
        assert detection.previous_mode == Mode.B2C
        assert detection.mode == Mode.B2C
        assert "previous_b2c" not in detection.indicators


class TestFetchOrderVolume:
    async def test_known_customer(self):
        backend = InMemoryCommerceBackend(order_volumes={"cust-1": 800})
        assert await ModeDetector.fetch_order_volume(backend, "cust-1") == 800
        assert backend.calls["getOrderVolume"] == 1

    async def test_anonymous_customer_skips_backend(self, backend):
        assert await ModeDetector.fetch_order_volume(backend, None) is None
        assert backend.total_calls == 0

    async def test_failure_is_none(self):
        backend = InMemoryCommerceBackend(failures={"getOrderVolume": ConnectionError("down")})
        assert await ModeDetector.fetch_order_volume(backend, "cust-1") is None

    async def test_slow_backend_is_none(self):
        backend = InMemoryCommerceBackend(latency={"getOrderVolume": 0.5})
        assert await ModeDetector.fetch_order_volume(backend, "cust-1", timeout_ms=20) is None
