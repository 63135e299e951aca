import pytest

from commerce_agent.infrastructure.observability.logging import metrics
from commerce_agent.infrastructure.udl.mock_backend import InMemoryCommerceBackend


@pytest.fixture(autouse=True)
def reset_metrics():
    """Process-wide metrics start empty for every test."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def backend():
    return InMemoryCommerceBackend()
