from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional


class UnifiedDataAccess(ABC):
    """Commerce backend contract: catalogue, inventory, pricing, cart and custom extensions"""

    @abstractmethod
    async def search_catalog(self, query: str, filters: Optional[Dict[str, Any]] = None, limit: int = 10) -> List[Dict[str, Any]]:
        """Return normalized products matching the query"""

    @abstractmethod
    async def get_inventory(self, product_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Stock levels keyed by product id"""

    @abstractmethod
    async def get_pricing(self, product_ids: List[str], mode: str) -> Dict[str, Dict[str, Any]]:
        """Prices for the mode keyed by product id"""

    @abstractmethod
    async def mutate_cart(self, operation: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a cart operation and return the resulting cart"""

    @abstractmethod
    async def custom_extension(self, name: str, args: Dict[str, Any]) -> Any:
        """Escape hatch for backend-specific operations"""
