"""Order repositories package."""

from modules.orders.repositories.interfaces import IOrderStore
from modules.orders.repositories.json_repository import OrderJsonRepository

__all__ = ["IOrderStore", "OrderJsonRepository"]
