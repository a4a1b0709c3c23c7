from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserCreate(_CamelIn):
    name: Optional[str] = None
    email: Optional[str] = None


class ProductCreate(_CamelIn):
    name: Optional[str] = None
    price: float = 0.0
    category: Optional[str] = None
    stock: int = 0
    description: Optional[str] = None


class InventoryUpdate(_CamelIn):
    stock: int = 0
    operation: str = "set"


class OrderItemIn(_CamelIn):
    product_id: int
    name: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    price: float = Field(default=0.0, ge=0)


# Required fields stay optional here so a missing one yields the service's 400 payload.
class OrderCreate(_CamelIn):
    user_id: Optional[int] = None
    items: List[OrderItemIn] = Field(default_factory=list)
    shipping_address: Optional[Dict[str, Any]] = None


class OrderStatusUpdate(_CamelIn):
    status: Optional[str] = None
