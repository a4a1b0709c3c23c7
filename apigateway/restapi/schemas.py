from __future__ import annotations

from typing import Annotated, List, Literal, Optional, get_args

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

USERNAME_PATTERN = r"^[A-Za-z0-9]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PHONE_PATTERN = r"^\+?[1-9]\d{1,14}$"

Category = Literal["electronics", "clothing", "books", "home", "sports", "other"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]

PRODUCT_CATEGORIES = get_args(Category)
ORDER_STATUSES = get_args(OrderStatus)


class _CamelIn(BaseModel):
    # Unknown fields are dropped, not rejected.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class _PartialUpdate(_CamelIn):
    @model_validator(mode="after")
    def _require_one_field(self):
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided for update")
        return self


def _check_password_strength(value: str) -> str:
    if not (
        any(char.islower() for char in value)
        and any(char.isupper() for char in value)
        and any(char.isdigit() for char in value)
    ):
        raise ValueError(
            "Password must contain at least one lowercase letter, one uppercase letter, and one number"
        )
    return value


def _check_cents(value: float) -> float:
    if round(value, 2) != value:
        raise ValueError("Price must have at most 2 decimal places")
    return value


StrongPassword = Annotated[str, Field(min_length=6, max_length=128), AfterValidator(_check_password_strength)]
Price = Annotated[float, Field(gt=0), AfterValidator(_check_cents)]


class UserCreateIn(_CamelIn):
    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: str = Field(pattern=EMAIL_PATTERN)
    password: StrongPassword
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    age: Optional[int] = Field(default=None, ge=18, le=120)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)


class UserUpdateIn(_PartialUpdate):
    username: Optional[str] = Field(default=None, min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    age: Optional[int] = Field(default=None, ge=18, le=120)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)


class LoginIn(_CamelIn):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class RegisterIn(_CamelIn):
    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: str = Field(pattern=EMAIL_PATTERN)
    password: StrongPassword


class ProductCreateIn(_CamelIn):
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=1000)
    price: Price
    category: Category
    stock: int = Field(ge=0)
    sku: str = Field(min_length=3, max_length=20, pattern=USERNAME_PATTERN)


class ProductUpdateIn(_PartialUpdate):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    price: Optional[Price] = None
    category: Optional[Category] = None
    stock: Optional[int] = Field(default=None, ge=0)
    sku: Optional[str] = Field(default=None, min_length=3, max_length=20, pattern=USERNAME_PATTERN)


class OrderItemIn(_CamelIn):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    price: Price


class ShippingAddressIn(_CamelIn):
    street: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    zip_code: str = Field(min_length=5, max_length=10)
    country: str = Field(min_length=2, max_length=100)


class OrderCreateIn(_CamelIn):
    items: List[OrderItemIn] = Field(min_length=1)
    shipping_address: ShippingAddressIn
    notes: str = Field(default="", max_length=500)


class OrderStatusIn(_CamelIn):
    status: OrderStatus
