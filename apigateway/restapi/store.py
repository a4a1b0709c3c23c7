from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List
from uuid import uuid4

from apigateway.backends.repository import InMemoryRepository
from apigateway.config import Settings
from apigateway.restapi.common import now_iso
from apigateway.security import LoginRateLimiter, PasswordManager, TokenService, build_password_hasher

DEMO_USERNAME = "demo_user"
DEMO_EMAIL = "demo@example.com"
DEMO_PASSWORD = "password123"

SEED_PRODUCTS: List[Dict[str, Any]] = [
    {
        "name": "iPhone 13 Pro",
        "description": "Latest Apple smartphone with advanced camera system",
        "price": 999.99,
        "category": "electronics",
        "stock": 25,
        "sku": "IPHONE13PRO",
    },
    {
        "name": "MacBook Air M2",
        "description": "Lightweight laptop with M2 chip",
        "price": 1199.99,
        "category": "electronics",
        "stock": 15,
        "sku": "MACBOOKAIRM2",
    },
    {
        "name": "Nike Air Max 270",
        "description": "Comfortable running shoes with Air Max technology",
        "price": 150.00,
        "category": "sports",
        "stock": 50,
        "sku": "NIKEAIRMAX270",
    },
]


@dataclass
class RestState:
    """Stores and credentials services behind one REST server instance."""

    users: InMemoryRepository[str]
    products: InMemoryRepository[str]
    orders: InMemoryRepository[str]
    passwords: PasswordManager
    tokens: TokenService
    auth_limiter: LoginRateLimiter


def public_user(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in record.items() if key != "passwordHash"}


def _seed_users(passwords: PasswordManager, created_at: str) -> List[Dict[str, Any]]:
    return [
        {
            "id": str(uuid4()),
            "username": DEMO_USERNAME,
            "email": DEMO_EMAIL,
            "passwordHash": passwords.hash(DEMO_PASSWORD),
            "firstName": "Demo",
            "lastName": "User",
            "age": 25,
            "phone": "+1234567890",
            "createdAt": created_at,
            "updatedAt": created_at,
        }
    ]


def _seed_products(created_at: str) -> List[Dict[str, Any]]:
    return [
        dict(product, id=str(uuid4()), isActive=True, createdAt=created_at, updatedAt=created_at)
        for product in SEED_PRODUCTS
    ]


def _seed_orders(user: Dict[str, Any], product: Dict[str, Any], created_at: str) -> List[Dict[str, Any]]:
    return [
        {
            "id": str(uuid4()),
            "userId": user["id"],
            "status": "pending",
            "items": [
                {
                    "productId": product["id"],
                    "productName": product["name"],
                    "quantity": 2,
                    "price": product["price"],
                    "itemTotal": round(product["price"] * 2, 2),
                }
            ],
            "totalAmount": round(product["price"] * 2, 2),
            "shippingAddress": {
                "street": "123 Main St",
                "city": "New York",
                "state": "NY",
                "zipCode": "10001",
                "country": "USA",
            },
            "notes": "Please handle with care",
            "createdAt": created_at,
            "updatedAt": created_at,
            "tracking": {"orderPlaced": created_at},
        }
    ]


def build_state(settings: Settings) -> RestState:
    passwords = PasswordManager(
        build_password_hasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost_kib=settings.password_hash_memory_kib,
        )
    )
    created_at = now_iso()
    users = _seed_users(passwords, created_at)
    products = _seed_products(created_at)
    return RestState(
        users=InMemoryRepository(seed=users),
        products=InMemoryRepository(seed=products),
        orders=InMemoryRepository(seed=_seed_orders(users[0], products[0], created_at)),
        passwords=passwords,
        tokens=TokenService(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            ttl_seconds=settings.jwt_ttl_seconds,
        ),
        auth_limiter=LoginRateLimiter(
            max_failures=settings.auth_max_failures,
            window_seconds=settings.auth_window_seconds,
            lockout_seconds=settings.auth_lockout_seconds,
        ),
    )
