from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from apigateway.backends.common import (
    BackendInfo,
    create_backend_app,
    fail,
    gateway_echo,
    ok,
    simulated_error,
)
from apigateway.backends.repository import InMemoryRepository
from apigateway.schemas.backends import InventoryUpdate, ProductCreate

SERVICE_NAME = "Product Service"

SEED_PRODUCTS = [
    {
        "id": 1,
        "name": "Wireless Headphones",
        "price": 199.99,
        "category": "electronics",
        "stock": 50,
        "description": "High-quality wireless headphones with noise cancellation",
    },
    {
        "id": 2,
        "name": "Smart Watch",
        "price": 299.99,
        "category": "electronics",
        "stock": 25,
        "description": "Advanced smartwatch with health monitoring",
    },
    {
        "id": 3,
        "name": "Running Shoes",
        "price": 129.99,
        "category": "sports",
        "stock": 75,
        "description": "Lightweight running shoes for athletes",
    },
    {
        "id": 4,
        "name": "Coffee Maker",
        "price": 89.99,
        "category": "home",
        "stock": 30,
        "description": "Programmable coffee maker with thermal carafe",
    },
]

ERRORS = {"out-of-stock": (409, "Product out of stock")}
INVENTORY_OPERATIONS = ("set", "add", "subtract")
RELATED_LIMIT = 3


def category_stats(products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for product in products:
        grouped.setdefault(product["category"], []).append(product)
    return [
        {
            "name": category,
            "count": len(items),
            "averagePrice": sum(item["price"] for item in items) / len(items),
            "totalStock": sum(item["stock"] for item in items),
        }
        for category, items in grouped.items()
    ]


def _matches(product: Dict[str, Any], term: str) -> bool:
    haystacks = (product.get("name"), product.get("description"), product.get("category"))
    return any(term in (value or "").lower() for value in haystacks)


def _build_router(products: InMemoryRepository[int]) -> APIRouter:
    router = APIRouter(prefix="/api/products", tags=["products"])

    @router.get("")
    async def list_products(
        request: Request,
        category: Optional[str] = None,
        min_price: Optional[float] = Query(default=None, alias="minPrice"),
        max_price: Optional[float] = Query(default=None, alias="maxPrice"),
        limit: int = Query(default=10, ge=0),
    ) -> JSONResponse:
        def keep(product: Dict[str, Any]) -> bool:
            if category and product["category"].lower() != category.lower():
                return False
            if min_price is not None and product["price"] < min_price:
                return False
            if max_price is not None and product["price"] > max_price:
                return False
            return True

        selected = products.list(keep)[:limit]
        return ok(request, selected, total=len(selected), gateway=gateway_echo(request))

    @router.post("")
    async def create_product(request: Request, payload: ProductCreate) -> JSONResponse:
        product = products.create(
            lambda position: {
                "id": position,
                "name": payload.name,
                "price": payload.price,
                "category": payload.category,
                "stock": payload.stock,
                "description": payload.description,
                "service": SERVICE_NAME,
            }
        )
        return ok(request, product, status_code=201, message="Product created successfully")

    @router.get("/meta/categories")
    async def list_categories(request: Request) -> JSONResponse:
        return ok(request, category_stats(products.list()))

    @router.get("/search/{term}")
    async def search_products(request: Request, term: str) -> JSONResponse:
        lowered = term.lower()
        results = products.list(lambda product: _matches(product, lowered))
        return ok(request, results, searchTerm=term, totalResults=len(results))

    @router.get("/simulate-error")
    async def simulate_error(
        request: Request, error_type: str = Query(default="server", alias="type")
    ) -> JSONResponse:
        return await simulated_error(request, error_type, extra_errors=ERRORS)

    @router.get("/{product_id}")
    async def get_product(request: Request, product_id: int) -> JSONResponse:
        product = products.get(product_id)
        if product is None:
            return fail(request, 404, "Product not found")
        product["relatedProducts"] = products.list(
            lambda other: other["category"] == product["category"] and other["id"] != product_id
        )[:RELATED_LIMIT]
        return ok(request, product)

    @router.patch("/{product_id}/inventory")
    async def update_inventory(
        request: Request, product_id: int, payload: InventoryUpdate
    ) -> JSONResponse:
        if payload.operation not in INVENTORY_OPERATIONS:
            return fail(request, 400, "Invalid operation. Use: set, add, or subtract")

        def apply(product: Dict[str, Any]) -> None:
            if payload.operation == "set":
                product["stock"] = payload.stock
            elif payload.operation == "add":
                product["stock"] += payload.stock
            else:
                product["stock"] = max(0, product["stock"] - payload.stock)

        product = products.modify(product_id, apply)
        if product is None:
            return fail(request, 404, "Product not found")
        return ok(
            request,
            product,
            message="Inventory updated successfully",
            operation=payload.operation,
        )

    return router


def create_app(port: int = 3003) -> FastAPI:
    products: InMemoryRepository[int] = InMemoryRepository(
        seed=[dict(product, service=SERVICE_NAME) for product in SEED_PRODUCTS]
    )
    info = BackendInfo(
        name=SERVICE_NAME,
        slug="products",
        version="1.0.0",
        port=port,
        description="Handles product catalog and inventory management",
        endpoints=(
            "GET /health - Health check",
            "GET /api/products - Get all products",
            "POST /api/products - Create product",
            "GET /api/products/:id - Get product by ID",
            "PATCH /api/products/:id/inventory - Update stock",
            "GET /api/products/meta/categories - Get categories",
            "GET /api/products/search/:term - Search products",
        ),
        checks={"database": "connected", "inventory": "synced", "cache": "active"},
    )
    return create_backend_app(info, [_build_router(products)])
