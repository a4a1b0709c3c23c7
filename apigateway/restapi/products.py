from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from apigateway.backends.repository import DuplicateValueError
from apigateway.logger import get_logger
from apigateway.restapi.auth import AuthenticatedUser, optional_user
from apigateway.restapi.common import PageParams, now_iso, ok, page_params, paginate, sort_records
from apigateway.restapi.errors import Conflict, NotFound
from apigateway.restapi.schemas import ProductCreateIn, ProductUpdateIn
from apigateway.restapi.store import RestState

_logger = get_logger("restapi.products")

Record = Dict[str, Any]


def _normalize(changes: Record) -> Record:
    if changes.get("sku"):
        changes["sku"] = changes["sku"].upper()
    if changes.get("category"):
        changes["category"] = changes["category"].lower()
    return changes


def _contains(product: Record, term: str, fields: tuple) -> bool:
    return any(term in str(product.get(field) or "").lower() for field in fields)


def category_summary(products: List[Record]) -> List[Record]:
    grouped: Dict[str, List[Record]] = {}
    for product in products:
        grouped.setdefault(product["category"], []).append(product)
    return [
        {
            "name": name,
            "count": len(items),
            "averagePrice": round(sum(item["price"] for item in items) / len(items), 2),
        }
        for name, items in sorted(grouped.items())
    ]


def build_router(state: RestState) -> APIRouter:
    router = APIRouter(prefix="/api/products", tags=["products"])
    products = state.products

    def apply_update(product_id: str, payload: ProductUpdateIn) -> Record:
        changes = _normalize(payload.model_dump(by_alias=True, exclude_unset=True))
        try:
            product = products.update(product_id, dict(changes, updatedAt=now_iso()), unique=("sku",))
        except DuplicateValueError as exc:
            raise Conflict("Product with this SKU already exists") from exc
        if product is None:
            raise NotFound("Product")
        return product

    @router.get("")
    async def list_products(
        params: PageParams = Depends(page_params),
        category: Optional[str] = None,
        min_price: Optional[float] = Query(default=None, alias="minPrice"),
        max_price: Optional[float] = Query(default=None, alias="maxPrice"),
        search: Optional[str] = None,
        user: Optional[AuthenticatedUser] = Depends(optional_user),
    ) -> JSONResponse:
        term = search.lower() if search else None

        def keep(product: Record) -> bool:
            if category and product["category"].lower() != category.lower():
                return False
            if min_price is not None and product["price"] < min_price:
                return False
            if max_price is not None and product["price"] > max_price:
                return False
            if term and not _contains(product, term, ("name", "description", "sku")):
                return False
            return True

        catalog = products.list()
        selected = sort_records(
            [product for product in catalog if keep(product)],
            params.sort_by or "name",
            descending=params.descending,
        )
        page, pagination = paginate(selected, params)
        return ok(
            page,
            pagination=pagination,
            filters={
                "category": category,
                "minPrice": min_price,
                "maxPrice": max_price,
                "search": search,
            },
            availableCategories=sorted({product["category"] for product in catalog}),
            authenticated=user is not None,
        )

    @router.post("")
    async def create_product(payload: ProductCreateIn) -> JSONResponse:
        created_at = now_iso()
        record = dict(
            _normalize(payload.model_dump(by_alias=True)),
            id=str(uuid4()),
            isActive=True,
            createdAt=created_at,
            updatedAt=created_at,
        )
        try:
            product = products.create(lambda _: record, unique=("sku",))
        except DuplicateValueError as exc:
            raise Conflict("Product with this SKU already exists") from exc
        _logger.info("products.create", "Created product", product_id=product["id"], sku=product["sku"])
        return ok(product, status_code=201, message="Product created successfully")

    @router.get("/meta/categories")
    async def list_categories() -> JSONResponse:
        catalog = products.list()
        categories = category_summary(catalog)
        return ok(
            {
                "categories": categories,
                "totalCategories": len(categories),
                "totalProducts": len(catalog),
            }
        )

    @router.get("/search/{term}")
    async def search_products(term: str, params: PageParams = Depends(page_params)) -> JSONResponse:
        lowered = term.lower()
        matches = sort_records(
            products.list(lambda product: _contains(product, lowered, ("name", "description", "category"))),
            params.sort_by or "name",
            descending=params.descending,
        )
        page, pagination = paginate(matches, params)
        return ok(page, searchTerm=term, pagination=pagination)

    @router.get("/{product_id}")
    async def get_product(product_id: str) -> JSONResponse:
        product = products.get(product_id)
        if product is None:
            raise NotFound("Product")
        return ok(product)

    @router.put("/{product_id}")
    async def replace_product(product_id: str, payload: ProductUpdateIn) -> JSONResponse:
        return ok(apply_update(product_id, payload), message="Product updated successfully")

    @router.patch("/{product_id}")
    async def patch_product(product_id: str, payload: ProductUpdateIn) -> JSONResponse:
        product = apply_update(product_id, payload)
        changes = sorted(payload.model_dump(by_alias=True, exclude_unset=True))
        return ok(product, message="Product updated successfully", changes=changes)

    @router.delete("/{product_id}")
    async def delete_product(product_id: str) -> JSONResponse:
        product = products.pop(product_id)
        if product is None:
            raise NotFound("Product")
        _logger.info("products.delete", "Deleted product", product_id=product_id, sku=product["sku"])
        return ok(
            {"id": product["id"], "name": product["name"], "sku": product["sku"], "deletedAt": now_iso()},
            message="Product deleted successfully",
        )

    return router
