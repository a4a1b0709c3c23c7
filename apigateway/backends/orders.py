from __future__ import annotations

import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from apigateway.backends.common import (
    BackendInfo,
    create_backend_app,
    fail,
    gateway_echo,
    now_iso,
    ok,
    simulated_error,
)
from apigateway.backends.repository import InMemoryRepository
from apigateway.schemas.backends import OrderCreate, OrderStatusUpdate
from apigateway.utils import isoformat_utc, utcnow

SERVICE_NAME = "Order Service"

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
CANCELLABLE_STATUSES = ("pending", "processing")
ESTIMATED_DELIVERY_DAYS = 3
TOP_PRODUCTS_LIMIT = 5

ERRORS = {"payment": (402, "Payment processing failed")}

_NEW_YORK = {
    "street": "123 Main St",
    "city": "New York",
    "state": "NY",
    "zipCode": "10001",
    "country": "USA",
}

SEED_ORDERS = [
    {
        "id": "ORD-001",
        "userId": 1,
        "status": "shipped",
        "items": [
            {"productId": 1, "name": "Wireless Headphones", "quantity": 1, "price": 199.99},
            {"productId": 2, "name": "Smart Watch", "quantity": 1, "price": 299.99},
        ],
        "totalAmount": 499.98,
        "shippingAddress": _NEW_YORK,
        "trackingNumber": "TRK123456789",
        "createdAt": "2023-12-01T10:00:00Z",
    },
    {
        "id": "ORD-002",
        "userId": 2,
        "status": "processing",
        "items": [{"productId": 3, "name": "Running Shoes", "quantity": 2, "price": 129.99}],
        "totalAmount": 259.98,
        "shippingAddress": {
            "street": "456 Oak Ave",
            "city": "Los Angeles",
            "state": "CA",
            "zipCode": "90210",
            "country": "USA",
        },
        "createdAt": "2023-12-02T14:30:00Z",
    },
    {
        "id": "ORD-003",
        "userId": 1,
        "status": "delivered",
        "items": [{"productId": 4, "name": "Coffee Maker", "quantity": 1, "price": 89.99}],
        "totalAmount": 89.99,
        "shippingAddress": _NEW_YORK,
        "trackingNumber": "TRK987654321",
        "deliveredAt": "2023-11-28T16:45:00Z",
        "createdAt": "2023-11-25T09:15:00Z",
    },
]


def _estimated_delivery(order: Dict[str, Any]) -> Optional[str]:
    if order["status"] != "shipped":
        return None
    return isoformat_utc(utcnow() + timedelta(days=ESTIMATED_DELIVERY_DAYS))


def tracking_timeline(order: Dict[str, Any]) -> List[Dict[str, Any]]:
    status = order["status"]
    return [
        {"status": "Order Placed", "timestamp": order.get("createdAt"), "completed": True},
        {
            "status": "Processing",
            "timestamp": order.get("processingAt"),
            "completed": status in ("processing", "shipped", "delivered"),
        },
        {
            "status": "Shipped",
            "timestamp": order.get("shippedAt"),
            "completed": status in ("shipped", "delivered"),
        },
        {
            "status": "Delivered",
            "timestamp": order.get("deliveredAt"),
            "completed": status == "delivered",
        },
    ]


def top_products(orders: List[Dict[str, Any]], limit: int = TOP_PRODUCTS_LIMIT) -> List[Dict[str, Any]]:
    totals: Dict[Any, Dict[str, Any]] = {}
    for order in orders:
        for item in order["items"]:
            entry = totals.setdefault(
                item["productId"],
                {
                    "productId": item["productId"],
                    "name": item.get("name"),
                    "totalQuantity": 0,
                    "totalRevenue": 0.0,
                },
            )
            entry["totalQuantity"] += item["quantity"]
            entry["totalRevenue"] += item["price"] * item["quantity"]
    ranked = sorted(totals.values(), key=lambda entry: entry["totalQuantity"], reverse=True)
    return ranked[:limit]


def order_stats(orders: List[Dict[str, Any]]) -> Dict[str, Any]:
    revenue = sum(order["totalAmount"] for order in orders)
    return {
        "totalOrders": len(orders),
        "totalRevenue": revenue,
        "averageOrderValue": revenue / len(orders) if orders else 0,
        "statusBreakdown": {
            status: sum(1 for order in orders if order["status"] == status)
            for status in ORDER_STATUSES
        },
        "topProducts": top_products(orders),
    }


def _build_router(orders: InMemoryRepository[str]) -> APIRouter:
    router = APIRouter(prefix="/api/orders", tags=["orders"])

    @router.get("")
    async def list_orders(
        request: Request,
        user_id: Optional[int] = Query(default=None, alias="userId"),
        status: Optional[str] = None,
        limit: int = Query(default=10, ge=0),
        offset: int = Query(default=0, ge=0),
    ) -> JSONResponse:
        def keep(order: Dict[str, Any]) -> bool:
            if user_id is not None and order["userId"] != user_id:
                return False
            if status and order["status"].lower() != status.lower():
                return False
            return True

        selected = sorted(orders.list(keep), key=lambda order: order["createdAt"], reverse=True)
        page = selected[offset : offset + limit]
        return ok(
            request,
            page,
            pagination={
                "total": len(selected),
                "limit": limit,
                "offset": offset,
                "hasMore": offset + limit < len(selected),
            },
            gateway=gateway_echo(request),
        )

    @router.post("")
    async def create_order(request: Request, payload: OrderCreate) -> JSONResponse:
        if not payload.user_id or not payload.items or not payload.shipping_address:
            return fail(request, 400, "Missing required fields: userId, items, shippingAddress")

        total = round(sum(item.price * item.quantity for item in payload.items), 2)
        order = orders.create(
            lambda position: {
                "id": f"ORD-{position:03d}",
                "userId": payload.user_id,
                "status": "pending",
                "items": [
                    {
                        "productId": item.product_id,
                        "name": item.name or f"Product {item.product_id}",
                        "quantity": item.quantity,
                        "price": item.price,
                    }
                    for item in payload.items
                ],
                "totalAmount": total,
                "shippingAddress": payload.shipping_address,
                "createdAt": now_iso(),
                "service": SERVICE_NAME,
            }
        )
        return ok(request, order, status_code=201, message="Order created successfully")

    @router.get("/stats")
    async def get_stats(request: Request) -> JSONResponse:
        return ok(request, order_stats(orders.list()))

    @router.get("/simulate-error")
    async def simulate_error(
        request: Request, error_type: str = Query(default="server", alias="type")
    ) -> JSONResponse:
        return await simulated_error(request, error_type, extra_errors=ERRORS)

    @router.get("/{order_id}")
    async def get_order(request: Request, order_id: str) -> JSONResponse:
        order = orders.get(order_id)
        if order is None:
            return fail(request, 404, "Order not found")
        order["estimatedDelivery"] = _estimated_delivery(order)
        order["canCancel"] = order["status"] in CANCELLABLE_STATUSES
        return ok(request, order)

    @router.patch("/{order_id}/status")
    async def update_status(
        request: Request, order_id: str, payload: OrderStatusUpdate
    ) -> JSONResponse:
        if payload.status not in ORDER_STATUSES:
            return fail(
                request,
                400,
                f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}",
            )
        new_status = payload.status
        previous: Dict[str, str] = {}

        def apply(order: Dict[str, Any]) -> None:
            stamp = now_iso()
            previous["status"] = order["status"]
            order["status"] = new_status
            order["updatedAt"] = stamp
            if new_status == "processing":
                order["processingAt"] = stamp
            if new_status == "shipped":
                order["shippedAt"] = stamp
                if not order.get("trackingNumber"):
                    order["trackingNumber"] = f"TRK{int(time.time() * 1000)}"
            if new_status == "delivered":
                order["deliveredAt"] = stamp

        order = orders.modify(order_id, apply)
        if order is None:
            return fail(request, 404, "Order not found")
        return ok(
            request,
            order,
            message=f"Order status updated from {previous['status']} to {new_status}",
        )

    @router.get("/{order_id}/tracking")
    async def get_tracking(request: Request, order_id: str) -> JSONResponse:
        order = orders.get(order_id)
        if order is None:
            return fail(request, 404, "Order not found")
        return ok(
            request,
            {
                "orderId": order["id"],
                "status": order["status"],
                "trackingNumber": order.get("trackingNumber"),
                "timeline": tracking_timeline(order),
                "estimatedDelivery": _estimated_delivery(order),
            },
        )

    return router


def create_app(port: int = 3004) -> FastAPI:
    orders: InMemoryRepository[str] = InMemoryRepository(
        seed=[dict(order, service=SERVICE_NAME) for order in SEED_ORDERS]
    )
    info = BackendInfo(
        name=SERVICE_NAME,
        slug="orders",
        version="1.0.0",
        port=port,
        description="Handles order processing and fulfillment",
        endpoints=(
            "GET /health - Health check",
            "GET /api/orders - Get all orders",
            "POST /api/orders - Create order",
            "GET /api/orders/:id - Get order by ID",
            "PATCH /api/orders/:id/status - Update order status",
            "GET /api/orders/:id/tracking - Get tracking info",
            "GET /api/orders/stats - Get order statistics",
        ),
        checks={
            "database": "connected",
            "paymentGateway": "connected",
            "inventoryService": "connected",
            "shippingService": "connected",
        },
    )
    return create_backend_app(info, [_build_router(orders)])
