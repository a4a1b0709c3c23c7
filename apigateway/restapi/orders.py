from __future__ import annotations

from datetime import timedelta
from time import time_ns
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from apigateway.logger import get_logger
from apigateway.restapi.auth import AuthenticatedUser, require_user
from apigateway.restapi.common import PageParams, now_iso, ok, page_params, paginate, sort_records
from apigateway.restapi.errors import NotFound, ValidationFailed
from apigateway.restapi.schemas import ORDER_STATUSES, OrderCreateIn, OrderStatusIn
from apigateway.restapi.store import RestState
from apigateway.utils import isoformat_utc, utcnow

_logger = get_logger("restapi.orders")

Record = Dict[str, Any]

ESTIMATED_DELIVERY_DAYS = 7
TERMINAL_STATUSES = ("delivered", "cancelled")

# (tracking key, timeline label, description)
TIMELINE = (
    ("orderPlaced", "Order Placed", "Your order has been placed and is being prepared"),
    ("processingStarted", "Processing", "Your order is being processed and prepared for shipment"),
    ("shipped", "Shipped", "Your order has been shipped"),
    ("delivered", "Delivered", "Your order has been delivered"),
    ("cancelled", "Cancelled", "Your order has been cancelled"),
)
_TRACKING_KEYS = {
    "processing": "processingStarted",
    "shipped": "shipped",
    "delivered": "delivered",
    "cancelled": "cancelled",
}


def order_statistics(orders: List[Record]) -> Record:
    total = round(sum(order["totalAmount"] for order in orders), 2)
    return {
        "totalOrderValue": total,
        "orderStats": {
            status: sum(1 for order in orders if order["status"] == status) for status in ORDER_STATUSES
        },
        "averageOrderValue": round(total / len(orders), 2) if orders else 0,
    }


def tracking_timeline(order: Record) -> List[Record]:
    tracking = order.get("tracking") or {}
    timeline = []
    for key, label, description in TIMELINE:
        if not tracking.get(key):
            continue
        if key == "shipped" and tracking.get("trackingNumber"):
            description = f"{description} (Tracking: {tracking['trackingNumber']})"
        timeline.append({"status": label, "timestamp": tracking[key], "description": description})
    return timeline


def _add_stock(quantity: int) -> Callable[[Record], None]:
    def apply(product: Record) -> None:
        product["stock"] += quantity

    return apply


def build_router(state: RestState) -> APIRouter:
    router = APIRouter(prefix="/api/orders", tags=["orders"], dependencies=[Depends(require_user)])
    orders = state.orders
    products = state.products

    def owned(order_id: str, user: AuthenticatedUser) -> Record:
        order = orders.get(order_id)
        if order is None or order["userId"] != user.user_id:
            raise NotFound("Order")
        return order

    def reserve(product_id: str, quantity: int) -> Record:
        def take(product: Record) -> None:
            if product["stock"] < quantity:
                raise ValidationFailed(
                    f"Insufficient stock for {product['name']}. "
                    f"Available: {product['stock']}, Requested: {quantity}"
                )
            product["stock"] -= quantity

        product = products.modify(product_id, take)
        if product is None:
            raise ValidationFailed(f"Product with ID {product_id} not found")
        return product

    def restock(items: List[Record]) -> None:
        for item in items:
            products.modify(item["productId"], _add_stock(item["quantity"]))

    @router.get("")
    async def list_orders(
        params: PageParams = Depends(page_params),
        status: Optional[str] = None,
        user: AuthenticatedUser = Depends(require_user),
    ) -> JSONResponse:
        mine = orders.list(lambda order: order["userId"] == user.user_id)
        if status:
            mine = [order for order in mine if order["status"] == status.lower()]
        mine = sort_records(mine, "createdAt", descending=True)
        page, pagination = paginate(mine, params)
        return ok(page, pagination=pagination, statistics=order_statistics(mine))

    @router.post("")
    async def create_order(
        payload: OrderCreateIn,
        user: AuthenticatedUser = Depends(require_user),
    ) -> JSONResponse:
        reserved: List[Record] = []
        try:
            for item in payload.items:
                product = reserve(item.product_id, item.quantity)
                reserved.append(
                    {
                        "productId": item.product_id,
                        "productName": product["name"],
                        "quantity": item.quantity,
                        "price": product["price"],
                        "itemTotal": round(product["price"] * item.quantity, 2),
                    }
                )
        except ValidationFailed:
            restock(reserved)
            raise

        placed = utcnow()
        placed_at = isoformat_utc(placed)
        order = orders.create(
            lambda _: {
                "id": str(uuid4()),
                "userId": user.user_id,
                "status": "pending",
                "items": reserved,
                "totalAmount": round(sum(item["itemTotal"] for item in reserved), 2),
                "shippingAddress": payload.shipping_address.model_dump(by_alias=True),
                "notes": payload.notes,
                "createdAt": placed_at,
                "updatedAt": placed_at,
                "tracking": {
                    "orderPlaced": placed_at,
                    "estimatedDelivery": isoformat_utc(placed + timedelta(days=ESTIMATED_DELIVERY_DAYS)),
                },
            }
        )
        _logger.info(
            "orders.create",
            "Created order",
            order_id=order["id"],
            username=user.username,
            total=order["totalAmount"],
        )
        return ok(order, status_code=201, message="Order created successfully")

    @router.get("/{order_id}")
    async def get_order(order_id: str, user: AuthenticatedUser = Depends(require_user)) -> JSONResponse:
        order = owned(order_id, user)
        for item in order["items"]:
            product = products.get(item["productId"])
            item["currentProduct"] = (
                {
                    "name": product["name"],
                    "currentPrice": product["price"],
                    "inStock": product["stock"] > 0,
                    "category": product["category"],
                }
                if product is not None
                else None
            )
        return ok(order)

    @router.patch("/{order_id}/status")
    async def update_status(
        order_id: str,
        payload: OrderStatusIn,
        user: AuthenticatedUser = Depends(require_user),
    ) -> JSONResponse:
        owned(order_id, user)
        changed_at = now_iso()
        previous: Dict[str, str] = {}

        def transition(order: Record) -> None:
            current = order["status"]
            if current in TERMINAL_STATUSES and payload.status != current:
                raise ValidationFailed(f"Cannot change status of {current} order")
            previous["status"] = current
            order["status"] = payload.status
            order["updatedAt"] = changed_at
            if payload.status == current:
                return
            tracking = order.setdefault("tracking", {})
            key = _TRACKING_KEYS.get(payload.status)
            if key:
                tracking[key] = changed_at
            if payload.status == "shipped":
                tracking["trackingNumber"] = f"TRK{time_ns() // 1_000_000}"

        order = orders.modify(order_id, transition)
        if order is None:
            raise NotFound("Order")
        old_status = previous["status"]
        if payload.status == "cancelled" and old_status != "cancelled":
            restock(order["items"])
        _logger.info("orders.status", "Updated order status", order_id=order_id, old=old_status, new=payload.status)
        return ok(
            order,
            message=f"Order status updated to {payload.status}",
            statusChange={"from": old_status, "to": payload.status, "changedAt": changed_at},
        )

    @router.delete("/{order_id}")
    async def cancel_order(order_id: str, user: AuthenticatedUser = Depends(require_user)) -> JSONResponse:
        def pending_and_owned(order: Record) -> None:
            if order["userId"] != user.user_id:
                raise NotFound("Order")
            if order["status"] != "pending":
                raise ValidationFailed(
                    f"Cannot cancel order with status: {order['status']}. "
                    "Only pending orders can be cancelled."
                )

        order = orders.pop(order_id, guard=pending_and_owned)
        if order is None:
            raise NotFound("Order")
        restock(order["items"])
        _logger.info("orders.cancel", "Cancelled order", order_id=order_id, username=user.username)
        return ok(
            {
                "id": order["id"],
                "totalAmount": order["totalAmount"],
                "cancelledAt": now_iso(),
                "stockRestored": [
                    {"productId": item["productId"], "quantityRestored": item["quantity"]}
                    for item in order["items"]
                ],
            },
            message="Order cancelled successfully",
        )

    @router.get("/{order_id}/tracking")
    async def get_tracking(order_id: str, user: AuthenticatedUser = Depends(require_user)) -> JSONResponse:
        order = owned(order_id, user)
        tracking = order.get("tracking") or {}
        return ok(
            {
                "orderId": order["id"],
                "status": order["status"],
                "tracking": tracking,
                "timeline": tracking_timeline(order),
                "estimatedDelivery": tracking.get("estimatedDelivery"),
            }
        )

    return router
