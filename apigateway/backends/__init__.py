from __future__ import annotations

from typing import Callable, Dict

from fastapi import FastAPI

from apigateway.backends import orders, products, users

BACKENDS: Dict[str, Callable[..., FastAPI]] = {
    "users": users.create_app,
    "products": products.create_app,
    "orders": orders.create_app,
}
