from __future__ import annotations

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
from apigateway.schemas.backends import UserCreate

SERVICE_NAME = "User Service"

SEED_USERS = [
    {"id": 1, "name": "John Doe", "email": "john@example.com"},
    {"id": 2, "name": "Jane Smith", "email": "jane@example.com"},
    {"id": 3, "name": "Mike Johnson", "email": "mike@example.com"},
]

ERRORS = {"not-found": (404, "Simulated not found error")}


def _build_router(users: InMemoryRepository[int]) -> APIRouter:
    router = APIRouter(prefix="/api/users", tags=["users"])

    @router.get("")
    async def list_users(request: Request) -> JSONResponse:
        return ok(request, users.list(), gateway=gateway_echo(request))

    @router.post("")
    async def create_user(request: Request, payload: UserCreate) -> JSONResponse:
        user = users.create(
            lambda position: {
                "id": position,
                "name": payload.name,
                "email": payload.email,
                "service": SERVICE_NAME,
            }
        )
        return ok(request, user, status_code=201, message="User created successfully")

    @router.get("/simulate-error")
    async def simulate_error(
        request: Request, error_type: str = Query(default="server", alias="type")
    ) -> JSONResponse:
        return await simulated_error(request, error_type, extra_errors=ERRORS)

    @router.get("/{user_id}")
    async def get_user(request: Request, user_id: int) -> JSONResponse:
        user = users.get(user_id)
        if user is None:
            return fail(request, 404, "User not found")
        return ok(request, user)

    @router.get("/{user_id}/profile")
    async def get_profile(request: Request, user_id: int) -> JSONResponse:
        user = users.get(user_id)
        if user is None:
            return fail(request, 404, "User not found")
        user["profileDetails"] = {
            "joinDate": "2023-01-01",
            "lastLogin": now_iso(),
            "preferences": {"theme": "dark", "notifications": True},
        }
        return ok(request, user)

    return router


def create_app(port: int = 3002) -> FastAPI:
    users: InMemoryRepository[int] = InMemoryRepository(
        seed=[dict(user, service=SERVICE_NAME) for user in SEED_USERS]
    )
    info = BackendInfo(
        name=SERVICE_NAME,
        slug="users",
        version="1.0.0",
        port=port,
        description="Handles user management operations",
        endpoints=(
            "GET /health - Health check",
            "GET /api/users - Get all users",
            "POST /api/users - Create user",
            "GET /api/users/:id - Get user by ID",
            "GET /api/users/:id/profile - Get user profile",
            "GET /api/users/simulate-error - Simulate an error response",
        ),
        checks={"database": "connected"},
    )
    return create_backend_app(info, [_build_router(users)])
