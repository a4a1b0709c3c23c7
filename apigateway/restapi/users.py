from __future__ import annotations

from typing import Any, Dict
from uuid import uuid4

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from apigateway.backends.repository import DuplicateValueError
from apigateway.logger import get_logger
from apigateway.restapi.auth import guard_auth_attempts
from apigateway.restapi.common import PageParams, now_iso, ok, page_params, paginate, sort_records
from apigateway.restapi.errors import Conflict, NotFound, ValidationFailed
from apigateway.restapi.schemas import LoginIn, RegisterIn, UserCreateIn, UserUpdateIn
from apigateway.restapi.store import RestState, public_user

_logger = get_logger("restapi.users")

UNIQUE_FIELDS = ("username", "email")
_FIELD_LABELS = {"username": "Username", "email": "Email"}


def _conflict(exc: DuplicateValueError) -> Conflict:
    return Conflict(f"{_FIELD_LABELS.get(exc.field, exc.field)} already exists")


def build_router(state: RestState) -> APIRouter:
    router = APIRouter(prefix="/api/users", tags=["users"])
    users = state.users

    def insert(fields: Dict[str, Any], password: str) -> Dict[str, Any]:
        created_at = now_iso()
        record = dict(
            fields,
            id=str(uuid4()),
            passwordHash=state.passwords.hash(password),
            createdAt=created_at,
            updatedAt=created_at,
        )
        return users.create(lambda _: record, unique=UNIQUE_FIELDS)

    def apply_update(user_id: str, payload: UserUpdateIn) -> Dict[str, Any]:
        changes = payload.model_dump(by_alias=True, exclude_unset=True)
        try:
            user = users.update(user_id, dict(changes, updatedAt=now_iso()), unique=UNIQUE_FIELDS)
        except DuplicateValueError as exc:
            raise _conflict(exc) from exc
        if user is None:
            raise NotFound("User")
        return user

    def token_payload(user: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "user": public_user(user),
            "token": state.tokens.issue(user),
            "expiresIn": state.tokens.expires_in,
        }

    @router.get("")
    async def list_users(params: PageParams = Depends(page_params)) -> JSONResponse:
        records = sort_records(
            [public_user(user) for user in users.list()],
            params.sort_by or "username",
            descending=params.descending,
        )
        page, pagination = paginate(records, params)
        return ok(page, pagination=pagination)

    @router.post("/login")
    async def login(
        payload: LoginIn,
        client: str = Depends(guard_auth_attempts),
    ) -> JSONResponse:
        matches = users.list(lambda record: record["username"] == payload.username)
        user = matches[0] if matches else None
        if user is None or not state.passwords.verify(payload.password, user["passwordHash"]):
            state.auth_limiter.record_failure(client)
            raise ValidationFailed("Invalid username or password")
        state.auth_limiter.record_success(client)

        if state.passwords.needs_rehash(user["passwordHash"]):
            users.update(user["id"], {"passwordHash": state.passwords.hash(payload.password)})
            _logger.info(
                "auth.password.rehash",
                "Rehashed stored password with current algorithm parameters",
                username=user["username"],
            )
        _logger.info("auth.login", "User logged in", username=user["username"])
        return ok(token_payload(user), message="Login successful")

    @router.post("/register")
    async def register(
        payload: RegisterIn,
        client: str = Depends(guard_auth_attempts),
    ) -> JSONResponse:
        try:
            user = insert(
                {"username": payload.username, "email": payload.email, "firstName": "", "lastName": ""},
                payload.password,
            )
        except DuplicateValueError as exc:
            state.auth_limiter.record_failure(client)
            raise _conflict(exc) from exc
        _logger.info("auth.register", "User registered", username=user["username"])
        return ok(token_payload(user), status_code=201, message="Registration successful")

    @router.post("")
    async def create_user(payload: UserCreateIn) -> JSONResponse:
        fields = payload.model_dump(by_alias=True, exclude={"password"})
        try:
            user = insert(fields, payload.password)
        except DuplicateValueError as exc:
            raise _conflict(exc) from exc
        _logger.info("users.create", "Created user", username=user["username"])
        return ok(public_user(user), status_code=201, message="User created successfully")

    @router.get("/{user_id}")
    async def get_user(user_id: str) -> JSONResponse:
        user = users.get(user_id)
        if user is None:
            raise NotFound("User")
        return ok(public_user(user))

    @router.put("/{user_id}")
    async def replace_user(user_id: str, payload: UserUpdateIn) -> JSONResponse:
        user = apply_update(user_id, payload)
        return ok(public_user(user), message="User updated successfully")

    @router.patch("/{user_id}")
    async def patch_user(user_id: str, payload: UserUpdateIn) -> JSONResponse:
        user = apply_update(user_id, payload)
        changes = sorted(payload.model_dump(by_alias=True, exclude_unset=True))
        return ok(public_user(user), message="User updated successfully", changes=changes)

    @router.delete("/{user_id}")
    async def delete_user(user_id: str) -> JSONResponse:
        user = users.pop(user_id)
        if user is None:
            raise NotFound("User")
        _logger.info("users.delete", "Deleted user", username=user["username"])
        return ok(
            {"id": user["id"], "username": user["username"], "deletedAt": now_iso()},
            message="User deleted successfully",
        )

    return router
