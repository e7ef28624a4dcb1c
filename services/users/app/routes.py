import logging
import uuid as _uuid
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status

from services.users.app.directory import UserDirectory
from services.users.app.models import UserModel
from services.users.app.schemas import (
    ChangePasswordRequest,
    LoginRequest,
    SortField,
    UserCreate,
    UserFilters,
    UserUpdate,
    public_user,
)
from shared.auth import NO_PERMISSION, current_user, optional_user, restrict_to
from shared.errors import AppError, ErrorKind
from shared.tokens import TokenCodec

logger = logging.getLogger(__name__)

# Fields a non-admin may change on their own record.
SELF_EDITABLE = {"first_name", "last_name", "phone"}

auth_router  = APIRouter(prefix="/v1/auth", tags=["auth"])
users_router = APIRouter(prefix="/v1/users", tags=["users"])


def get_directory(request: Request) -> UserDirectory:
    return request.app.state.directory


def get_codec(request: Request) -> TokenCodec:
    return request.app.state.codec


def _valid_id(user_id: str) -> str:
    try:
        return str(_uuid.UUID(user_id))
    except ValueError:
        raise AppError(ErrorKind.VALIDATION, "Invalid user ID format")


def _user_with_token(user: UserModel, codec: TokenCodec) -> dict:
    return {"status": "success", "data": {"user": public_user(user), "token": codec.issue(user.id)}}


def _reject_password_fields(body: UserUpdate) -> None:
    if body.password is not None or body.password_confirm is not None:
        raise AppError(
            ErrorKind.VALIDATION,
            "This route is not for password updates. Please use /change-password",
        )


# ──────────────────────────────────────────
#  Auth
# ──────────────────────────────────────────

@auth_router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    body: UserCreate,
    directory: UserDirectory = Depends(get_directory),
    codec: TokenCodec = Depends(get_codec),
):
    logger.info("[users] registration attempt email=%s", body.email)
    # self-registration always yields a plain user
    fields = body.model_dump(exclude={"role"})
    user = await directory.create(fields)
    return _user_with_token(user, codec)


@auth_router.post("/login")
async def login(
    body: LoginRequest,
    directory: UserDirectory = Depends(get_directory),
    codec: TokenCodec = Depends(get_codec),
):
    user = await directory.authenticate(body.email, body.password)
    return _user_with_token(user, codec)


@auth_router.post("/logout")
async def logout(user: Optional[UserModel] = Depends(optional_user)):
    # Tokens are stateless; the client discards its copy.
    logger.info("[users] logout user_id=%s", user.id if user else "guest")
    return {"status": "success", "message": "Logged out successfully"}


# ──────────────────────────────────────────
#  Current user
# ──────────────────────────────────────────

@users_router.get("/me")
async def get_me(user: UserModel = Depends(current_user)):
    return {"status": "success", "data": {"user": public_user(user)}}


@users_router.patch("/me")
async def update_me(
    body: UserUpdate,
    user: UserModel = Depends(current_user),
    directory: UserDirectory = Depends(get_directory),
):
    _reject_password_fields(body)
    changes = {k: v for k, v in body.changes().items() if k in SELF_EDITABLE}
    updated = await directory.update(user.id, changes)
    return {"status": "success", "data": {"user": public_user(updated)}}


@users_router.delete("/me", status_code=status.HTTP_204_NO_CONTENT)
async def delete_me(
    user: UserModel = Depends(current_user),
    directory: UserDirectory = Depends(get_directory),
):
    await directory.soft_delete(user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ──────────────────────────────────────────
#  Administration
# ──────────────────────────────────────────

@users_router.get("/stats")
async def user_stats(
    _admin: UserModel = Depends(restrict_to("admin")),
    directory: UserDirectory = Depends(get_directory),
):
    return {"status": "success", "data": {"stats": await directory.stats()}}


@users_router.get("")
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    sort_by: SortField = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    is_verified: Optional[bool] = Query(None, alias="isVerified"),
    role: Optional[Literal["user", "admin", "moderator"]] = Query(None),
    _admin: UserModel = Depends(restrict_to("admin")),
    directory: UserDirectory = Depends(get_directory),
):
    filters = UserFilters(
        page=page,
        limit=limit,
        search=search or None,
        sort_by=sort_by,
        sort_order=sort_order,
        is_active=is_active,
        is_verified=is_verified,
        role=role,
    )
    result = await directory.list(filters)
    return {
        "status": "success",
        "results": len(result.items),
        "data": {"users": [public_user(u) for u in result.items]},
        "pagination": result.pagination.to_dict(),
    }


@users_router.post("", status_code=status.HTTP_201_CREATED)
async def create_user(
    body: UserCreate,
    _admin: UserModel = Depends(restrict_to("admin")),
    directory: UserDirectory = Depends(get_directory),
):
    user = await directory.create(body.model_dump())
    return {"status": "success", "data": {"user": public_user(user)}}


# ──────────────────────────────────────────
#  By id
# ──────────────────────────────────────────

@users_router.get("/{user_id}")
async def get_user(
    user_id: str,
    _user: UserModel = Depends(current_user),
    directory: UserDirectory = Depends(get_directory),
):
    user = await directory.find_by_id(_valid_id(user_id))
    if user is None:
        raise AppError(ErrorKind.NOT_FOUND, "No user found with that ID")
    return {"status": "success", "data": {"user": public_user(user)}}


@users_router.patch("/{user_id}")
async def update_user(
    user_id: str,
    body: UserUpdate,
    caller: UserModel = Depends(current_user),
    directory: UserDirectory = Depends(get_directory),
):
    user_id = _valid_id(user_id)
    _reject_password_fields(body)
    changes = body.changes()

    if caller.role != "admin":
        if caller.id != user_id or not set(changes) <= SELF_EDITABLE:
            raise AppError(ErrorKind.FORBIDDEN, NO_PERMISSION)

    updated = await directory.update(user_id, changes)
    return {"status": "success", "data": {"user": public_user(updated)}}


@users_router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: str,
    caller: UserModel = Depends(current_user),
    directory: UserDirectory = Depends(get_directory),
):
    user_id = _valid_id(user_id)
    if caller.role != "admin" and caller.id != user_id:
        raise AppError(ErrorKind.FORBIDDEN, NO_PERMISSION)
    await directory.soft_delete(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@users_router.patch("/{user_id}/change-password")
async def change_password(
    user_id: str,
    body: ChangePasswordRequest,
    caller: UserModel = Depends(current_user),
    directory: UserDirectory = Depends(get_directory),
    codec: TokenCodec = Depends(get_codec),
):
    user_id = _valid_id(user_id)
    is_self = caller.id == user_id
    if not is_self and caller.role != "admin":
        raise AppError(ErrorKind.FORBIDDEN, NO_PERMISSION)

    # admins resetting someone else's password skip the current-password check
    if is_self:
        if not body.current_password:
            raise AppError(ErrorKind.VALIDATION, "Current password is required")
        if not await directory.verify_password(user_id, body.current_password):
            raise AppError(ErrorKind.UNAUTHENTICATED, "Your current password is wrong.")

    updated = await directory.update(user_id, {"password": body.new_password})
    logger.info("[users] password changed user_id=%s by=%s", user_id, caller.id)
    if is_self:
        return _user_with_token(updated, codec)
    return {"status": "success", "data": {"user": public_user(updated)}}
