"""User directory: every read and write of user records goes through here.

Soft-deleted users are treated as absent unless a caller passes
include_deleted=True. Consequently update() and soft_delete() on a deleted
user raise NotFound, which also makes a repeated soft delete a NotFound
rather than a silent no-op.

Each call opens its own session; returned objects are detached and, unless
include_password is asked for, carry no password hash.
"""

import datetime
import logging
import math
from typing import Optional

from sqlalchemy import func, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from services.users.app.models import ROLES, UserModel
from services.users.app.schemas import Pagination, UserFilters, UserPage
from services.users.app.security import check_password, hash_password
from shared.errors import AppError, ErrorKind

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"

SORT_COLUMNS = {
    "createdAt":   UserModel.created_at,
    "updatedAt":   UserModel.updated_at,
    "email":       UserModel.email,
    "firstName":   UserModel.first_name,
    "lastName":    UserModel.last_name,
    "lastLoginAt": UserModel.last_login_at,
}

_WRITABLE = {"email", "phone", "password", "first_name", "last_name", "role", "is_active", "is_verified"}
# NOT NULL columns; a None for these means "leave unchanged"
_NOT_NULL = {"email", "role", "is_active", "is_verified"}


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _display_name(first: Optional[str], last: Optional[str]) -> Optional[str]:
    return f"{first or ''} {last or ''}".strip() or None


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _strip_password(user: Optional[UserModel]) -> Optional[UserModel]:
    # only ever called on detached instances, so nothing is flushed
    if user is not None:
        user.password = None
    return user


class UserDirectory:
    def __init__(self, session_factory, *, bcrypt_rounds: int = 12) -> None:
        self._sessions     = session_factory
        self.bcrypt_rounds = bcrypt_rounds

    # ──────────────────────────────────────────
    #  Helpers
    # ──────────────────────────────────────────

    async def _get(self, session: AsyncSession, user_id: str, include_deleted: bool = False) -> Optional[UserModel]:
        stmt = select(UserModel).where(UserModel.id == user_id)
        if not include_deleted:
            stmt = stmt.where(UserModel.deleted_at.is_(None))
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _ensure_unique(
        self,
        session: AsyncSession,
        email: Optional[str],
        phone: Optional[str],
        exclude_id: Optional[str] = None,
    ) -> None:
        conditions = []
        if email:
            conditions.append(UserModel.email == email)
        if phone:
            conditions.append(UserModel.phone == phone)
        if not conditions:
            return

        stmt = select(UserModel).where(or_(*conditions), UserModel.deleted_at.is_(None))
        if exclude_id is not None:
            stmt = stmt.where(UserModel.id != exclude_id)
        existing = (await session.execute(stmt.limit(1))).scalar_one_or_none()
        if existing is not None:
            field = "email" if email and existing.email == email else "phone"
            logger.info("[users] uniqueness conflict field=%s", field)
            raise AppError(ErrorKind.CONFLICT, f"User with this {field} already exists")

    # ──────────────────────────────────────────
    #  Reads
    # ──────────────────────────────────────────

    async def find_by_id(self, user_id: str, include_deleted: bool = False) -> Optional[UserModel]:
        async with self._sessions() as session:
            user = await self._get(session, user_id, include_deleted)
        return _strip_password(user)

    async def find_by_email(
        self,
        email: str,
        include_password: bool = False,
        include_deleted: bool = False,
    ) -> Optional[UserModel]:
        stmt = select(UserModel).where(UserModel.email == _normalize_email(email))
        if not include_deleted:
            stmt = stmt.where(UserModel.deleted_at.is_(None))
        async with self._sessions() as session:
            user = (await session.execute(stmt.limit(1))).scalar_one_or_none()
        return user if include_password else _strip_password(user)

    async def list(self, filters: UserFilters) -> UserPage:
        stmt = select(UserModel)
        if not filters.include_deleted:
            stmt = stmt.where(UserModel.deleted_at.is_(None))
        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            stmt = stmt.where(or_(
                UserModel.email.ilike(pattern),
                UserModel.first_name.ilike(pattern),
                UserModel.last_name.ilike(pattern),
                UserModel.name.ilike(pattern),
            ))
        if filters.is_active is not None:
            stmt = stmt.where(UserModel.is_active == filters.is_active)
        if filters.is_verified is not None:
            stmt = stmt.where(UserModel.is_verified == filters.is_verified)
        if filters.role is not None:
            stmt = stmt.where(UserModel.role == filters.role)

        column = SORT_COLUMNS.get(filters.sort_by, UserModel.created_at)
        order  = column.asc() if filters.sort_order == "asc" else column.desc()

        async with self._sessions() as session:
            total = (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
            rows = (await session.execute(
                stmt.order_by(order, UserModel.id)
                    .offset((filters.page - 1) * filters.limit)
                    .limit(filters.limit)
            )).scalars().all()

        total_pages = math.ceil(total / filters.limit) if filters.limit else 0
        pagination = Pagination(
            total=total,
            page=filters.page,
            limit=filters.limit,
            total_pages=total_pages,
            has_next=filters.page < total_pages,
            has_prev=filters.page > 1,
        )
        logger.debug("[users] listed count=%d total=%d", len(rows), total)
        return UserPage(items=[_strip_password(u) for u in rows], pagination=pagination)

    async def stats(self) -> dict:
        live = UserModel.deleted_at.is_(None)
        async with self._sessions() as session:
            async def count(*where) -> int:
                return (await session.execute(select(func.count(UserModel.id)).where(*where))).scalar_one()

            result = {
                "total":    await count(live),
                "active":   await count(live, UserModel.is_active.is_(True)),
                "verified": await count(live, UserModel.is_verified.is_(True)),
                "deleted":  await count(UserModel.deleted_at.is_not(None)),
                "byRole":   {role: await count(live, UserModel.role == role) for role in ROLES},
            }
        return result

    async def ping(self) -> None:
        async with self._sessions() as session:
            await session.execute(text("SELECT 1"))

    # ──────────────────────────────────────────
    #  Writes
    # ──────────────────────────────────────────

    async def create(self, fields: dict) -> UserModel:
        data  = {k: v for k, v in fields.items() if k in _WRITABLE and v is not None}
        email = _normalize_email(data["email"])
        data["email"] = email
        if data.get("password"):
            data["password"] = hash_password(data["password"], self.bcrypt_rounds)
        data.setdefault("role", "user")
        data.setdefault("is_active", True)
        data.setdefault("is_verified", False)

        logger.info("[users] creating user email=%s", email)
        async with self._sessions() as session:
            await self._ensure_unique(session, email, data.get("phone"))
            user = UserModel(**data, name=_display_name(data.get("first_name"), data.get("last_name")))
            session.add(user)
            await session.commit()
            await session.refresh(user)
        logger.info("[users] created user id=%s", user.id)
        return _strip_password(user)

    async def update(self, user_id: str, fields: dict) -> UserModel:
        data = {k: v for k, v in fields.items() if k in _WRITABLE and not (k in _NOT_NULL and v is None)}
        if "email" in data:
            data["email"] = _normalize_email(data["email"])
        if data.get("password"):
            data["password"] = hash_password(data["password"], self.bcrypt_rounds)

        async with self._sessions() as session:
            user = await self._get(session, user_id)
            if user is None:
                raise AppError(ErrorKind.NOT_FOUND, "No user found with that ID")

            new_email = data.get("email") if data.get("email") not in (None, user.email) else None
            new_phone = data.get("phone") if data.get("phone") not in (None, user.phone) else None
            await self._ensure_unique(session, new_email, new_phone, exclude_id=user.id)

            for key, value in data.items():
                setattr(user, key, value)
            if "first_name" in data or "last_name" in data:
                user.name = _display_name(user.first_name, user.last_name)

            await session.commit()
            await session.refresh(user)
        logger.info("[users] updated user id=%s fields=%s", user_id, sorted(data))
        return _strip_password(user)

    async def soft_delete(self, user_id: str) -> UserModel:
        async with self._sessions() as session:
            user = await self._get(session, user_id)
            if user is None:
                raise AppError(ErrorKind.NOT_FOUND, "No user found with that ID")
            user.deleted_at = _now()
            user.is_active  = False
            await session.commit()
            await session.refresh(user)
        logger.info("[users] soft deleted user id=%s", user_id)
        return _strip_password(user)

    async def record_login(self, user_id: str) -> Optional[UserModel]:
        async with self._sessions() as session:
            user = await self._get(session, user_id)
            if user is None:
                return None
            user.last_login_at = _now()
            await session.commit()
            await session.refresh(user)
        return _strip_password(user)

    # ──────────────────────────────────────────
    #  Credentials
    # ──────────────────────────────────────────

    async def authenticate(self, email: str, password: str) -> UserModel:
        """Check credentials and stamp lastLoginAt.

        Unknown email and wrong password share one message so the response
        does not reveal which emails are registered.
        """
        user = await self.find_by_email(email, include_password=True)
        if user is None or not user.password or not check_password(password, user.password):
            logger.info("[users] failed login email=%s", _normalize_email(email))
            raise AppError(ErrorKind.UNAUTHENTICATED, INVALID_CREDENTIALS)
        if not user.is_active:
            raise AppError(ErrorKind.UNAUTHENTICATED, "Account is deactivated. Please contact support.")

        logged_in = await self.record_login(user.id)
        logger.info("[users] login ok id=%s", user.id)
        return logged_in

    async def verify_password(self, user_id: str, password: str) -> bool:
        async with self._sessions() as session:
            user = await self._get(session, user_id)
        return bool(user and user.password and check_password(password, user.password))
