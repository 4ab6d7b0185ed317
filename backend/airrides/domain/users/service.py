from __future__ import annotations

import logging

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from airrides.domain.errors import DomainError
from airrides.domain.users.db_models import User
from airrides.infra.auth import PasswordHasher, password_hasher_from_settings
from airrides.settings import settings

logger = logging.getLogger(__name__)

USER_ROLES = {"user", "admin"}


async def create_user(
    session: AsyncSession,
    *,
    username: str,
    email: str,
    password: str,
    role: str = "user",
    hasher: PasswordHasher | None = None,
) -> User:
    """Hash the password and add a new user to ``session``.

    This is the only place users are created, so the stored hash is always
    produced here rather than by a model hook. The caller owns the commit.
    """
    normalized_username = username.strip()
    normalized_email = email.strip().lower()
    if not normalized_username or not normalized_email:
        raise DomainError(detail="Username and email are required")
    if role not in USER_ROLES:
        raise DomainError(detail=f"Unknown role: {role}")

    existing = await session.scalar(
        select(User.id).where(
            or_(User.username == normalized_username, func.lower(User.email) == normalized_email)
        )
    )
    if existing is not None:
        raise DomainError(detail="User already exists", status_code=409)

    password_hasher = hasher or password_hasher_from_settings(settings)
    user = User(
        username=normalized_username,
        email=normalized_email,
        password_hash=password_hasher.hash(password),
        role=role,
    )
    session.add(user)
    await session.flush()
    logger.info("user_created", extra={"extra": {"user_id": user.id, "role": role}})
    return user


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    return await session.get(User, user_id)
