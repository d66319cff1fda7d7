from __future__ import annotations

import logging
import re

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.errors import ValidationError
from marketplace.models.profile import UserProfile

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def normalize_cpf(document: str | None) -> str:
    return _NON_DIGITS.sub("", document or "")


def is_valid_cpf(document: str | None) -> bool:
    cpf = normalize_cpf(document)
    if len(cpf) != 11 or cpf == cpf[0] * 11:
        return False
    digits = [int(char) for char in cpf]
    for size in (9, 10):
        total = sum(digit * weight for digit, weight in zip(digits[:size], range(size + 1, 1, -1)))
        check = (total * 10) % 11
        if check == 10:
            check = 0
        if check != digits[size]:
            return False
    return True


def format_cpf(document: str | None) -> str:
    cpf = normalize_cpf(document)
    if len(cpf) != 11:
        return cpf
    return f"{cpf[:3]}.{cpf[3:6]}.{cpf[6:9]}-{cpf[9:]}"


async def get_profile(db: AsyncSession, user_id: str) -> UserProfile | None:
    stmt = select(UserProfile).where(UserProfile.user_id == user_id)
    return (await db.execute(stmt)).scalars().first()


async def has_on_file_identity(db: AsyncSession, user_id: str) -> bool:
    profile = await get_profile(db, user_id)
    return bool(profile and is_valid_cpf(profile.cpf))


async def collect_identity(
    db: AsyncSession,
    user_id: str,
    document: str,
    full_name: str | None = None,
) -> UserProfile:
    cpf = normalize_cpf(document)
    if len(cpf) != 11:
        raise ValidationError("CPF deve ter 11 dígitos")
    if not is_valid_cpf(cpf):
        raise ValidationError("CPF inválido")

    profile = await get_profile(db, user_id)
    if profile is None:
        profile = UserProfile(user_id=user_id)
        db.add(profile)
    profile.cpf = cpf
    if full_name and full_name.strip():
        profile.full_name = full_name.strip()
    await db.commit()
    await db.refresh(profile)

    logger.info("identity collected")
    return profile
