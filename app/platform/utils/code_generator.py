import secrets
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.platform.exceptions import CodeGenerationExhausted
from app.platform.logger import get_logger

logger = get_logger(__name__)

# 31 symbols: no 0/O, 1/I/L
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"


def normalize_code(value: Optional[str]) -> str:
    return (value or "").strip().upper()


def generate_code(prefix: Optional[str] = None, length: int = 8) -> str:
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    prefix = normalize_code(prefix)
    return f"{prefix}-{body}" if prefix else body


async def generate_unique_code(
    db: AsyncSession,
    column,
    prefix: Optional[str],
    length: int,
    max_attempts: int,
) -> str:
    """
    Generate a code that is not yet stored in ``column``.

    The unique constraint on the column is still the final arbiter; this only
    makes a collision at insert time very unlikely.
    """
    for attempt in range(1, max_attempts + 1):
        code = generate_code(prefix, length)
        result = await db.execute(select(column).where(column == code))
        if result.scalar_one_or_none() is None:
            return code
        logger.warning(f"Code collision on attempt {attempt} for prefix {prefix!r}")

    raise CodeGenerationExhausted(
        f"No free code found for prefix {prefix!r} after {max_attempts} attempts"
    )
