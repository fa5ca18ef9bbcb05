"""
EventSwap Platform - Human-Readable Code Allocation
Transaction codes look like TXN-2026-7K2Q, dispute protocols DSP-2026-X81ZQA.

Uniqueness belongs to the store (unique constraint on the code column); this
module only retries a bounded number of times when a freshly generated code
is already taken.
"""
import logging
import secrets
import string
from datetime import datetime
from typing import Optional

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventswap.config import get_settings
from eventswap.exceptions import CodeAllocationExhausted
from eventswap.models import utcnow

logger = logging.getLogger("eventswap.codes")

ALPHABET = string.ascii_uppercase + string.digits

TRANSACTION_PREFIX = "TXN"
TRANSACTION_SUFFIX_LENGTH = 4
DISPUTE_PREFIX = "DSP"
DISPUTE_SUFFIX_LENGTH = 6


def generate_code(prefix: str, length: int, now: Optional[datetime] = None) -> str:
    """Build ``<PREFIX>-<year>-<random suffix>`` from A-Z0-9."""
    year = (now or utcnow()).year
    suffix = "".join(secrets.choice(ALPHABET) for _ in range(length))
    return f"{prefix}-{year}-{suffix}"


async def allocate_code(
    session: AsyncSession,
    column,
    prefix: str,
    length: int,
    attempts: Optional[int] = None,
    generator=generate_code,
) -> str:
    """
    Generate a code and re-check it against ``column`` until an unused one
    is found.

    Raises CodeAllocationExhausted after ``attempts`` collisions.
    """
    attempts = attempts or get_settings().CODE_ALLOCATION_ATTEMPTS
    for attempt in range(1, attempts + 1):
        code = generator(prefix, length)
        taken = await session.scalar(select(exists().where(column == code)))
        if not taken:
            return code
        logger.warning("Code collision on %s (attempt %d/%d)", code, attempt, attempts)

    logger.error("❌ Code allocation exhausted for prefix %s", prefix)
    raise CodeAllocationExhausted(prefix, attempts)
