from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession


def format_number(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year}-{str(sequence).zfill(5)}"


def next_number_after(prefix: str, year: int, last_number: Optional[str]) -> str:
    """PREFIX-YYYY-NNNNN following the highest existing number"""
    sequence = 1
    if last_number:
        try:
            sequence = int(last_number.rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            sequence = 1
    return format_number(prefix, year, sequence)


async def generate_number(db: AsyncSession, column, clinic_id: str, prefix: str, today: Optional[date] = None) -> str:
    """Next clinic-scoped number for ``column`` (soft-deleted rows included)"""
    year = (today or date.today()).year
    model = column.class_
    # Sequences are zero-padded to five digits and grow past that, so longer means larger
    result = await db.execute(
        select(column)
        .where(model.clinic_id == clinic_id, column.like(f"{prefix}-{year}-%"))
        .order_by(func.length(column).desc(), column.desc())
        .limit(1)
    )
    return next_number_after(prefix, year, result.scalar_one_or_none())
