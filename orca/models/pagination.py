import math
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession


async def paginate(
    db: AsyncSession,
    query,
    page: int = 1,
    page_size: int = 20,
    sort_column=None,
    sort_order: str = "desc",
) -> Dict[str, Any]:
    """Run a filtered select and return the standard list envelope"""
    total = (await db.execute(select(func.count()).select_from(query.order_by(None).subquery()))).scalar_one()

    if sort_column is not None:
        query = query.order_by(sort_column.asc() if sort_order == "asc" else sort_column.desc())

    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return {
        "items": list(result.scalars().unique().all()),
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": math.ceil(total / page_size) if total else 0,
    }


def sort_column_for(model, sort_by: Optional[str], default: str):
    return getattr(model, sort_by or default, None) or getattr(model, default)
