from sqlalchemy import func
from sqlmodel import select

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def paginate(
    *,
    session,
    query,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
):
    page = max(page, 1)
    if limit < 1:
        limit = DEFAULT_PAGE_SIZE
    limit = min(limit, MAX_PAGE_SIZE)

    # count without the ORDER BY of the listing query
    total = session.exec(
        select(func.count()).select_from(query.order_by(None).subquery())
    ).one()
    results = session.exec(query.offset((page - 1) * limit).limit(limit)).all()

    return {
        "total_items": total,
        "total_pages": (total + limit - 1) // limit,
        "current_page": page,
        "limit": limit,
        "results": results,
    }
