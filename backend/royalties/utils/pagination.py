from typing import Dict, List, Tuple

from ..exceptions import InvalidInput

MAX_PAGE_SIZE = 100


def coerce_positive_int(value, field: str, default: int) -> int:
    if value in (None, ''):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"{field} must be an integer")
    if number < 1:
        raise InvalidInput(f"{field} must be at least 1")
    return number


def paginate(queryset, page=1, limit=20, total_key: str = 'totalItems') -> Tuple[List, Dict]:
    """Slice an ordered queryset into one page plus page metadata."""
    page = coerce_positive_int(page, 'page', 1)
    limit = min(coerce_positive_int(limit, 'limit', 20), MAX_PAGE_SIZE)

    total = queryset.count()
    total_pages = (total + limit - 1) // limit
    offset = (page - 1) * limit

    return list(queryset[offset:offset + limit]), {
        'currentPage': page,
        'totalPages': total_pages,
        total_key: total,
        'hasNext': page < total_pages,
        'hasPrev': page > 1,
    }
