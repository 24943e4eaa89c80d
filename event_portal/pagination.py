"""
Page/limit handling shared by the list endpoints.
"""

import math
from typing import Any, Dict, Optional, Tuple

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def _positive_int(value: Optional[str], default: int) -> int:
    try:
        parsed = int(value) if value is not None else default
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def parse_pagination(args, size_key: str = "items_per_page") -> Tuple[int, int, int]:
    """
    Read ?page= and ?items_per_page= (or another size key) from request args.

    Returns:
        tuple: (page, limit, offset). Bad values fall back to defaults.
    """
    page = _positive_int(args.get("page"), 1)
    limit = min(_positive_int(args.get(size_key), DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)
    return page, limit, (page - 1) * limit


def pagination_meta(total: int, page: int, limit: int) -> Dict[str, Any]:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }
