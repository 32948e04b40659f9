"""SQL builder for product search pages.

The row query and the count query are built from one shared predicate so the
total always describes the same set of products the page is cut from.
"""
from typing import Any, List, Optional, Tuple

# Highest page number accepted by paged reads; keeps OFFSET well inside INT8
MAX_PAGE = 10000

PRODUCT_COLUMNS = """
    p.id, p.name, p.description, p.price, p.original_price,
    p.stock, p.image_url, p.sales_count, p.category_id, p.created_at,
    c.name AS category_name
"""

def escape_like(term: str) -> str:
    """Escape LIKE wildcards so the search term matches literally."""
    return term.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')

def build_search_predicate(
    term: str = '',
    category_id: Optional[int] = None
) -> Tuple[str, List[Any]]:
    """Build the WHERE clause shared by the page and count queries.

    Args:
        term: Free text matched against name and description (empty matches all)
        category_id: Optional category filter

    Returns:
        Tuple of (where clause, positional parameters)
    """
    where = "WHERE p.status = 'active'"
    params: List[Any] = []
    param_idx = 1

    if term:
        where += f" AND (p.name ILIKE ${param_idx} ESCAPE '\\' OR p.description ILIKE ${param_idx} ESCAPE '\\')"
        params.append(f"%{escape_like(term)}%")
        param_idx += 1

    if category_id is not None:
        where += f" AND p.category_id = ${param_idx}"
        params.append(category_id)
        param_idx += 1

    return where, params

def build_search_query(
    term: str = '',
    category_id: Optional[int] = None,
    limit: int = 20,
    offset: int = 0
) -> Tuple[str, str, List[Any], List[Any]]:
    """Build the paginated product query and its matching count query.

    Returns:
        Tuple of (page query, count query, filter params, page params). The page
        query takes filter params followed by page params; the count query takes
        the filter params only.
    """
    where, params = build_search_predicate(term, category_id)
    param_idx = len(params) + 1

    query = f"""
        SELECT {PRODUCT_COLUMNS}
        FROM products p
        LEFT JOIN categories c ON p.category_id = c.id
        {where}
        ORDER BY p.sales_count DESC, p.created_at DESC, p.id DESC
        LIMIT ${param_idx} OFFSET ${param_idx + 1}
    """

    count_query = f"""
        SELECT COUNT(*)
        FROM products p
        {where}
    """

    return query, count_query, params, [limit, offset]
