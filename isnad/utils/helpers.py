"""Shared helpers for services and blueprints.

parse_pagination:    page/limit query params → clamped ints
paginate_select:     run a select() with a COUNT and a page window
commit_or_conflict:  commit the session, translating lost optimistic-lock races
parse_datetime:      ISO timestamps from query params (returns None on bad input)
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from isnad.core.exceptions import ConcurrentUpdateError
from isnad.models import db

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


def _as_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_pagination(args, default_limit=DEFAULT_PAGE_SIZE, max_limit=MAX_PAGE_SIZE):
    """Read ``page`` (1-based) and ``limit`` from a mapping of query params.

    Invalid values fall back to the defaults; ``limit`` is capped at
    ``max_limit`` and ``page`` is never below 1.

    Returns:
        (page, limit)
    """
    page = max(_as_int(args.get("page"), 1), 1)
    limit = _as_int(args.get("limit"), default_limit)
    if limit < 1:
        limit = default_limit
    return page, min(limit, max_limit)


def paginate_select(stmt, page: int, limit: int):
    """Execute *stmt* for one page.

    Returns:
        (items_list, total_count)
    """
    total = db.session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar() or 0
    items = db.session.execute(
        stmt.limit(limit).offset((page - 1) * limit)
    ).scalars().unique().all()
    return items, total


def page_envelope(items: list, total: int, page: int, limit: int) -> dict:
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit if limit else 0,
    }


def commit_or_conflict(resource: str, resource_id: str) -> None:
    """Commit the current session.

    A flush that loses an optimistic-lock race (``version_id_col`` mismatch)
    is rolled back and re-raised as ConcurrentUpdateError.  Every other
    database error is rolled back and propagated unchanged.
    """
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning(
            "Concurrent update rejected for %s %s: %s", resource, resource_id, exc,
            extra={"event_type": "concurrent_update"},
        )
        raise ConcurrentUpdateError(resource, resource_id) from exc
    except Exception:
        db.session.rollback()
        raise


def parse_datetime(value):
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value))
        except (ValueError, TypeError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
