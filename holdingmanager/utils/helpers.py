"""Shared utility functions.

parse_date:             lenient date parsing for request payload fields
format_eur:             fr-FR style euro formatting used in alert messages
translate_store_errors: OperationalError → StoreUnavailableError for services
"""
import functools
import logging
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.exc import OperationalError

from holdingmanager.core.exceptions import StoreUnavailableError
from holdingmanager.models import db

logger = logging.getLogger(__name__)

# Plain ASCII space; alert texts are stored and compared as-is.
GROUP_SEPARATOR = " "


def parse_date(value):
    """Parse a date string (ISO or DD/MM/YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD
    - YYYY-MM-DDTHH:MM:SS (→ .date())
    - DD/MM/YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d/%m/%Y").date()
    except (ValueError, TypeError):
        return None


def format_eur(amount) -> str:
    """Format an amount as ``1 234,50 €``."""
    value = Decimal(str(amount or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    grouped = f"{value:,.2f}"
    return grouped.replace(",", GROUP_SEPARATOR).replace(".", ",") + " €"


def translate_store_errors(fn):
    """Decorator for service entry points.

    Rolls back the session and raises StoreUnavailableError when the
    database is unreachable or a lock/statement timeout fires.
    """

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except OperationalError as exc:
            db.session.rollback()
            logger.error("Store unavailable in %s: %s", fn.__qualname__, exc.orig)
            raise StoreUnavailableError(str(exc.orig)) from exc

    return wrapper
