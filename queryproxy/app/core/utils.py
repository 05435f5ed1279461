"""Utility functions for the query proxy."""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_isoformat(moment: Optional[Union[float, datetime]] = None) -> str:
    """Format a moment as a UTC ISO-8601 string with milliseconds and a ``Z`` suffix.

    Args:
        moment: Epoch seconds or a datetime. Defaults to now. Naive datetimes
            are taken as UTC.

    Examples:
        >>> utc_isoformat(0)
        '1970-01-01T00:00:00.000Z'
    """
    if moment is None:
        moment = datetime.now(timezone.utc)
    elif isinstance(moment, datetime):
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        moment = moment.astimezone(timezone.utc)
    else:
        moment = datetime.fromtimestamp(moment, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
