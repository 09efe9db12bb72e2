"""Utility modules for cross-cutting concerns."""

from utils.timezone import (
    Clock,
    now_utc,
    to_utc,
    from_timestamp,
    to_timestamp,
    seconds_until,
    parse_iso,
)
from utils.user_context import (
    Principal,
    get_current_principal,
    get_current_user_id,
    set_current_principal,
    clear_current_principal,
    principal_context,
)
